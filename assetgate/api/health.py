"""
Health endpoints.

Liveness and readiness probes; no secrets, no stack traces.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from assetgate.core.database import get_engine
from assetgate.core.errors import StorageUnavailableError

logger = logging.getLogger("assetgate")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "assets",
    "plans",
    "subscriptions",
    "usage_records",
    "daily_usage_counters",
    "billing_events",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except (SQLAlchemyError, StorageUnavailableError) as e:
        logger.error("readyz.failed", extra={"error_message": str(e)})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning("readyz.missing_tables", extra={"missing_tables": missing})
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    return {"status": "ok"}
