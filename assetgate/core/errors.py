"""Error normalization and handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from assetgate.core.config import is_production
from assetgate.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def extra_payload(self) -> Dict[str, Any]:
        """Additional top-level fields merged into the error response."""
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class EntitlementError(AppError):
    """A download was denied; `reason` is the machine-readable code."""
    code = "entitlement_denied"
    status_code = 403

    def __init__(self, reason: str, message: str, *, status_code: Optional[int] = None, resets_at: Optional[str] = None):
        super().__init__(message, status_code=status_code)
        self.reason = reason
        self.resets_at = resets_at

    def extra_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"reason": self.reason}
        if self.resets_at:
            payload["resetsAt"] = self.resets_at
        return payload


class AssetUnavailableError(EntitlementError):
    def __init__(self, asset_id: str):
        super().__init__("ASSET_UNAVAILABLE", f"Asset is not available for download: {asset_id}")


class WebhookVerificationError(AppError):
    code = "webhook_verification_failed"
    status_code = 400


class BillingProviderError(AppError):
    code = "billing_provider_error"
    status_code = 502


class StorageUnavailableError(AppError):
    code = "storage_unavailable"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    message = exc.message
    if isinstance(exc, StorageUnavailableError) and is_production():
        message = "Service temporarily unavailable"
    payload = _error_payload(exc.code, message, rid)
    payload.update(exc.extra_payload())
    logger = logging.getLogger("assetgate")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("assetgate")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("assetgate")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    message = "Unexpected error" if is_production() else f"Unexpected error: {exc}"
    payload = _error_payload("internal_error", message, rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
