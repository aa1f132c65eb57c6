import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from assetgate/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from assetgate.core.config import settings, validate_config  # noqa: E402
from assetgate.core.logging import configure_logging  # noqa: E402
from assetgate.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from assetgate.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from assetgate.api import billing, downloads, health, subscriptions  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("assetgate")
    logger.info("Starting assetgate...", extra={"env": settings.ENV, "quota_timezone": settings.QUOTA_TIMEZONE})
    try:
        yield
    finally:
        logger.info("Stopping assetgate...")


app = FastAPI(title="assetgate", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(downloads.router)
app.include_router(subscriptions.router)
app.include_router(billing.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("assetgate.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
