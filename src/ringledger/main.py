"""Usage metering and trial billing ledger API."""

import os
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from ringledger.config import settings
from ringledger.database import close_database, init_database
from ringledger.middleware.logging_filter import configure_logging
from ringledger.middleware.request_id import RequestIDMiddleware
from ringledger.routes import businesses, cron, trial, webhooks
from ringledger.services.call_recorder import CallRecorder
from ringledger.services.metering import MeteringReporter, StripeMeteringClient
from ringledger.services.subscription_sync import StripeBillingClient, SubscriptionSync
from ringledger.services.usage import UsageAccumulator

logger = structlog.get_logger()


async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled exceptions with an error id and return a generic 500."""
    error_id = str(uuid.uuid4())[:8]
    logger.exception(
        "Unhandled exception",
        error_id=error_id,
        path=str(request.url.path),
        method=request.method,
        exc_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An internal error occurred. Please try again later.",
            "error_id": error_id,
        },
    )


def build_services(app: FastAPI) -> None:
    """Construct the ledger services once and attach them to ``app.state``.

    Stripe clients are only created when a secret key is configured; without
    one, metering reports are explicit no-ops.
    """
    metering_client = None
    billing_client = None
    if settings.metering_enabled:
        metering_client = StripeMeteringClient(
            api_key=settings.STRIPE_SECRET_KEY or "",
            event_name=settings.STRIPE_METER_EVENT_NAME,
        )
        billing_client = StripeBillingClient(api_key=settings.STRIPE_SECRET_KEY or "")
    else:
        logger.warning("STRIPE_SECRET_KEY not set - overage metering disabled")

    reporter = MeteringReporter(metering_client, timeout_seconds=settings.METERING_TIMEOUT_SECONDS)
    app.state.metering_reporter = reporter
    app.state.call_recorder = CallRecorder(
        UsageAccumulator(),
        reporter,
        max_duration_seconds=settings.MAX_CALL_DURATION_SECONDS,
    )
    app.state.subscription_sync = SubscriptionSync(
        billing_client,
        metered_price_id=settings.STRIPE_METERED_PRICE_ID,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging()
    logger.info("Starting ringledger API", version=settings.VERSION, environment=settings.ENVIRONMENT)

    await init_database()
    build_services(app)

    if settings.RETELL_ALLOW_UNSIGNED_WEBHOOKS and not settings.RETELL_WEBHOOK_SECRET:
        logger.warning("Unsigned telephony webhooks are accepted (development only)")

    yield

    logger.info("Shutting down ringledger API")
    await close_database()


app = FastAPI(
    title="ringledger API",
    description="Call usage metering, free trials and overage billing.",
    version=settings.VERSION,
    docs_url="/api/docs",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

app.add_exception_handler(Exception, _global_exception_handler)
app.add_middleware(RequestIDMiddleware)

api = APIRouter()
api.include_router(webhooks.router)
api.include_router(trial.router)
api.include_router(businesses.router)
api.include_router(cron.router)

app.include_router(api, prefix="/api")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.VERSION}


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("HOST", "127.0.0.1")
    uvicorn.run(
        "ringledger.main:app",
        host=host,
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
        log_level="info",
    )
