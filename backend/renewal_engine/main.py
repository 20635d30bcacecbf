"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from renewal_engine.api import monitoring, payment_methods, scheduler, subscriptions, webhooks
from renewal_engine.core.config import settings
from renewal_engine.core.exceptions import (
    BillingError, DeletionNotAllowedError, GatewayNotConfiguredError, InvalidTransitionError,
    OrderNotFoundError, PaymentMethodNotFoundError, SubscriptionLockedError,
    SubscriptionNotFoundError, WebhookAuthenticationError, WebhookPayloadError,
)
from renewal_engine.core.logging import setup_logging
from renewal_engine.core.otel import initialize_otel, instrument_app
from renewal_engine.db.session import engine
from renewal_engine.services.container import build_services
from renewal_engine.tasks.scheduler import start_background_tasks

setup_logging()
logger = logging.getLogger(__name__)

ERROR_STATUS = (
    ((SubscriptionNotFoundError, OrderNotFoundError, PaymentMethodNotFoundError, GatewayNotConfiguredError), 404),
    ((InvalidTransitionError, SubscriptionLockedError, DeletionNotAllowedError), 409),
    ((WebhookAuthenticationError, WebhookPayloadError), 400),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        instrument_app(app, engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)

    logger.info("Testing Redis connection...")
    try:
        app.state.services.redis.ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    background = []
    if settings.RUN_BACKGROUND_TASKS:
        logger.info("Starting renewal scheduler tasks...")
        background = start_background_tasks(app.state.services)
        logger.info("Renewal scheduler tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background:
        task.cancel()
    if background:
        await asyncio.gather(*background, return_exceptions=True)


# Create FastAPI app
app = FastAPI(
    title="Renewal Engine",
    description="Recurring billing: renewals, retries, vault and gateway webhooks",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    status_code = 400
    for error_types, code in ERROR_STATUS:
        if isinstance(exc, error_types):
            status_code = code
            break
    logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


# Include routers
app.include_router(monitoring.router)
app.include_router(webhooks.router)
app.include_router(subscriptions.router)
app.include_router(payment_methods.router)
app.include_router(scheduler.router)


if __name__ == "__main__":
    # Reload needs the app as an import string
    reload = settings.ENVIRONMENT == "development"
    config = {
        "host": "0.0.0.0",
        "port": 8000,
        "timeout_graceful_shutdown": 30,
    }

    if reload:
        config["reload"] = True
        uvicorn.run("renewal_engine.main:app", **config)
    else:
        uvicorn.run(app, **config)
