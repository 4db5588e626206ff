import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from plangate.core.config import settings, validate_config
from plangate.core.database import create_all_tables
from plangate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    provider_error_handler,
    unhandled_exception_handler,
)
from plangate.core.logging import configure_logging
from plangate.core.middleware.request_id import RequestIdMiddleware
from plangate.core.validation import validate_env
from plangate.api import health, metrics, plans, subscriptions, webhooks
from plangate.features.billing.provider import ProviderError
from plangate.features.wiring import Services, build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("plangate")
    logger.info("Starting plangate...")
    app.state.startup_time = time.time()
    if getattr(app.state, "services", None) is None:
        validate_env()
        validate_config(strict=settings.CONFIG_STRICT)
        create_all_tables()
        app.state.services = build_services(settings)
    try:
        yield
    finally:
        logger.info("Stopping plangate...")


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app. Services are built at startup unless passed in."""
    configure_logging(settings.ENV, settings.LOG_LEVEL)

    app = FastAPI(title="plangate", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(ProviderError, provider_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(plans.router, prefix="/api")
    app.include_router(subscriptions.router, prefix="/api")
    app.include_router(webhooks.router, prefix="/api")
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
