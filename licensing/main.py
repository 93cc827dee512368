import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

# Load env from licensing/.env before settings are read
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from licensing.api import billing, gift_codes, health, metrics, verify
from licensing.core.config import Settings, settings, validate_config
from licensing.core.container import LicensingServices, build_services
from licensing.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from licensing.core.logging import configure_logging
from licensing.core.middleware.metrics import MetricsMiddleware
from licensing.core.middleware.request_id import RequestIdMiddleware
from licensing.core.validation import validate_env


def create_app(services: Optional[LicensingServices] = None, settings_obj: Optional[Settings] = None) -> FastAPI:
    """Build the licensing API.

    When ``services`` is not injected the service graph is built from
    configuration at startup, which fails without an activation secret.
    """
    cfg = settings_obj or settings
    configure_logging(cfg.ENV)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("licensing")
        logger.info("Starting licensing service...")
        app.state.startup_time = time.time()
        if getattr(app.state, "services", None) is None:
            validate_env(settings_obj=cfg)
            validate_config(settings_obj=cfg)
            app.state.services = build_services(cfg)
        try:
            yield
        finally:
            logger.info("Stopping licensing service...")

    app = FastAPI(title="Licensing", lifespan=lifespan)
    app.state.services = services

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # CORS: the single PWA origin, POST only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.ALLOWED_ORIGIN],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    app.include_router(verify.router)
    app.include_router(gift_codes.router)
    app.include_router(billing.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
