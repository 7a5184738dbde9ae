"""FastAPI application entry-point for the tenant billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from billing_core.errors import GatewayError, PolicyError, ValidationError, WebhookSignatureError
from billing_core.state.sqlite_adapter import create_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import PlatformEnv
from api.dependencies import (
    dispose_engine,
    get_session_factory,
    get_settings,
    init_catalog,
    init_engine,
    init_gateway,
)
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.tenant import TENANT_HEADER, TenantContextMiddleware
from api.routers import billing, health
from api.services.renewal_engine import RenewalEngine, RenewalScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Load the plan catalog and build the payment gateway adapter.
    - Start the renewal scheduler when enabled.

    On shutdown:
    - Stop the scheduler and dispose the engine connection pool.
    """
    settings = get_settings()

    # Structured JSON logging for log shippers.
    if settings.structured_logging:
        from api.middleware.json_formatter import configure_structured_logging

        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_tables(engine)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    catalog = init_catalog(settings)
    logger.info("Plan catalog loaded (%d plans)", len(catalog.plans))

    gateway = init_gateway(settings)
    logger.info("Payment gateway initialised (%s)", type(gateway).__name__)

    scheduler: RenewalScheduler | None = None
    if settings.renewal_scheduler_enabled:
        renewal_engine = RenewalEngine(
            get_session_factory(),
            gateway,
            catalog,
            settings.billing_policy(),
            concurrency=settings.renewal_concurrency,
        )
        scheduler = RenewalScheduler(renewal_engine, settings.renewal_cron)
        await scheduler.start()
    app.state.renewal_scheduler = scheduler

    yield

    # Shutdown.
    if scheduler is not None:
        await scheduler.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Billing API",
        description="Plans, subscriptions, renewals and payment reconciliation for tenants.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(TenantContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", TENANT_HEADER, "Accept"],
    )

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")

    # Infrastructure endpoints, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("Validation error on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(PolicyError)
    async def policy_error_handler(request: Request, exc: PolicyError) -> JSONResponse:
        logger.info("Policy rejection on %s: %s (%s)", request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(WebhookSignatureError)
    async def signature_error_handler(request: Request, exc: WebhookSignatureError) -> JSONResponse:
        logger.warning("Webhook signature rejected on %s", request.url.path)
        return JSONResponse(status_code=400, content={"detail": "Signature verification failed"})

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        status_code = 504 if exc.code == "timeout" else 402
        logger.warning("Gateway error on %s: %s (%s)", request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
