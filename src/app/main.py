"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the CRM services on app.state, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import Settings, get_settings
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.crm import CrmApiError, crm_api_error_handler
from src.app.api.v1.router import router as v1_router
from src.app.crm.accounts import CrmAccountManager
from src.app.crm.sync import SyncService
from src.app.crm.webhooks import WebhookHandler


def init_crm_services(app: FastAPI, settings: Settings) -> None:
    """Construct the CRM service graph once and attach it to app.state.

    Handlers reach the services only through app.state, so tests can
    build isolated apps with fresh registries.
    """
    account_manager = CrmAccountManager(
        timeout=settings.PIPEDRIVE_TIMEOUT_SECONDS,
        retries=settings.PIPEDRIVE_MAX_RETRIES,
        retry_delay=settings.PIPEDRIVE_RETRY_DELAY_SECONDS,
        api_version=settings.PIPEDRIVE_API_VERSION,
        webhook_path=settings.CRM_WEBHOOK_PATH,
    )
    sync_service = SyncService(
        account_manager,
        default_interval_minutes=settings.SYNC_INTERVAL_MINUTES,
    )
    webhook_handler = WebhookHandler(account_manager, sync_service)

    app.state.crm_account_manager = account_manager
    app.state.crm_sync_service = sync_service
    app.state.crm_webhook_handler = webhook_handler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: configure logging and Sentry on startup."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    log.info("app.startup_complete", environment=settings.ENVIRONMENT.value)

    yield

    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Gateway API",
        version="0.1.0",
        description="Multi-tenant CRM integration gateway",
        lifespan=lifespan,
    )

    init_crm_services(app, settings)
    app.add_exception_handler(CrmApiError, crm_api_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, crm, webhooks)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
