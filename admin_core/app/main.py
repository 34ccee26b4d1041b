"""
FastAPI Application Entry Point.

Admin authorization, audit trail and analytics service.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from admin_core.app.core.config import settings
from admin_core.app.core.logging import configure_logging
from admin_core.app.core.observability import ObservabilityMiddleware
from admin_core.app.core.redis_client import ping_redis
from admin_core.app.api.v1.router import router as api_v1_router
from admin_core.app.container import AdminServices, build_services
from admin_core.app.db.session import Base
from admin_core.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from admin_core.app.models.user import User  # noqa: F401
from admin_core.app.models.user_permission import UserPermission  # noqa: F401
from admin_core.app.models.audit_log import AuditLog  # noqa: F401
from admin_core.app.models.security_event import SecurityEvent  # noqa: F401
from admin_core.app.models.user_event import UserEvent  # noqa: F401
from admin_core.app.models.daily_metric import DailyMetric  # noqa: F401

logger = logging.getLogger(__name__)


async def _sweep_rate_limits(services: AdminServices) -> None:
    interval = services.settings.rate_limit_sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        services.rate_limiter.sweep()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Starts the rate-limit eviction sweep and, when enabled, the aggregation scheduler.
    3. On shutdown, stops background tasks and drains the event queue.
    """
    services: AdminServices = app.state.services
    async with services.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    sweeper = asyncio.create_task(_sweep_rate_limits(services))
    if services.settings.aggregation_enabled:
        services.scheduler.start()
    logger.info("Admin core started", extra={"aggregation_enabled": services.settings.aggregation_enabled})
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await services.scheduler.stop()
        await services.events.stop()


def create_app(services: Optional[AdminServices] = None) -> FastAPI:
    """Build the application around ``services`` (production wiring when omitted)."""
    configure_logging(settings.log_level)
    services = services or build_services()

    app = FastAPI(
        title=services.settings.app_name,
        version=services.settings.api_version,
        debug=services.settings.debug,
        description="Admin authorization, audit trail and analytics aggregation",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(ObservabilityMiddleware)

    # Register global exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """
        Health check endpoint.

        Returns:
            dict: Status, application information and dependency reachability
        """
        redis_ok = await ping_redis(request.app.state.services.redis)
        return {
            "status": "healthy" if redis_ok else "degraded",
            "app_name": services.settings.app_name,
            "version": services.settings.api_version,
            "redis": redis_ok,
            "pending_events": services.events.pending,
            "dropped_events": services.events.dropped,
        }

    # Include API v1 router
    app.include_router(api_v1_router, prefix=f"/{services.settings.api_version}")

    @app.get("/", tags=["Root"])
    async def root():
        """
        Root endpoint.

        Returns:
            dict: Welcome message and API documentation links
        """
        return {
            "message": "Welcome to the Admin Core API",
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()
