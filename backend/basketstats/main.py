"""
Main FastAPI application.

WHY: This is the entry point for the application. It configures logging,
middleware, routes, exception handlers and the background scheduler.
"""

import logging

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from basketstats.api import admin, paytech, subscriptions
from basketstats.core.config import settings
from basketstats.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    store_exception_handler,
    validation_exception_handler,
)
from basketstats.core.exceptions import AppException
from basketstats.core.logging import configure_logging
from basketstats.db.session import get_session_factory
from basketstats.middleware import RequestContextMiddleware
from basketstats.services.scheduler import (
    get_scheduler_status,
    shutdown_scheduler,
    start_scheduler,
)

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations.

    Returns:
        Configured FastAPI application instance
    """
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="BasketStats subscription and PayTech billing API",
        version=settings.VERSION,
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    )

    # Register exception handlers
    # WHY: Consistent error bodies, and no internals leaked to callers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, store_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Request id and client info for logs and the audit trail
    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"])
    async def health_check(
        session_factory: async_sessionmaker = Depends(get_session_factory),
    ) -> dict:
        """
        Health check endpoint.

        WHY: Load balancers need to know whether this instance can reach the
        subscription store.
        """
        database = "ok"
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Health check could not reach the database: {e.__class__.__name__}")
            database = "unavailable"

        return {
            "status": "healthy" if database == "ok" else "degraded",
            "version": settings.VERSION,
            "database": database,
            "scheduler": get_scheduler_status(),
        }

    @app.on_event("startup")
    async def startup_event():
        """Start the expiration sweep and reconciliation jobs."""
        if settings.SCHEDULER_ENABLED:
            await start_scheduler()
        else:
            logger.info("Scheduler disabled by configuration")

    @app.on_event("shutdown")
    async def shutdown_event():
        await shutdown_scheduler()

    # Register API routers
    app.include_router(paytech.router, prefix=settings.API_V1_PREFIX)
    app.include_router(subscriptions.router, prefix=settings.API_V1_PREFIX)
    app.include_router(admin.router, prefix=settings.API_V1_PREFIX)

    return app


# Create application instance
app = create_app()
