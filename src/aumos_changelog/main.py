"""AumOS Changelog service entry point.

Initializes the FastAPI application with:
- The configured audit backend (in-memory or PostgreSQL)
- The capture interceptor, reconstruction engine and read/admin services
- Background tasks: queue worker, alert evaluator, partition manager
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from aumos_changelog.api.router import install_error_handlers, router
from aumos_changelog.observability import configure_logging, get_logger
from aumos_changelog.runtime import build_runtime
from aumos_changelog.settings import Settings

logger = get_logger(__name__)

settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Builds the runtime, ensures the current partitions and starts the
    background tasks on startup. Stops the tasks and disposes the database
    engine on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    configure_logging(settings.log_level, settings.log_json)

    logger.info("Starting changelog service", service=settings.service_name, backend=settings.backend)
    runtime = await build_runtime(settings)
    await runtime.start()
    app.state.runtime = runtime
    app.state.settings = settings
    logger.info("Changelog startup complete")

    yield

    logger.info("Shutting down changelog service")
    await runtime.close()
    logger.info("Changelog shutdown complete")


def create_app() -> FastAPI:
    """Create the FastAPI application with routes and error handlers."""
    application = FastAPI(title=settings.service_name, version="0.1.0", lifespan=lifespan)
    install_error_handlers(application)
    application.include_router(router, prefix="/api/v1")

    @application.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name}

    return application


app: FastAPI = create_app()
