"""FastAPI application factory and server entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..utils.logging import configure_logging
from .config import ApiSettings
from .deps.providers import (
    get_gateway,
    get_job_facade,
    get_job_runner,
    get_queue_store,
    get_settings,
    use_settings,
)
from .errors import register_error_handlers

logger = logging.getLogger(__name__)


def _log_config_issues() -> None:
    from ..config import validate_config

    issues = validate_config()
    for issue in issues:
        level = issue.get("level", "WARNING")
        msg = issue.get("message", "")
        if level == "ERROR":
            logger.error("Config validation: %s", msg)
        else:
            logger.warning("Config validation: %s", msg)
    if not issues:
        logger.info("Config validation: all checks passed")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    settings: ApiSettings = app.state.settings

    from ..config import LOG_FORMAT

    configure_logging(settings.log_level, LOG_FORMAT)
    logger.info("Starting catalog_jobs API on %s:%s", settings.host, settings.port)
    _log_config_issues()

    # Attach log buffer handler
    from .routers.logs import setup_log_buffer, teardown_log_buffer
    setup_log_buffer()

    # Build the engine: registry, runner, queue gateway, façade.
    await get_queue_store().initialize()
    gateway = get_gateway()
    get_job_facade()
    if settings.start_queue_workers:
        await gateway.start()

    yield

    await gateway.stop()
    await get_job_runner().shutdown()
    await get_queue_store().close()
    teardown_log_buffer()
    logger.info("Shutting down catalog_jobs API")


def create_app(settings: ApiSettings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Catalog Jobs API",
        description="Status, progress and cancellation of asynchronous catalog bulk jobs.",
        version=__version__,
        lifespan=_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    use_settings(settings)

    # CORS
    origins = [o.strip() for o in settings.cors_origins.split(",")]
    allow_creds = "*" not in origins
    if not allow_creds:
        logger.warning(
            "CORS_ORIGINS contains '*'. Credentials will NOT be allowed. "
            "Set explicit origins (e.g. 'http://localhost:5173') for "
            "credentialed cross-origin requests."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_creds,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    from .routers import all_routers

    for router in all_routers():
        app.include_router(router)

    return app


def run_server() -> None:
    """CLI entry point: ``python -m catalog_jobs.api.main``."""
    import uvicorn

    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
