"""FastAPI application factory and server entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import ApiSettings
from .deps.providers import get_artifact_store, get_job_store, get_scheduler, get_settings, use_settings
from .errors import register_error_handlers

logger = logging.getLogger(__name__)


def _configure_logging(settings: ApiSettings) -> None:
    from training_centre.config import LOG_FORMAT

    effective_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if LOG_FORMAT == "json":
        from training_centre.utils.logging import StructuredFormatter

        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
        logging.basicConfig(level=effective_level, handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=effective_level,
            format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            force=True,
        )


def _log_config_issues() -> None:
    try:
        from training_centre.config import validate_config
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
    except Exception as e:  # noqa: BLE001
        logger.warning("Config validation could not run: %s", e)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    settings: ApiSettings = app.state.settings

    _configure_logging(settings)
    logger.info("Starting training_centre API on %s:%s", settings.host, settings.port)
    _log_config_issues()

    # Attach log buffer handler
    from .routers.logs import setup_log_buffer, teardown_log_buffer
    setup_log_buffer()

    # Initialise async resources
    store = get_job_store()
    await store.initialize()
    artifacts = get_artifact_store()
    await artifacts.initialize()

    scheduler = get_scheduler()
    if settings.start_scheduler:
        # Jobs submitted before a restart are picked up by the first sweep.
        scheduler.start()

    yield

    # Cleanup
    await scheduler.stop()
    await artifacts.close()
    await store.close()
    teardown_log_buffer()
    logger.info("Shutting down training_centre API")


def create_app(settings: ApiSettings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = get_settings()
    else:
        use_settings(settings)

    app = FastAPI(
        title="Training Centre API",
        description="Submit model training jobs to an external runner and track them to completion.",
        version="1.0.0",
        lifespan=_lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings

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

    # Error handlers
    register_error_handlers(app)

    # Routers
    from .routers import all_routers

    for router in all_routers():
        app.include_router(router)

    return app


def run_server() -> None:
    """CLI entry point: ``python -m training_centre.api.main``."""
    import uvicorn

    settings = get_settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run_server()
