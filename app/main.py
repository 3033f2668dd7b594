"""FastAPI application factory for the clinic API."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.router import api_router
from app.config import settings
from app.core.exceptions import AppException
from app.core.integrations import build_integrations
from app.core.redis_client import check_redis_connection, close_redis_connection
from app.database import check_database_connection, engine
from app.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.middleware.logging import LoggingMiddleware, configure_logging

configure_logging()
logger = structlog.get_logger()

# Most specific first; Exception is the catch-all that hides internals
EXCEPTION_HANDLERS = (
    (AppException, app_exception_handler),
    (StarletteHTTPException, http_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (Exception, general_exception_handler),
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Build shared provider clients on startup and release every pool on shutdown.

    Neither PostgreSQL nor Redis being down stops startup; the readiness
    probe reports them instead.
    """
    logger.info("application_startup", environment=settings.environment)

    app.state.integrations = build_integrations(settings)
    logger.info("integrations_initialized", **app.state.integrations.status())

    if await check_database_connection():
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed")

    if await check_redis_connection():
        logger.info("redis_connected")
    else:
        logger.warning("redis_unavailable", cache="disabled")

    yield

    logger.info("application_shutdown")
    await app.state.integrations.aclose()
    await engine.dispose()
    close_redis_connection()
    logger.info("resources_released")


def _instrument(app: FastAPI) -> None:
    """Expose Prometheus request metrics on /metrics."""
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/docs", "/redoc", "/openapi.json", "/metrics"],
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


def create_app() -> FastAPI:
    """
    Assemble the API.

    Interactive docs are disabled in production.

    Returns:
        Configured FastAPI application
    """
    docs = not settings.is_production
    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Telehealth clinic API: appointment booking, payments and Stripe webhooks",
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(LoggingMiddleware)

    for exc_class, handler in EXCEPTION_HANDLERS:
        application.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]

    application.include_router(api_router, prefix=settings.api_v1_prefix)
    _instrument(application)

    @application.get("/", tags=["Root"], include_in_schema=False)
    async def root() -> dict[str, str | None]:
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": application.docs_url,
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
