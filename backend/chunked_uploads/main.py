"""FastAPI application factory with robust startup sequence."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from chunked_uploads.api.errors import upload_error_handler
from chunked_uploads.api.v1.router import api_router
from chunked_uploads.api.v1.upload import router as upload_router
from chunked_uploads.config import get_settings
from chunked_uploads.exceptions import UploadError
from chunked_uploads.rate_limit import limiter
from chunked_uploads.services.container import ServiceContainer, build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan handler for startup/shutdown events.

    Backends that are down at startup are reported, not fatal: the readiness
    check keeps the instance out of rotation until they come back.
    """
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    services: ServiceContainer = app.state.services

    await services.blob_store.prepare()
    for component in services.components():
        try:
            await component.is_ready()
            logger.info(f"{component.name} available")
        except Exception as e:
            logger.warning(f"{component.name} not immediately available: {e}")

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application")
    try:
        from chunked_uploads.services.redis_manager import close_all_async
        await close_all_async()
        logger.info("Async Redis connection pool closed")
    except Exception as e:
        logger.warning(f"Error closing async Redis pool: {e}")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-built backends (tests); built from settings at startup otherwise
    """
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Receives file chunks uploaded independently and in any order, "
        "tracks per-upload progress, and emits one completion notification per upload.",
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs" if settings.environment != "production" else None,
        redoc_url=f"{settings.api_v1_prefix}/redoc" if settings.environment != "production" else None,
        lifespan=lifespan,
    )
    app.state.services = services

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(UploadError, upload_error_handler)

    # CORS middleware, extra origins via CORS_ORIGINS (comma-separated)
    default_origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://frontend:3000",
    ]
    extra_origins = [
        o.strip() for o in settings.cors_origins.split(",") if o.strip()
    ] if settings.cors_origins else []
    app.add_middleware(
        CORSMiddleware,
        allow_origins=default_origins + extra_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "Content-Type", "Accept", "Authorization", "X-Chunk-Hash"],
    )

    # Versioned API, plus the bare upload path front-end uploaders call
    app.include_router(api_router, prefix=settings.api_v1_prefix)
    app.include_router(upload_router, include_in_schema=False)

    @app.get("/")
    async def root() -> dict:
        """Root endpoint returning API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": f"{settings.api_v1_prefix}/docs",
        }

    return app


app = create_app()
