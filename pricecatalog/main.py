"""FastAPI application entry point.

Price Catalog API - product identity resolution for scraped shop listings.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from collections.abc import AsyncGenerator
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pricecatalog.routes import api_router
from pricecatalog.schemas import ErrorResponse
from pricecatalog.services.registry_cache import get_registry_cache, run_periodic_refresh
from pricecatalog.settings import get_settings
from pricecatalog.stores.postgres import init_db, close_db, get_session_factory, ping_db
from pricecatalog.stores.redis import init_redis, close_redis

logger = logging.getLogger("uvicorn.error")


def _error_body(status_code: int, message: str) -> dict:
    return ErrorResponse.for_status(status_code, message).model_dump()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    settings = get_settings()
    refresh_task: asyncio.Task | None = None

    # Initialize database (skip in tests if no DB available)
    try:
        await init_db()
        await ping_db()
        logger.info("Postgres connected")

        cache = get_registry_cache()
        await cache.refresh_from(get_session_factory())
        if settings.registry_refresh_seconds > 0:
            refresh_task = asyncio.create_task(
                run_periodic_refresh(
                    cache,
                    get_session_factory(),
                    interval_seconds=settings.registry_refresh_seconds,
                )
            )
    except Exception:
        logger.exception("Postgres init failed")

    # Initialize Redis (skip in tests if no Redis available)
    try:
        await init_redis()
    except Exception:
        logger.exception("Redis init failed")

    yield

    # Shutdown
    if refresh_task is not None:
        refresh_task.cancel()
        with suppress(asyncio.CancelledError):
            await refresh_task
    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Product identity resolution and price catalog API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers for structured error format
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Wrap HTTPException detail in the structured error format."""
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, str(exc.detail)),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler returning structured error format."""
        return JSONResponse(
            status_code=500,
            content=_error_body(500, str(exc) if settings.debug else "Internal server error"),
        )

    # Health check endpoint
    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, bool]:
        """Health check endpoint."""
        return {"ok": True}

    # Include API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pricecatalog.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
