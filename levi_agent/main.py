"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from levi_agent.api import router as api_router
from levi_agent.core.config import get_settings
from levi_agent.core.logging import get_logger
from levi_agent.core.tenant_cache import TenantCache

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Own the process-wide tenant cache for the lifetime of the app."""
    settings = get_settings()
    cache = TenantCache(cleanup_interval=settings.CACHE_CLEANUP_INTERVAL_SECONDS)
    await cache.init()
    app.state.tenant_cache = cache
    logger.info(f"Levi context service starting (env={settings.LEVI_ENV})")

    try:
        yield
    finally:
        await cache.dispose()
        logger.info("Levi context service stopped")


app = FastAPI(
    title="Levi Context Service",
    description="Tenant cache, retrieval and model routing for the Levi AI agent",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
