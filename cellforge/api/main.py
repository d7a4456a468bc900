"""
CellForge API

Startup builds the shared generation stack (database, two-tier cache,
provider registry, web search, pipeline) and stores it on ``app.state``.
Shutdown stops the cache sweeper, flushes the persisted cache and closes
HTTP clients.

Run:
    uvicorn cellforge.api.main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cellforge.api.middleware import exception_handler, generic_exception_handler
from cellforge.api.routes import health
from cellforge.api.routes import router as api_router
from cellforge.cache.two_tier_cache import CacheSweeper, close_generation_cache, get_generation_cache
from cellforge.core.config import settings
from cellforge.core.exceptions import CellForgeException
from cellforge.database import init_db
from cellforge.repository.sql import SQLRepository
from cellforge.services.generation.pipeline import GenerationPipeline
from cellforge.services.inference.registry import ProviderRegistry
from cellforge.services.websearch import SerperSearchClient
from cellforge.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager - handles startup and shutdown."""
    # ==================== STARTUP ====================
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    settings.validate_required()

    init_db()

    cache = get_generation_cache()
    sweeper = CacheSweeper(cache, interval=settings.CACHE_SWEEP_INTERVAL_SECONDS)
    sweeper.start()

    providers = ProviderRegistry()
    websearch = SerperSearchClient() if settings.SERPER_API_KEY else None
    if websearch is None:
        logger.info("SERPER_API_KEY not set; search-enabled columns generate without sources")

    app.state.pipeline = GenerationPipeline(
        repository=SQLRepository(),
        cache=cache,
        provider_factory=providers,
        websearch=websearch,
    )
    logger.info("Generation pipeline ready")

    yield

    # ==================== SHUTDOWN ====================
    logger.info("Shutting down")
    app.state.pipeline = None
    await sweeper.stop()
    await close_generation_cache()
    await providers.aclose()
    if websearch is not None:
        await websearch.aclose()
    logger.info("Shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Fill dataset columns with AI-generated values",
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan if use_lifespan else None,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CellForgeException, exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health.router)
    app.include_router(api_router)
    return app


app = create_app()
