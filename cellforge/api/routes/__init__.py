"""API routers."""

from fastapi import APIRouter

from cellforge.api.routes import cache, generation, health

router = APIRouter(prefix="/api/v1")
router.include_router(generation.router)
router.include_router(cache.router)

__all__ = ["router", "health"]
