"""Cache inspection endpoints."""

from fastapi import APIRouter, Depends

from cellforge.api.dependencies import get_cache
from cellforge.cache.two_tier_cache import TwoTierCache
from cellforge.schemas.generation import CacheFlushResponse, CacheStatsResponse

router = APIRouter(prefix="/cache", tags=["cache"])


@router.get("/stats", response_model=CacheStatsResponse)
async def cache_stats(cache: TwoTierCache = Depends(get_cache)):
    return cache.stats()


@router.post("/flush", response_model=CacheFlushResponse)
async def flush_cache(cache: TwoTierCache = Depends(get_cache)):
    """Write pending persisted entries to disk now."""
    flushed = await cache.flush()
    return CacheFlushResponse(flushed=flushed, size=cache.stats()["size"])
