"""Health check."""

from fastapi import APIRouter, Request

from cellforge.core.config import settings
from cellforge.schemas.generation import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    pipeline = getattr(request.app.state, "pipeline", None)
    return HealthResponse(
        status="ok" if pipeline is not None else "starting",
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        cache_size=pipeline.cache.stats()["size"] if pipeline is not None else None,
    )
