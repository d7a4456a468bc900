"""FastAPI dependencies resolving objects built at startup."""

from fastapi import Request

from cellforge.cache.two_tier_cache import TwoTierCache
from cellforge.core.exceptions import CellForgeException
from cellforge.services.generation.pipeline import GenerationPipeline


def get_pipeline(request: Request) -> GenerationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise CellForgeException("Generation pipeline not initialized", 503, "SERVICE_UNAVAILABLE")
    return pipeline


def get_cache(request: Request) -> TwoTierCache:
    return get_pipeline(request).cache


def get_access_token(request: Request) -> str | None:
    """Bearer token forwarded to the provider; no authentication happens here."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None
