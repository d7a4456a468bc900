"""Provider selection and adapter lifetime management."""

import logging

from cellforge.core.config import settings
from cellforge.services.generation.types import ModelConfig
from cellforge.services.inference.base import ProviderAdapter
from cellforge.services.inference.ollama import (
    OllamaAdapter,
    is_ollama_endpoint,
    normalize_ollama_url,
)
from cellforge.services.inference.openai_compatible import OpenAICompatibleAdapter

logger = logging.getLogger(__name__)


def uses_ollama(model: ModelConfig) -> bool:
    return model.model_provider == "ollama" or is_ollama_endpoint(model.endpoint_url)


def get_provider_adapter(model: ModelConfig) -> ProviderAdapter:
    """Build a fresh adapter for ``model``. Callers own its lifetime."""
    if uses_ollama(model):
        return OllamaAdapter(base_url=model.endpoint_url)
    return OpenAICompatibleAdapter()


class ProviderRegistry:
    """
    Hands out one adapter per provider kind and base URL so HTTP connection
    pools are shared across generations. Callable, so it can be passed where
    a ``ModelConfig -> ProviderAdapter`` factory is expected.
    """

    def __init__(self):
        self._adapters: dict[tuple[str, str], ProviderAdapter] = {}

    def _key(self, model: ModelConfig) -> tuple[str, str]:
        if uses_ollama(model):
            return "ollama", normalize_ollama_url(model.endpoint_url or settings.OLLAMA_BASE_URL)
        # Custom endpoints are resolved per request; one pool serves all
        return "openai-compatible", ""

    def get(self, model: ModelConfig) -> ProviderAdapter:
        key = self._key(model)
        existing = self._adapters.get(key)
        if existing is not None and not existing.is_closed:
            return existing

        adapter = get_provider_adapter(model)
        self._adapters[key] = adapter
        logger.info(f"[ProviderRegistry] Created {adapter.name} adapter for {adapter.base_url}")
        return adapter

    __call__ = get

    def __len__(self) -> int:
        return len(self._adapters)

    async def aclose(self) -> None:
        for adapter in list(self._adapters.values()):
            await adapter.aclose()
        self._adapters.clear()
