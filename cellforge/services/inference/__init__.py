"""Language-model provider adapters."""

from cellforge.services.inference.base import (
    ProviderAdapter,
    classify_provider_error,
    classify_status,
)
from cellforge.services.inference.ollama import OllamaAdapter
from cellforge.services.inference.openai_compatible import OpenAICompatibleAdapter
from cellforge.services.inference.registry import ProviderRegistry, get_provider_adapter

__all__ = [
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "ProviderAdapter",
    "ProviderRegistry",
    "classify_provider_error",
    "classify_status",
    "get_provider_adapter",
]
