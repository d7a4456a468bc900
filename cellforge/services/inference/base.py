"""Provider adapter interface and shared HTTP error classification."""

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from cellforge.core.cancellation import CancellationToken
from cellforge.core.exceptions import (
    AuthenticationFailedError,
    InvalidModelError,
    InvalidResponseError,
    ProviderError,
    ProviderTimeoutError,
    ProviderTransportError,
    RateLimitedError,
)
from cellforge.services.generation.types import ModelConfig
from cellforge.utils.logging import log_model_inference

logger = logging.getLogger(__name__)

CONTENT_TYPE_JSON = "application/json"


def _error_message(response: httpx.Response) -> str:
    """Best-effort extraction of the provider's own error text."""
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError, httpx.ResponseNotRead):
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
        if body.get("message"):
            return str(body["message"])
    return response.reason_phrase or f"HTTP {response.status_code}"


def classify_status(response: httpx.Response, error: Exception | None = None) -> ProviderError:
    """Map a non-2xx provider response onto the error taxonomy."""
    status = response.status_code
    message = _error_message(response)
    context = {"status_code": status}

    if status in (408, 504):
        return ProviderTimeoutError(original_error=error)
    if status == 429:
        return RateLimitedError(f"Rate limited by provider: {message}", original_error=error, context=context)
    if status in (401, 403):
        return AuthenticationFailedError(f"Provider rejected credentials: {message}", original_error=error, context=context)
    if status in (400, 404, 410, 422):
        return InvalidModelError(f"Provider rejected the request: {message}", original_error=error, context=context)
    if status >= 500:
        return ProviderTransportError(f"Provider server error {status}: {message}", original_error=error, context=context)
    return InvalidResponseError(f"Unexpected provider status {status}: {message}", original_error=error, context=context)


def classify_provider_error(error: Exception, timeout: float | None = None) -> ProviderError:
    """Map an httpx or decoding exception onto the error taxonomy."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return ProviderTimeoutError(timeout, original_error=error)
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response, error)
    if isinstance(error, httpx.TransportError):
        return ProviderTransportError(f"Could not reach provider: {error}", original_error=error)
    if isinstance(error, (json.JSONDecodeError, KeyError, IndexError, TypeError, ValueError, AttributeError)):
        return InvalidResponseError(f"Could not decode provider response: {error}", original_error=error)
    return ProviderTransportError(f"Provider call failed: {error}", original_error=error)


class ProviderAdapter(ABC):
    """
    Narrow interface over a language-model provider.

    Implementations never retry internally; failures surface as
    ``ProviderError`` subclasses so callers can decide.
    """

    name: str = "provider"

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, connect_timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=connect_timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
        self._closed = False

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        model: ModelConfig,
        timeout: float,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """Return the full completion text."""

    @abstractmethod
    def complete_stream(
        self,
        prompt: str,
        model: ModelConfig,
        timeout: float,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Yield completion text deltas as they arrive."""

    async def text_to_image(
        self,
        prompt: str,
        model: ModelConfig,
        timeout: float,
        cancel_token: CancellationToken | None = None,
    ) -> bytes:
        raise InvalidModelError(f"{self.name} does not support text-to-image")

    def _timeout(self, timeout: float) -> httpx.Timeout:
        return httpx.Timeout(timeout, connect=min(10.0, timeout))

    def _log_call(self, model: ModelConfig, started: float, streamed: bool = False) -> None:
        log_model_inference(
            model.model_name,
            model.model_provider or self.name,
            (time.perf_counter() - started) * 1000,
            streamed=streamed,
        )

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._closed:
            return
        self._closed = True
        if self._owns_client:
            await self.client.aclose()
            logger.debug(f"Closed HTTP client for {self.name} at {self.base_url}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
