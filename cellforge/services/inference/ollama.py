"""
Ollama Adapter - Local LLM inference

Talks to a local Ollama server through ``/api/chat``. Streaming responses
are newline-delimited JSON objects carrying ``message.content`` deltas.

Prerequisites: Ollama installed and running (ollama pull llama3.2)
"""

import json
import logging
import re
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx

from cellforge.core.cancellation import (
    CancellationToken,
    iterate_cancellable,
    run_cancellable,
)
from cellforge.core.config import settings
from cellforge.core.exceptions import InvalidResponseError, ProviderError
from cellforge.services.generation.types import ModelConfig
from cellforge.services.inference.base import (
    ProviderAdapter,
    classify_provider_error,
    classify_status,
)

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_MODEL = "llama3.2"
_API_SUFFIX_RE = re.compile(r"/api/(generate|chat|embeddings)/?$")


def is_ollama_endpoint(endpoint_url: str | None) -> bool:
    """Heuristic used when a process points at a custom endpoint."""
    if not endpoint_url:
        return False
    return "ollama" in endpoint_url or ":11434" in endpoint_url


def normalize_ollama_url(endpoint_url: str) -> str:
    """Strip a trailing ``/api/<op>`` so the adapter can append its own."""
    return _API_SUFFIX_RE.sub("", endpoint_url.rstrip("/"))


def _message_content(chunk: dict[str, Any]) -> str | None:
    message = chunk.get("message")
    if message is None:
        return None
    if not isinstance(message, dict):
        raise InvalidResponseError(f"Ollama message is not an object: {str(message)[:80]}")
    content = message.get("content")
    return content if isinstance(content, str) else None


class OllamaAdapter(ProviderAdapter):
    """Chat completions against a local Ollama server."""

    name = "ollama"

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        temperature: float = 0.7,
        top_p: float = 0.9,
    ):
        super().__init__(normalize_ollama_url(base_url or settings.OLLAMA_BASE_URL), client=client)
        self.temperature = temperature
        self.top_p = top_p

    def _payload(self, prompt: str, model: ModelConfig, stream: bool) -> dict[str, Any]:
        return {
            "model": model.model_name or DEFAULT_OLLAMA_MODEL,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
            "options": {"temperature": self.temperature, "top_p": self.top_p},
        }

    async def complete(
        self,
        prompt: str,
        model: ModelConfig,
        timeout: float,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        started = time.perf_counter()
        try:
            response = await run_cancellable(
                self.client.post(
                    f"{self.base_url}/api/chat",
                    json=self._payload(prompt, model, stream=False),
                    timeout=self._timeout(timeout),
                ),
                cancel_token,
            )
            if response.is_error:
                raise classify_status(response)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise classify_provider_error(e, timeout) from e

        if not isinstance(data, dict):
            raise InvalidResponseError("Ollama response is not a JSON object")
        content = _message_content(data) or data.get("response")
        if not isinstance(content, str):
            raise InvalidResponseError("Ollama response carried no message content")
        self._log_call(model, started)
        return content

    async def complete_stream(
        self,
        prompt: str,
        model: ModelConfig,
        timeout: float,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        async for delta in iterate_cancellable(
            self._stream_deltas(prompt, model, timeout), cancel_token
        ):
            yield delta

    async def _stream_deltas(
        self, prompt: str, model: ModelConfig, timeout: float
    ) -> AsyncIterator[str]:
        started = time.perf_counter()
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/api/chat",
                json=self._payload(prompt, model, stream=True),
                timeout=self._timeout(timeout),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise classify_status(response)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        # Skip invalid JSON lines
                        continue
                    if not isinstance(chunk, dict):
                        raise InvalidResponseError(f"Ollama stream line is not an object: {line[:80]}")
                    if chunk.get("error"):
                        raise InvalidResponseError(f"Ollama stream error: {chunk['error']}")
                    content = _message_content(chunk)
                    if content:
                        yield content
                    if chunk.get("done"):
                        break
        except ProviderError:
            raise
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise classify_provider_error(e, timeout) from e
        self._log_call(model, started, streamed=True)

    async def list_models(self) -> list[str]:
        """Names of the models pulled on the server."""
        try:
            response = await self.client.get(f"{self.base_url}/api/tags", timeout=10.0)
            response.raise_for_status()
            data = response.json()
            return [m["name"] for m in data.get("models", []) if "name" in m]
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            raise classify_provider_error(e) from e

    async def health_check(self) -> bool:
        try:
            await self.list_models()
            return True
        except ProviderError as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False
