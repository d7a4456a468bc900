"""
OpenAI-compatible chat completion adapter.

Used for the Hugging Face inference router (default) and for any custom
endpoint speaking the ``/v1/chat/completions`` protocol.
"""

import json
import logging
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
    CONTENT_TYPE_JSON,
    ProviderAdapter,
    classify_provider_error,
    classify_status,
)

logger = logging.getLogger(__name__)


class OpenAICompatibleAdapter(ProviderAdapter):
    """Chat completions over HTTP with SSE streaming."""

    name = "openai-compatible"

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        default_token: str | None = None,
        bill_to: str | None = None,
        image_base_url: str | None = None,
    ):
        super().__init__(base_url or settings.INFERENCE_BASE_URL, client=client)
        self.default_token = default_token if default_token is not None else settings.HF_TOKEN
        self.bill_to = bill_to if bill_to is not None else settings.BILL_TO
        self.image_base_url = (image_base_url or settings.TEXT_TO_IMAGE_BASE_URL).rstrip("/")

    # =========================================================================
    # REQUEST BUILDING
    # =========================================================================

    def _get_headers(self, model: ModelConfig) -> dict[str, str]:
        headers = {"Content-Type": CONTENT_TYPE_JSON}
        token = model.access_token or self.default_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.bill_to and not model.endpoint_url:
            headers["X-HF-Bill-To"] = self.bill_to
        return headers

    def chat_url(self, model: ModelConfig) -> str:
        if not model.endpoint_url:
            return f"{self.base_url}/chat/completions"
        endpoint = model.endpoint_url.rstrip("/")
        if endpoint.endswith("/chat/completions"):
            return endpoint
        if endpoint.endswith("/v1"):
            return f"{endpoint}/chat/completions"
        return f"{endpoint}/v1/chat/completions"

    def model_id(self, model: ModelConfig) -> str:
        # The router addresses a specific provider as "model:provider"
        if model.endpoint_url or not model.model_provider:
            return model.model_name
        return f"{model.model_name}:{model.model_provider}"

    def _payload(self, prompt: str, model: ModelConfig, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model_id(model),
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
        }

    # =========================================================================
    # COMPLETION
    # =========================================================================

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
                    self.chat_url(model),
                    headers=self._get_headers(model),
                    json=self._payload(prompt, model, stream=False),
                    timeout=self._timeout(timeout),
                ),
                cancel_token,
            )
            if response.is_error:
                raise classify_status(response)
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise classify_provider_error(e, timeout) from e

        if not isinstance(content, str):
            raise InvalidResponseError("Completion content is not text")
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
                self.chat_url(model),
                headers=self._get_headers(model),
                json=self._payload(prompt, model, stream=True),
                timeout=self._timeout(timeout),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise classify_status(response)
                async for line in response.aiter_lines():
                    delta = parse_sse_delta(line)
                    if delta is _DONE:
                        break
                    if delta:
                        yield delta
        except ProviderError:
            raise
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise classify_provider_error(e, timeout) from e
        self._log_call(model, started, streamed=True)

    # =========================================================================
    # TEXT TO IMAGE
    # =========================================================================

    def image_url(self, model: ModelConfig) -> str:
        if model.endpoint_url:
            return model.endpoint_url.rstrip("/")
        return f"{self.image_base_url}/{model.model_name}"

    async def text_to_image(
        self,
        prompt: str,
        model: ModelConfig,
        timeout: float,
        cancel_token: CancellationToken | None = None,
    ) -> bytes:
        started = time.perf_counter()
        try:
            response = await run_cancellable(
                self.client.post(
                    self.image_url(model),
                    headers=self._get_headers(model),
                    json={"inputs": prompt},
                    timeout=self._timeout(timeout),
                ),
                cancel_token,
            )
            if response.is_error:
                raise classify_status(response)
        except httpx.HTTPError as e:
            raise classify_provider_error(e, timeout) from e

        content_type = response.headers.get("content-type", "")
        if not response.content or content_type.startswith(("application/json", "text/")):
            raise InvalidResponseError(f"Expected image bytes, got {content_type or 'empty body'}")
        self._log_call(model, started)
        return response.content


_DONE = object()


def parse_sse_delta(line: str) -> Any:
    """
    Extract the text delta from one SSE line.

    Returns the delta string, ``None`` for lines carrying no text, or the
    ``_DONE`` marker for the terminating ``[DONE]`` event.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return _DONE
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Skipping undecodable SSE line: {data[:80]}")
        return None
    if not isinstance(chunk, dict):
        raise InvalidResponseError(f"Provider stream chunk is not an object: {data[:80]}")
    if chunk.get("error"):
        raise InvalidResponseError(f"Provider stream error: {chunk['error']}")
    choices = chunk.get("choices")
    if not choices:
        return None
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise InvalidResponseError(f"Malformed choices in provider stream: {data[:80]}")
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        raise InvalidResponseError(f"Malformed delta in provider stream: {data[:80]}")
    content = delta.get("content")
    return content if isinstance(content, str) else None
