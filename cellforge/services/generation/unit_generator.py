"""
Single-Unit Generator
=====================

Produces the value of exactly one cell.

State machine::

    PENDING -> CACHE_CHECK -> CACHE_HIT -> DONE
                           -> CACHE_MISS -> CALLING -> STREAMING -> DONE
                                                    -> ERROR

Every run ends in exactly one terminal result (``done=True``) carrying either
a value or an error. Streaming runs emit partial results first; their values
are the text accumulated so far and never shrink.

Only final successful values are cached. A response containing
``no more items`` is a ``ContentExhaustedError``, never a value.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from cellforge.cache.two_tier_cache import TwoTierCache
from cellforge.core.cancellation import CancellationToken
from cellforge.core.config import settings
from cellforge.core.exceptions import (
    ContentExhaustedError,
    ErrorKind,
    GenerationError,
    InvalidResponseError,
    NO_RETRY,
    PersistenceError,
    RetryConfig,
    with_retry,
)
from cellforge.services.generation.types import (
    CellState,
    GenerationRequest,
    ModelConfig,
    UnitResult,
)
from cellforge.services.inference.base import ProviderAdapter
from cellforge.services.prompts import (
    is_exhausted,
    materialize_prompt,
    render_instruction,
)

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ModelConfig], ProviderAdapter]


def _error_result(error: GenerationError) -> UnitResult:
    return UnitResult(
        error=error.detail,
        error_kind=error.kind.value,
        done=True,
        state=CellState.CANCELLED if error.kind == ErrorKind.CANCELLED else CellState.ERROR,
    )


class UnitGenerator:
    """Cache-aware generation of one cell through a provider adapter."""

    def __init__(
        self,
        cache: TwoTierCache,
        provider_factory: ProviderFactory,
        retry_config: RetryConfig | None = None,
        default_timeout: float | None = None,
    ):
        self.cache = cache
        self.provider_factory = provider_factory
        self.retry_config = retry_config or NO_RETRY
        self.default_timeout = default_timeout or settings.INFERENCE_TIMEOUT_SECONDS

    def build_prompt(self, request: GenerationRequest) -> str:
        if request.image:
            return render_instruction(request.instruction, request.data).strip()
        return materialize_prompt(
            request.instruction, request.data, request.sources, request.examples
        )

    async def _cache_lookup(self, key: str) -> UnitResult | None:
        lookup = await self.cache.get(key)
        if not lookup.hit:
            return None
        logger.debug(f"[UnitGenerator] Cache hit {key[:12]}")
        return UnitResult(value=lookup.value, done=True, cached=True, state=CellState.CACHE_HIT)

    async def _cache_store(self, key: str, value: str | bytes) -> None:
        try:
            await self.cache.set(key, value)
        except PersistenceError as e:
            # The value is in memory; only the durable copy is late
            logger.error(f"[UnitGenerator] Cache flush failed: {e}")

    def _check_value(self, value: str | bytes) -> None:
        if isinstance(value, bytes):
            if not value:
                raise InvalidResponseError("Provider returned an empty image")
            return
        if not value.strip():
            raise InvalidResponseError("Provider returned an empty response")
        if is_exhausted(value):
            raise ContentExhaustedError(value)

    # =========================================================================
    # NON-STREAMING
    # =========================================================================

    async def generate(
        self, request: GenerationRequest, cancel_token: CancellationToken | None = None
    ) -> UnitResult:
        """Run one cell to completion and return its terminal result."""
        key = request.cache_key()
        cached = await self._cache_lookup(key)
        if cached is not None:
            return cached

        provider = self.provider_factory(request.model)
        prompt = self.build_prompt(request)
        timeout = request.timeout or self.default_timeout

        @with_retry(config=self.retry_config)
        async def _call() -> str | bytes:
            if request.image:
                return await provider.text_to_image(prompt, request.model, timeout, cancel_token)
            return await provider.complete(prompt, request.model, timeout, cancel_token)

        try:
            value = await _call()
            self._check_value(value)
        except GenerationError as e:
            return _error_result(e)

        await self._cache_store(key, value)
        return UnitResult(value=value, done=True, state=CellState.DONE)

    # =========================================================================
    # STREAMING
    # =========================================================================

    async def stream(
        self, request: GenerationRequest, cancel_token: CancellationToken | None = None
    ) -> AsyncIterator[UnitResult]:
        """
        Yield partial results followed by exactly one terminal result.
        Image requests cannot stream and yield only the terminal result.
        """
        if request.image:
            yield await self.generate(request, cancel_token)
            return

        key = request.cache_key()
        cached = await self._cache_lookup(key)
        if cached is not None:
            yield cached
            return

        provider = self.provider_factory(request.model)
        prompt = self.build_prompt(request)
        timeout = request.timeout or self.default_timeout

        accumulated = ""
        attempt = 1
        while True:
            try:
                async for delta in provider.complete_stream(
                    prompt, request.model, timeout, cancel_token
                ):
                    if not delta:
                        continue
                    accumulated += delta
                    yield UnitResult(value=accumulated, done=False, state=CellState.STREAMING)
                self._check_value(accumulated)
                break
            except GenerationError as e:
                # Retrying after output was shown would rewind the cell
                can_retry = (
                    not accumulated
                    and isinstance(e, self.retry_config.retryable_exceptions)
                    and attempt < self.retry_config.max_attempts
                )
                if not can_retry:
                    yield _error_result(e)
                    return
                delay = self.retry_config.delay_for(attempt)
                logger.warning(f"[UnitGenerator] Stream attempt {attempt} failed ({e}), retrying in {delay:.2f}s")
                attempt += 1
                await asyncio.sleep(delay)

        await self._cache_store(key, accumulated)
        yield UnitResult(value=accumulated, done=True, state=CellState.DONE)
