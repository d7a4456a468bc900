"""Custom exception classes for CellForge.

Includes:
- Base exceptions for API errors
- Generation errors classified by kind (transient, permanent, ...)
- Retry decorator for transient provider failures
"""

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)
F = TypeVar("F", bound=Callable[..., Any])


class CellForgeException(Exception):
    """Base exception for all CellForge errors."""

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self):
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


class ColumnNotFoundError(CellForgeException):
    """Raised when a column does not exist."""

    def __init__(self, column_id: str):
        super().__init__(
            detail=f"Column with ID {column_id} not found",
            status_code=404,
            error_code="COLUMN_NOT_FOUND",
        )


class ProcessNotConfiguredError(CellForgeException):
    """Raised when a column has no generation process to run."""

    def __init__(self, column_id: str):
        super().__init__(
            detail=f"Column {column_id} has no generation process",
            status_code=422,
            error_code="PROCESS_NOT_CONFIGURED",
        )


class InvalidGenerationOptionsError(CellForgeException):
    def __init__(self, detail: str):
        super().__init__(
            detail=detail, status_code=422, error_code="INVALID_GENERATION_OPTIONS"
        )


# =============================================================================
# GENERATION ERRORS
# =============================================================================


class ErrorKind(str, Enum):
    """Coarse classification used by callers to decide what to do next."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    INVALID_RESPONSE = "invalid_response"
    CONTENT_EXHAUSTED = "content_exhausted"
    CANCELLED = "cancelled"
    CACHE_CORRUPTION = "cache_corruption"
    PERSISTENCE = "persistence"
    SEARCH = "search"


class GenerationError(CellForgeException):
    """Base exception for generation failures with retry metadata."""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(
        self,
        detail: str,
        stage: str = "generation",
        original_error: Exception | None = None,
        context: dict[str, Any] | None = None,
        retryable: bool = False,
        status_code: int = 500,
    ):
        super().__init__(
            detail=detail,
            status_code=status_code,
            error_code=f"{stage.upper()}_{self.kind.value.upper()}",
        )
        self.stage = stage
        self.original_error = original_error
        self.context = context or {}
        self.retryable = retryable

    def to_dict(self):
        base = super().to_dict()
        base.update(
            {
                "stage": self.stage,
                "kind": self.kind.value,
                "retryable": self.retryable,
                "context": self.context,
            }
        )
        return base


class ProviderError(GenerationError):
    """Failure reported by, or while talking to, a model provider."""

    def __init__(self, detail: str, original_error: Exception | None = None, **kwargs):
        kwargs.setdefault("stage", "inference")
        super().__init__(detail=detail, original_error=original_error, **kwargs)


class TransientProviderError(ProviderError):
    kind = ErrorKind.TRANSIENT

    def __init__(self, detail: str, original_error: Exception | None = None, **kwargs):
        kwargs.setdefault("retryable", True)
        kwargs.setdefault("status_code", 503)
        super().__init__(detail=detail, original_error=original_error, **kwargs)


class ProviderTimeoutError(TransientProviderError):
    """Provider did not answer within the configured timeout."""

    def __init__(self, timeout: float | None = None, original_error: Exception | None = None):
        detail = "Provider request timed out"
        if timeout is not None:
            detail = f"Provider request timed out after {timeout:g}s"
        super().__init__(
            detail=detail,
            original_error=original_error,
            context={"timeout": timeout} if timeout is not None else None,
            status_code=504,
        )


class RateLimitedError(TransientProviderError):
    def __init__(self, detail: str = "Provider rate limit exceeded", **kwargs):
        kwargs.setdefault("status_code", 429)
        super().__init__(detail=detail, **kwargs)


class ProviderTransportError(TransientProviderError):
    """Network or upstream server failure."""


class PermanentProviderError(ProviderError):
    kind = ErrorKind.PERMANENT

    def __init__(self, detail: str, original_error: Exception | None = None, **kwargs):
        kwargs.setdefault("status_code", 502)
        super().__init__(detail=detail, original_error=original_error, **kwargs)


class AuthenticationFailedError(PermanentProviderError):
    """Provider rejected the credentials."""

    def __init__(self, detail: str = "Provider rejected the access token", **kwargs):
        kwargs.setdefault("status_code", 401)
        super().__init__(detail=detail, **kwargs)


class InvalidModelError(PermanentProviderError):
    """Model unknown to the provider, or operation not supported for it."""


class InvalidResponseError(ProviderError):
    kind = ErrorKind.INVALID_RESPONSE

    def __init__(self, detail: str = "Provider returned an invalid response", **kwargs):
        kwargs.setdefault("status_code", 502)
        super().__init__(detail=detail, **kwargs)


class ContentExhaustedError(GenerationError):
    """The model signalled that it has no more items to produce."""

    kind = ErrorKind.CONTENT_EXHAUSTED

    def __init__(self, response: str):
        super().__init__(
            detail=response.strip() or "No more items",
            stage="generation",
            status_code=409,
        )


class GenerationCancelledError(GenerationError):
    kind = ErrorKind.CANCELLED

    def __init__(self, detail: str = "Generation cancelled"):
        super().__init__(detail=detail, stage="generation", status_code=499)


class CacheCorruptionError(GenerationError):
    """A persisted cache record could not be decoded."""

    kind = ErrorKind.CACHE_CORRUPTION

    def __init__(self, detail: str, original_error: Exception | None = None, line: int | None = None):
        super().__init__(
            detail=detail,
            stage="cache",
            original_error=original_error,
            context={"line": line} if line is not None else None,
        )


class PersistenceError(GenerationError):
    """Reading from or writing to the cell repository failed."""

    kind = ErrorKind.PERSISTENCE

    def __init__(self, detail: str, original_error: Exception | None = None, **kwargs):
        super().__init__(
            detail=detail, stage="persistence", original_error=original_error, **kwargs
        )


class WebSearchError(GenerationError):
    kind = ErrorKind.SEARCH

    def __init__(self, detail: str, original_error: Exception | None = None):
        super().__init__(detail=detail, stage="search", original_error=original_error)


# =============================================================================
# RETRY
# =============================================================================


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 1
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.25
    retryable_exceptions: tuple = field(
        default_factory=lambda: (TransientProviderError,)
    )

    @classmethod
    def from_retries(cls, retries: int, **kwargs) -> "RetryConfig":
        """Build a config allowing ``retries`` extra attempts."""
        return cls(max_attempts=max(1, retries + 1), **kwargs)

    def delay_for(self, attempt: int) -> float:
        delay = min(
            self.initial_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )
        if self.jitter:
            delay += delay * self.jitter_factor * random.random()
        return delay


NO_RETRY = RetryConfig(max_attempts=1)


def with_retry(
    config: RetryConfig | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
):
    """
    Retry decorator with exponential backoff for coroutine functions.

    Only exceptions listed in ``config.retryable_exceptions`` are retried;
    anything else propagates on the first attempt.

    Example:
        @with_retry(config=RetryConfig(max_attempts=3))
        async def call_model(prompt: str) -> str:
            ...
    """
    config = config or NO_RETRY

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            for attempt in range(1, config.max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except config.retryable_exceptions as e:
                    if attempt >= config.max_attempts:
                        raise
                    delay = config.delay_for(attempt)
                    logger.warning(
                        f"[Retry] {func.__name__} attempt {attempt}/{config.max_attempts} "
                        f"failed ({e}). Retrying in {delay:.2f}s..."
                    )
                    if on_retry:
                        on_retry(attempt, e, delay)
                    await asyncio.sleep(delay)

        return async_wrapper  # type: ignore[return-value]

    return decorator
