"""
Shared test fixtures.

Provides an isolated environment (temporary data dir, in-memory SQLite),
a scriptable fake provider adapter and a small two-column dataset.
"""

import asyncio
import os
import re
import tempfile
from collections.abc import Callable

# Set test environment BEFORE importing modules
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="cellforge-tests-")
os.environ["ENVIRONMENT"] = "test"
os.environ["DATA_DIR"] = _TEST_DATA_DIR
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_FORMAT"] = "pretty"
os.environ.pop("SERPER_API_KEY", None)
os.environ.pop("LOG_FILE", None)

import pytest

from cellforge.cache.memory_cache import MemoryCache
from cellforge.cache.persistent_cache import PersistentCache
from cellforge.cache.two_tier_cache import TwoTierCache
from cellforge.core.cancellation import run_cancellable
from cellforge.core.exceptions import NO_RETRY
from cellforge.repository.memory import InMemoryRepository
from cellforge.services.generation.pipeline import GenerationPipeline
from cellforge.services.generation.types import Column, ColumnKind, ModelConfig, Process
from cellforge.services.inference.base import ProviderAdapter

# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (database, HTTP app)")
    config.addinivalue_line("markers", "slow: Slow running tests")


# =============================================================================
# FAKE PROVIDER
# =============================================================================

_ROW_RE = re.compile(r"item-(\d+)")


def row_responder(prompt: str, model: ModelConfig) -> str:
    """Answer ``row-<n>`` for an instruction that mentions ``item-<n>``."""
    instruction = prompt.split("# User Instruction")[-1]
    match = _ROW_RE.search(instruction)
    return f"row-{match.group(1)}" if match else "value"


class FakeProvider(ProviderAdapter):
    """
    Scriptable provider. ``responder`` returns the completion text or an
    exception instance to raise. Tracks concurrent calls.
    """

    name = "fake"

    def __init__(
        self,
        responder: Callable[[str, ModelConfig], str | Exception] = row_responder,
        delay: float | Callable[[str], float] = 0.0,
        chunk_size: int = 2,
        image: bytes = b"\x89PNG\r\n\x1a\nfake-image",
    ):
        super().__init__("http://fake.invalid")
        self.responder = responder
        self.delay = delay
        self.chunk_size = chunk_size
        self.image = image
        self.calls: list[str] = []
        self.image_calls: list[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def _respond(self, prompt: str, model: ModelConfig) -> str:
        self.calls.append(prompt)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            delay = self.delay(prompt) if callable(self.delay) else self.delay
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            result = self.responder(prompt, model)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1

    async def complete(self, prompt, model, timeout, cancel_token=None) -> str:
        return await run_cancellable(self._respond(prompt, model), cancel_token)

    async def complete_stream(self, prompt, model, timeout, cancel_token=None):
        text = await self.complete(prompt, model, timeout, cancel_token)
        for i in range(0, len(text), self.chunk_size):
            yield text[i : i + self.chunk_size]
            await asyncio.sleep(0)

    async def text_to_image(self, prompt, model, timeout, cancel_token=None) -> bytes:
        self.image_calls.append(prompt)
        await asyncio.sleep(0)
        return self.image


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    """Factory for providers with custom behaviour."""
    return FakeProvider


@pytest.fixture
def generation_cache(tmp_path) -> TwoTierCache:
    return TwoTierCache(
        MemoryCache(max_entries=1000, default_ttl=3600),
        PersistentCache(tmp_path / "prompt-cache.jsonl", flush_every=5),
    )


@pytest.fixture
def describe_process() -> Process:
    return Process(
        id="proc-describe",
        instruction="Describe {{Name}}",
        model_name="test-model",
        model_provider="fake",
        columns_references=["col-name"],
    )


@pytest.fixture
def repository(describe_process) -> InMemoryRepository:
    """Dataset of 10 rows: a static ``Name`` column and a dynamic ``Description``."""
    repo = InMemoryRepository(dataset_sizes={"ds-1": 10})
    repo.add_column(
        Column(id="col-name", name="Name", kind=ColumnKind.STATIC, dataset_id="ds-1"),
        values=[f"item-{i}" for i in range(10)],
    )
    repo.add_column(
        Column(
            id="col-desc",
            name="Description",
            kind=ColumnKind.DYNAMIC,
            dataset_id="ds-1",
            process=describe_process,
        )
    )
    return repo


@pytest.fixture
def make_pipeline(repository, generation_cache):
    def _make(provider: ProviderAdapter, **kwargs) -> GenerationPipeline:
        kwargs.setdefault("concurrency", 5)
        kwargs.setdefault("max_concurrency", 10)
        kwargs.setdefault("few_shot_window", 10)
        kwargs.setdefault("cache_scope", "content")
        kwargs.setdefault("retry_config", NO_RETRY)
        kwargs.setdefault("timeout", 5)
        return GenerationPipeline(
            repository, generation_cache, provider_factory=lambda model: provider, **kwargs
        )

    return _make


@pytest.fixture
def pipeline(make_pipeline, fake_provider) -> GenerationPipeline:
    return make_pipeline(fake_provider)
