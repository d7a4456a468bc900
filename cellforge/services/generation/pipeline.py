"""
Generation Pipeline
===================

Entry point that fills a dynamic column:

    Resume resolver -> Batch scheduler -> Unit generator -> Cache -> Provider

Events:
- the first event carries the column;
- every dispatched row then ends with exactly one terminal cell event;
- with ``stream_in_batch`` partial cell events (``generating=True``) are
  interleaved as text arrives.

Failures while preparing the run (no process, unreadable repository, missing
referenced column) are raised before any generation starts. Failures of
individual rows are recorded on the cell and the run continues.

Usage:
    pipeline = GenerationPipeline(repository, cache, provider_registry)
    async for event in pipeline.generate(column, options=GenerateOptions(limit=10)):
        ...
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field

from cellforge.cache.two_tier_cache import TwoTierCache
from cellforge.core.cancellation import CancellationToken
from cellforge.core.config import settings
from cellforge.core.exceptions import (
    CellForgeException,
    ColumnNotFoundError,
    InvalidGenerationOptionsError,
    PersistenceError,
    ProcessNotConfiguredError,
    RetryConfig,
    WebSearchError,
)
from cellforge.repository.base import CellRepository
from cellforge.services.generation.examples import ExampleWindow
from cellforge.services.generation.resume import compute_offset, plan_rows
from cellforge.services.generation.scheduler import BatchScheduler
from cellforge.services.generation.types import (
    Cell,
    Column,
    ColumnKind,
    Example,
    GenerateOptions,
    GenerationRequest,
    ModelConfig,
    PipelineEvent,
    Process,
    SourceSnippet,
    UnitResult,
)
from cellforge.services.generation.unit_generator import ProviderFactory, UnitGenerator
from cellforge.services.prompts import render_instruction
from cellforge.services.websearch import WebSearchClient
from cellforge.utils.logging import log_generation

logger = logging.getLogger(__name__)

ALREADY_GENERATING = "Cell is already being generated"


class InFlightRegistry:
    """Guarantees at most one generation per (column, row) at a time."""

    def __init__(self):
        self._active: set[tuple[str, int]] = set()

    def acquire(self, column_id: str, idx: int) -> bool:
        key = (column_id, idx)
        if key in self._active:
            return False
        self._active.add(key)
        return True

    def release(self, column_id: str, idx: int) -> None:
        self._active.discard((column_id, idx))

    def __len__(self) -> int:
        return len(self._active)


@dataclass
class _RunContext:
    column: Column
    process: Process
    model: ModelConfig
    rows: list[int]
    references: dict[str, dict[int, str]] = field(default_factory=dict)
    examples: ExampleWindow = field(default_factory=ExampleWindow)
    accumulate_examples: bool = False
    scope: str | None = None
    stream: bool = False
    timeout: float | None = None

    def row_data(self, idx: int) -> dict[str, str]:
        return {name: values.get(idx, "") for name, values in self.references.items()}


class GenerationPipeline:
    """Fills dynamic columns with bounded parallelism, caching and resume."""

    def __init__(
        self,
        repository: CellRepository,
        cache: TwoTierCache,
        provider_factory: ProviderFactory,
        websearch: WebSearchClient | None = None,
        concurrency: int | None = None,
        max_concurrency: int | None = None,
        few_shot_window: int | None = None,
        cache_scope: str | None = None,
        retry_config: RetryConfig | None = None,
        timeout: float | None = None,
        max_sources: int | None = None,
    ):
        self.repository = repository
        self.cache = cache
        self.websearch = websearch
        self.concurrency = settings.GENERATION_CONCURRENCY if concurrency is None else concurrency
        self.max_concurrency = settings.GENERATION_MAX_CONCURRENCY if max_concurrency is None else max_concurrency
        self.few_shot_window = settings.FEW_SHOT_WINDOW if few_shot_window is None else few_shot_window
        self.cache_scope = cache_scope or settings.CACHE_SCOPE
        self.max_sources = max_sources or settings.WEBSEARCH_MAX_SOURCES
        if retry_config is None:
            retry_config = RetryConfig.from_retries(settings.GENERATION_MAX_RETRIES)
        self.generator = UnitGenerator(cache, provider_factory, retry_config, timeout)
        self.in_flight = InFlightRegistry()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def generate(
        self,
        column: Column,
        process: Process | None = None,
        options: GenerateOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        """Generate the column's cells, yielding events as they complete."""
        async with aclosing(self._run(column, process, options, cancel_token)) as events:
            async for event in events:
                yield event

    async def regenerate_cells(
        self,
        column: Column,
        rows: list[int],
        options: GenerateOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        """Regenerate an explicit set of rows. Validated rows are still skipped."""
        async with aclosing(self._run(column, None, options, cancel_token, rows=rows)) as events:
            async for event in events:
                yield event

    async def generate_column(
        self,
        column_id: str,
        options: GenerateOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        """Load a column from the repository and generate it."""
        column = await self._read(self.repository.get_column(column_id), f"column {column_id}")
        if column is None:
            raise ColumnNotFoundError(column_id)
        async with aclosing(self._run(column, None, options, cancel_token)) as events:
            async for event in events:
                yield event

    # =========================================================================
    # RUN
    # =========================================================================

    async def _run(
        self,
        column: Column,
        process: Process | None,
        options: GenerateOptions | None,
        cancel_token: CancellationToken | None,
        rows: list[int] | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        process = process or column.process
        if column.kind != ColumnKind.DYNAMIC or process is None:
            raise ProcessNotConfiguredError(column.id)

        options = options or GenerateOptions()
        if options.offset < 0 or (options.limit is not None and options.limit < 0):
            raise InvalidGenerationOptionsError("limit and offset must be non-negative")
        concurrency = self.concurrency if options.concurrency is None else options.concurrency
        try:
            scheduler = BatchScheduler(concurrency, self.max_concurrency)
        except ValueError as e:
            raise InvalidGenerationOptionsError(str(e)) from e

        token = cancel_token or CancellationToken()
        ctx = await self._prepare(column, process, options, rows)

        logger.info(
            f"[Pipeline] Generating {len(ctx.rows)} rows of column {column.id} "
            f"(concurrency={scheduler.concurrency}, stream={ctx.stream})"
        )
        yield PipelineEvent(column=column)

        batch = scheduler.run(
            ctx.rows,
            lambda row: self._generate_row(ctx, row, token),
            cancel_token=token,
            stream=ctx.stream,
        )
        async with aclosing(batch):
            async for event in batch:
                yield event

        logger.info(
            f"[Pipeline] Column {column.id}: {scheduler.completed}/{len(ctx.rows)} rows finished"
            f"{' (cancelled)' if token.cancelled else ''}"
        )

    async def _read(self, awaitable, what: str):
        try:
            return await awaitable
        except CellForgeException:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to read {what}: {e}", original_error=e) from e

    async def _prepare(
        self,
        column: Column,
        process: Process,
        options: GenerateOptions,
        rows: list[int] | None,
    ) -> _RunContext:
        cells = await self._read(self.repository.read_cells(column.id), f"cells of {column.id}")

        references: dict[str, dict[int, str]] = {}
        for ref_id in process.columns_references:
            ref_column = await self._read(self.repository.get_column(ref_id), f"column {ref_id}")
            if ref_column is None:
                raise ColumnNotFoundError(ref_id)
            ref_cells = await self._read(self.repository.read_cells(ref_id), f"cells of {ref_id}")
            references[ref_column.name] = {
                c.idx: c.value for c in ref_cells if isinstance(c.value, str)
            }

        if rows is not None:
            validated = {c.idx for c in cells if c.validated}
            planned = sorted({r for r in rows if r >= 0 and r not in validated})
        else:
            limit = options.limit
            if limit is None:
                size = await self._read(self.repository.dataset_size(column), f"size of {column.id}")
                start = compute_offset(cells) if options.resume_from_last else options.offset
                limit = max(size - start, 0)
            planned = plan_rows(cells, limit, options.offset, options.resume_from_last)

        ctx = _RunContext(
            column=column,
            process=process,
            model=ModelConfig.from_process(process, options.access_token),
            rows=planned,
            references=references,
            accumulate_examples=not process.columns_references,
            scope=process.fingerprint() if self.cache_scope == "process" else None,
            stream=options.stream_in_batch,
            timeout=options.timeout,
        )
        ctx.examples = ExampleWindow(
            self.few_shot_window,
            seed=[
                Example(output=c.value, inputs=ctx.row_data(c.idx))
                for c in cells
                if c.validated and isinstance(c.value, str) and c.value
            ],
        )
        return ctx

    async def _search(self, ctx: _RunContext, data: dict[str, str]) -> list[SourceSnippet]:
        if not ctx.process.search_enabled or self.websearch is None:
            return []
        query = render_instruction(ctx.process.instruction, data)
        try:
            return await self.websearch.search(query, self.max_sources)
        except WebSearchError as e:
            logger.warning(f"[Pipeline] Web search failed, generating without sources: {e}")
            return []

    async def _write(self, cell: Cell) -> tuple[Cell, str | None]:
        try:
            return await self.repository.write_cell(cell), None
        except Exception as e:
            logger.error(f"[Pipeline] Failed to persist cell {cell.column_id}[{cell.idx}]: {e}")
            return cell, f"Failed to persist cell: {e}"

    async def _generate_row(
        self, ctx: _RunContext, idx: int, token: CancellationToken
    ) -> AsyncIterator[PipelineEvent]:
        column_id = ctx.column.id
        if not self.in_flight.acquire(column_id, idx):
            logger.warning(f"[Pipeline] {column_id}[{idx}] already generating, skipping")
            yield PipelineEvent(cell=Cell(column_id=column_id, idx=idx, error=ALREADY_GENERATING))
            return

        started = time.perf_counter()
        try:
            placeholder, persistence_error = await self._write(
                Cell(column_id=column_id, idx=idx, generating=True)
            )
            if ctx.stream:
                yield PipelineEvent(cell=placeholder)

            data = ctx.row_data(idx)
            sources = await self._search(ctx, data)
            request = GenerationRequest(
                instruction=ctx.process.instruction,
                model=ctx.model,
                data=data,
                examples=[] if ctx.column.is_image else ctx.examples.snapshot(),
                sources=sources,
                image=ctx.column.is_image,
                timeout=ctx.timeout,
                scope=ctx.scope,
            )

            result: UnitResult | None = None
            try:
                if ctx.stream:
                    async for partial in self.generator.stream(request, token):
                        if partial.done:
                            result = partial
                            continue
                        yield PipelineEvent(
                            cell=Cell(
                                id=placeholder.id,
                                column_id=column_id,
                                idx=idx,
                                value=partial.value,
                                generating=True,
                                sources=sources or None,
                            )
                        )
                else:
                    result = await self.generator.generate(request, token)
            except Exception as e:
                logger.exception(f"[Pipeline] Unexpected failure generating {column_id}[{idx}]")
                result = UnitResult(error=f"Generation failed: {e}", error_kind="internal", done=True)

            if result is None:
                result = UnitResult(error="Generation ended without a result", done=True)

            if result.ok and ctx.accumulate_examples and isinstance(result.value, str):
                ctx.examples.add(Example(output=result.value, inputs=data))

            final, write_error = await self._write(
                Cell(
                    id=placeholder.id,
                    column_id=column_id,
                    idx=idx,
                    value=result.value if result.ok else None,
                    error=result.error,
                    generating=False,
                    sources=sources or None,
                )
            )
            log_generation(
                column_id,
                idx,
                (time.perf_counter() - started) * 1000,
                success=result.ok,
                cached=result.cached,
                error=result.error,
            )
            yield PipelineEvent(cell=final, persistence_error=write_error or persistence_error)
        finally:
            self.in_flight.release(column_id, idx)
