"""Request/response schemas for the generation API."""

from typing import Any

from pydantic import BaseModel, Field

from cellforge.core.config import settings
from cellforge.services.generation.types import GenerateOptions


class GenerateColumnRequest(BaseModel):
    """Options for filling a column."""

    limit: int | None = Field(default=None, ge=0, description="Row slots to consider; defaults to the dataset size")
    offset: int = Field(default=0, ge=0, description="First row for a non-resumed run")
    resume_from_last: bool = Field(default=False, description="Continue after the last contiguous done row")
    stream_in_batch: bool = Field(default=False, description="Emit partial values while generating")
    concurrency: int | None = Field(
        default=None,
        ge=1,
        le=settings.GENERATION_MAX_CONCURRENCY,
        description="Cells generated in parallel",
    )
    timeout: float | None = Field(default=None, gt=0, le=600)

    def to_options(self, access_token: str | None = None) -> GenerateOptions:
        return GenerateOptions(
            limit=self.limit,
            offset=self.offset,
            resume_from_last=self.resume_from_last,
            stream_in_batch=self.stream_in_batch,
            concurrency=self.concurrency,
            access_token=access_token,
            timeout=self.timeout,
        )


class RegenerateCellsRequest(BaseModel):
    rows: list[int] = Field(..., min_length=1, max_length=1000)
    stream_in_batch: bool = False
    concurrency: int | None = Field(default=None, ge=1, le=settings.GENERATION_MAX_CONCURRENCY)

    def to_options(self, access_token: str | None = None) -> GenerateOptions:
        return GenerateOptions(
            stream_in_batch=self.stream_in_batch,
            concurrency=self.concurrency,
            access_token=access_token,
        )


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    sets: int
    size: int
    memory_hits: int = 0
    persistent_hits: int = 0
    promotions: int = 0
    pending_writes: int = 0
    corrupted_records: int = 0
    memory: dict[str, Any] = Field(default_factory=dict)
    persistent: dict[str, Any] | None = None


class CacheFlushResponse(BaseModel):
    flushed: bool
    size: int


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    cache_size: int | None = None
