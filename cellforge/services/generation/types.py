"""Data types shared by the generation pipeline."""

import base64
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from cellforge.utils.hashing import canonical_json, derive_cache_key, secure_hash


class ColumnKind(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class CellState(str, Enum):
    """Where a single cell is in its generation lifecycle."""

    PENDING = "pending"
    CACHE_CHECK = "cache_check"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    CALLING = "calling"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class SourceSnippet:
    """A web-search result used to ground a generation."""

    url: str
    text: str
    title: str | None = None


@dataclass
class Process:
    """How a dynamic column's values are produced."""

    id: str
    instruction: str
    model_name: str
    model_provider: str = "hf-inference"
    endpoint_url: str | None = None
    columns_references: list[str] = field(default_factory=list)
    search_enabled: bool = False

    def fingerprint(self) -> str:
        """Stable hash of the fields that change generated output."""
        return secure_hash(
            canonical_json(
                {
                    "instruction": self.instruction,
                    "modelName": self.model_name,
                    "modelProvider": self.model_provider,
                    "endpointUrl": self.endpoint_url,
                    "columnsReferences": self.columns_references,
                    "searchEnabled": self.search_enabled,
                }
            ),
            length=16,
        )


@dataclass
class Column:
    id: str
    name: str
    type: str = "text"
    kind: ColumnKind = ColumnKind.DYNAMIC
    visible: bool = True
    dataset_id: str | None = None
    process: Process | None = None

    @property
    def is_image(self) -> bool:
        return self.type.lower() == "image"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class Cell:
    column_id: str
    idx: int
    value: str | bytes | None = None
    error: str | None = None
    generating: bool = False
    validated: bool = False
    sources: list[SourceSnippet] | None = None
    id: str | None = None

    @property
    def is_done(self) -> bool:
        """Validated, or holding a value with no error and no generation running."""
        if self.validated:
            return True
        return bool(self.value) and not self.error and not self.generating

    def to_dict(self) -> dict[str, Any]:
        value: Any = self.value
        if isinstance(value, bytes):
            value = base64.b64encode(value).decode("ascii")
        return {
            "id": self.id,
            "column_id": self.column_id,
            "idx": self.idx,
            "value": value,
            "error": self.error,
            "generating": self.generating,
            "validated": self.validated,
            "sources": [asdict(s) for s in self.sources] if self.sources else None,
        }


@dataclass
class Example:
    """A few-shot example: the value a row should produce for its inputs."""

    output: str
    inputs: dict[str, str] = field(default_factory=dict)


@dataclass
class ModelConfig:
    model_name: str
    model_provider: str = "hf-inference"
    endpoint_url: str | None = None
    access_token: str | None = None

    @classmethod
    def from_process(cls, process: Process, access_token: str | None = None) -> "ModelConfig":
        return cls(
            model_name=process.model_name,
            model_provider=process.model_provider,
            endpoint_url=process.endpoint_url,
            access_token=access_token,
        )


@dataclass
class GenerationRequest:
    """Everything needed to generate one cell."""

    instruction: str
    model: ModelConfig
    data: dict[str, str] = field(default_factory=dict)
    examples: list[Example] = field(default_factory=list)
    sources: list[SourceSnippet] = field(default_factory=list)
    image: bool = False
    timeout: float | None = None
    scope: str | None = None

    def cache_descriptor(self) -> dict[str, Any]:
        descriptor: dict[str, Any] = {
            "task": "text-to-image" if self.image else "text",
            "modelName": self.model.model_name,
            "modelProvider": self.model.model_provider,
            "endpointUrl": self.model.endpoint_url,
            "instruction": self.instruction,
            "rowData": self.data,
        }
        if not self.image:
            descriptor["examples"] = [asdict(e) for e in self.examples]
            descriptor["usesSources"] = bool(self.sources)
        if self.scope:
            descriptor["processFingerprint"] = self.scope
        return descriptor

    def cache_key(self) -> str:
        return derive_cache_key(self.cache_descriptor())


@dataclass
class UnitResult:
    """One event from the single-unit generator."""

    value: str | bytes | None = None
    error: str | None = None
    error_kind: str | None = None
    done: bool = False
    cached: bool = False
    state: CellState = CellState.PENDING

    @property
    def ok(self) -> bool:
        return self.done and self.error is None


@dataclass
class GenerateOptions:
    limit: int | None = None
    offset: int = 0
    resume_from_last: bool = False
    stream_in_batch: bool = False
    concurrency: int | None = None
    access_token: str | None = None
    timeout: float | None = None


@dataclass
class PipelineEvent:
    """An update emitted by the pipeline: the column header or a cell."""

    column: Column | None = None
    cell: Cell | None = None
    persistence_error: str | None = None

    @property
    def done(self) -> bool:
        return self.cell is None or not self.cell.generating

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.column is not None:
            data["column"] = self.column.to_dict()
        if self.cell is not None:
            data["cell"] = self.cell.to_dict()
        if self.persistence_error:
            data["persistence_error"] = self.persistence_error
        return data
