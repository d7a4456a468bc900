"""SQLAlchemy models."""

from cellforge.models.dataset import (
    CellRecord,
    Dataset,
    DatasetColumn,
    GenerationProcess,
)

__all__ = ["CellRecord", "Dataset", "DatasetColumn", "GenerationProcess"]
