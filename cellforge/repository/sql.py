"""SQLAlchemy-backed cell repository."""

import asyncio
import logging
import threading
from dataclasses import asdict

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload, sessionmaker

from cellforge.core.exceptions import PersistenceError
from cellforge.database import get_session_factory, session_scope
from cellforge.models import CellRecord, Dataset, DatasetColumn, GenerationProcess
from cellforge.repository.base import CellRepository
from cellforge.services.generation.types import (
    Cell,
    Column,
    ColumnKind,
    Process,
    SourceSnippet,
)

logger = logging.getLogger(__name__)


def _to_process(row: GenerationProcess) -> Process:
    return Process(
        id=row.id,
        instruction=row.instruction,
        model_name=row.model_name,
        model_provider=row.model_provider,
        endpoint_url=row.endpoint_url,
        columns_references=list(row.columns_references or []),
        search_enabled=row.search_enabled,
    )


def _to_column(row: DatasetColumn) -> Column:
    return Column(
        id=row.id,
        name=row.name,
        type=row.type,
        kind=ColumnKind(row.kind),
        visible=row.visible,
        dataset_id=row.dataset_id,
        process=_to_process(row.process) if row.process else None,
    )


def _to_cell(row: CellRecord) -> Cell:
    return Cell(
        id=row.id,
        column_id=row.column_id,
        idx=row.idx,
        value=row.value_bytes if row.value_bytes is not None else row.value,
        error=row.error,
        generating=row.generating,
        validated=row.validated,
        sources=[SourceSnippet(**s) for s in row.sources] if row.sources else None,
    )


class SQLRepository(CellRepository):
    """
    Runs blocking database work in worker threads. Writes are serialized
    behind a lock because SQLite allows a single writer.
    """

    def __init__(self, session_factory: sessionmaker | None = None):
        self._session_factory = session_factory
        self._write_lock = threading.Lock()

    @property
    def session_factory(self) -> sessionmaker:
        return self._session_factory or get_session_factory()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database operation failed: {e}", original_error=e) from e

    # =========================================================================
    # READS
    # =========================================================================

    def _get_column_sync(self, column_id: str) -> Column | None:
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(DatasetColumn)
                .options(selectinload(DatasetColumn.process))
                .where(DatasetColumn.id == column_id)
            ).scalar_one_or_none()
            return _to_column(row) if row else None

    async def get_column(self, column_id: str) -> Column | None:
        return await self._run(self._get_column_sync, column_id)

    def _read_cells_sync(self, column_id: str) -> list[Cell]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(CellRecord).where(CellRecord.column_id == column_id).order_by(CellRecord.idx)
            ).scalars()
            return [_to_cell(r) for r in rows]

    async def read_cells(self, column_id: str) -> list[Cell]:
        return await self._run(self._read_cells_sync, column_id)

    def _dataset_size_sync(self, dataset_id: str | None) -> int:
        if dataset_id is None:
            return 0
        with session_scope(self.session_factory) as session:
            dataset = session.get(Dataset, dataset_id)
            return dataset.size if dataset else 0

    async def dataset_size(self, column: Column) -> int:
        return await self._run(self._dataset_size_sync, column.dataset_id)

    # =========================================================================
    # WRITES
    # =========================================================================

    def _write_cell_sync(self, cell: Cell) -> Cell:
        with self._write_lock, session_scope(self.session_factory) as session:
            row = session.execute(
                select(CellRecord).where(
                    CellRecord.column_id == cell.column_id, CellRecord.idx == cell.idx
                )
            ).scalar_one_or_none()
            if row is None:
                row = CellRecord(column_id=cell.column_id, idx=cell.idx)
                session.add(row)

            if isinstance(cell.value, bytes):
                row.value, row.value_bytes = None, cell.value
            else:
                row.value, row.value_bytes = cell.value, None
            row.error = cell.error
            row.generating = cell.generating
            row.validated = cell.validated
            row.sources = [asdict(s) for s in cell.sources] if cell.sources else None
            session.flush()
            return _to_cell(row)

    async def write_cell(self, cell: Cell) -> Cell:
        return await self._run(self._write_cell_sync, cell)

    # =========================================================================
    # SEEDING (dataset import is handled elsewhere; these help embedding and tests)
    # =========================================================================

    def create_dataset(self, name: str, size: int) -> str:
        with session_scope(self.session_factory) as session:
            dataset = Dataset(name=name, size=size)
            session.add(dataset)
            session.flush()
            return dataset.id

    def create_column(
        self,
        dataset_id: str,
        name: str,
        process: Process | None = None,
        type: str = "text",
        kind: ColumnKind = ColumnKind.DYNAMIC,
    ) -> Column:
        with session_scope(self.session_factory) as session:
            row = DatasetColumn(dataset_id=dataset_id, name=name, type=type, kind=kind.value)
            if process is not None:
                row.process = GenerationProcess(
                    instruction=process.instruction,
                    model_name=process.model_name,
                    model_provider=process.model_provider,
                    endpoint_url=process.endpoint_url,
                    columns_references=list(process.columns_references),
                    search_enabled=process.search_enabled,
                )
            session.add(row)
            session.flush()
            return _to_column(row)
