"""In-process repository, used for tests and embedding."""

import asyncio
import copy
import uuid

from cellforge.repository.base import CellRepository
from cellforge.services.generation.types import Cell, Column


class InMemoryRepository(CellRepository):
    def __init__(self, dataset_sizes: dict[str, int] | None = None):
        self.columns: dict[str, Column] = {}
        self.cells: dict[str, dict[int, Cell]] = {}
        self.dataset_sizes = dict(dataset_sizes or {})
        self.write_log: list[Cell] = []
        self._lock = asyncio.Lock()

    def add_column(self, column: Column, values: list | None = None) -> Column:
        self.columns[column.id] = column
        self.cells.setdefault(column.id, {})
        for idx, value in enumerate(values or []):
            if value is not None:
                self.cells[column.id][idx] = Cell(column_id=column.id, idx=idx, value=value)
        return column

    def put_cell(self, cell: Cell) -> None:
        """Seed a cell without recording it as a pipeline write."""
        self.cells.setdefault(cell.column_id, {})[cell.idx] = copy.deepcopy(cell)

    async def get_column(self, column_id: str) -> Column | None:
        return self.columns.get(column_id)

    async def read_cells(self, column_id: str) -> list[Cell]:
        stored = self.cells.get(column_id, {})
        return [copy.deepcopy(stored[idx]) for idx in sorted(stored)]

    async def write_cell(self, cell: Cell) -> Cell:
        async with self._lock:
            stored = copy.deepcopy(cell)
            existing = self.cells.setdefault(cell.column_id, {}).get(cell.idx)
            stored.id = stored.id or (existing.id if existing else None) or uuid.uuid4().hex
            self.cells[cell.column_id][cell.idx] = stored
            self.write_log.append(copy.deepcopy(stored))
            return copy.deepcopy(stored)

    async def dataset_size(self, column: Column) -> int:
        if column.dataset_id and column.dataset_id in self.dataset_sizes:
            return self.dataset_sizes[column.dataset_id]
        # Fall back to the longest column of the same dataset
        sizes = [
            max(self.cells.get(c.id, {}), default=-1) + 1
            for c in self.columns.values()
            if c.dataset_id == column.dataset_id
        ]
        return max(sizes, default=0)
