"""Cell repository interface consumed by the generation pipeline."""

from abc import ABC, abstractmethod

from cellforge.services.generation.types import Cell, Column


class CellRepository(ABC):
    """
    Storage for columns and cells. Implementations own their write ordering:
    concurrent ``write_cell`` calls for different rows must be safe.
    """

    @abstractmethod
    async def get_column(self, column_id: str) -> Column | None:
        """Column with its process attached, or None."""

    @abstractmethod
    async def read_cells(self, column_id: str) -> list[Cell]:
        """All stored cells of a column ordered by row index."""

    @abstractmethod
    async def write_cell(self, cell: Cell) -> Cell:
        """Create or update the cell at ``(cell.column_id, cell.idx)``."""

    @abstractmethod
    async def dataset_size(self, column: Column) -> int:
        """Number of rows in the column's dataset."""
