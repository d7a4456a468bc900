"""Cell repositories."""

from cellforge.repository.base import CellRepository
from cellforge.repository.memory import InMemoryRepository
from cellforge.repository.sql import SQLRepository

__all__ = ["CellRepository", "InMemoryRepository", "SQLRepository"]
