"""CellForge: AI-generated dataset columns."""

__version__ = "0.4.0"
