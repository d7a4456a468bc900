"""
Dataset, column, process and cell models.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from cellforge.database import Base


def utcnow():
    """Get current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class Dataset(Base):
    __tablename__ = "datasets"

    id = Column(String(32), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    size = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP, default=utcnow)

    columns = relationship("DatasetColumn", back_populates="dataset", cascade="all, delete-orphan")


class DatasetColumn(Base):
    """A column of a dataset; dynamic columns own one generation process."""

    __tablename__ = "columns"

    id = Column(String(32), primary_key=True, default=new_id)
    dataset_id = Column(String(32), ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False, default="text")
    kind = Column(String(20), nullable=False, default="dynamic")
    visible = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP, default=utcnow)

    dataset = relationship("Dataset", back_populates="columns")
    process = relationship(
        "GenerationProcess", back_populates="column", uselist=False, cascade="all, delete-orphan"
    )


class GenerationProcess(Base):
    __tablename__ = "processes"

    id = Column(String(32), primary_key=True, default=new_id)
    column_id = Column(String(32), ForeignKey("columns.id", ondelete="CASCADE"), nullable=False, unique=True)
    instruction = Column(Text, nullable=False)
    model_name = Column(String(255), nullable=False)
    model_provider = Column(String(100), nullable=False, default="hf-inference")
    endpoint_url = Column(Text)
    columns_references = Column(JSON, nullable=False, default=list)
    search_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    column = relationship("DatasetColumn", back_populates="process")


class CellRecord(Base):
    """A single cell value. Text values live in ``value``, images in ``value_bytes``."""

    __tablename__ = "cells"

    id = Column(String(32), primary_key=True, default=new_id)
    column_id = Column(String(32), ForeignKey("columns.id", ondelete="CASCADE"), nullable=False)
    idx = Column(Integer, nullable=False)
    value = Column(Text)
    value_bytes = Column(LargeBinary)
    error = Column(Text)
    generating = Column(Boolean, nullable=False, default=False)
    validated = Column(Boolean, nullable=False, default=False)
    sources = Column(JSON)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("column_id", "idx", name="uq_cell_column_idx"),
        Index("idx_cells_column_idx", "column_id", "idx"),
    )
