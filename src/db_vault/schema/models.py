"""Pydantic models for live-schema introspection."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

TemporalKind = Literal["date", "datetime", "time"]


class ColumnSchema(BaseModel):
    """Schema for a live database column."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    data_type: str
    sql_type: Any = None  # SQLAlchemy TypeEngine, used for typed bind params
    is_nullable: bool = True
    is_primary_key: bool = False
    is_computed: bool = False  # GENERATED ALWAYS AS (...), never written
    temporal: TemporalKind | None = None
    is_binary: bool = False


class TableColumns(BaseModel):
    """Introspected columns of one table, in ordinal order."""

    table: str
    columns: list[ColumnSchema] = Field(default_factory=list)

    @property
    def names(self) -> set[str]:
        """All column names, computed ones included."""
        return {c.name for c in self.columns}

    @property
    def writable(self) -> list[ColumnSchema]:
        """Columns a restore may write (computed columns excluded)."""
        return [c for c in self.columns if not c.is_computed]

    @property
    def primary_key(self) -> list[str]:
        return [c.name for c in self.columns if c.is_primary_key]
