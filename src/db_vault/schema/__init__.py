"""Live-schema introspection used by the restore engine.

Usage:
    from db_vault.schema import introspect_columns, ColumnSchema, TableColumns
"""

from db_vault.schema.introspector import introspect_columns
from db_vault.schema.models import ColumnSchema, TableColumns

__all__ = [
    "introspect_columns",
    "ColumnSchema",
    "TableColumns",
]
