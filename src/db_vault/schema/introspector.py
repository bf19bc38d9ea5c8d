"""Live-schema column introspection.

Uses SQLAlchemy's runtime inspector on the restore connection, so the same
code serves PostgreSQL, MySQL and SQLite.  Only what the restore engine needs
is extracted: column names, types, primary key membership and whether a
column is computed (``GENERATED ALWAYS AS``).
"""

from typing import Any

from sqlalchemy import inspect, types as sqltypes
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncConnection

from db_vault.schema.models import ColumnSchema, TableColumns, TemporalKind


def _temporal_kind(sql_type: Any) -> TemporalKind | None:
    """Classify a reflected type as date, datetime or time."""
    # DateTime first: TIMESTAMP and DATETIME subclass it
    if isinstance(sql_type, sqltypes.DateTime):
        return "datetime"
    if isinstance(sql_type, sqltypes.Date):
        return "date"
    if isinstance(sql_type, sqltypes.Time):
        return "time"
    return None


def _type_name(sql_type: Any) -> str:
    try:
        return str(sql_type).lower()
    except Exception:
        # Some reflected types (NullType) cannot be compiled without a dialect
        return type(sql_type).__name__.lower()


def _reflect_table(sync_conn: Connection, table: str) -> TableColumns:
    inspector = inspect(sync_conn)
    pk_columns = set(
        inspector.get_pk_constraint(table).get("constrained_columns") or []
    )

    columns: list[ColumnSchema] = []
    for col in inspector.get_columns(table):
        sql_type = col["type"]
        columns.append(
            ColumnSchema(
                name=col["name"],
                data_type=_type_name(sql_type),
                sql_type=sql_type,
                is_nullable=bool(col.get("nullable", True)),
                is_primary_key=col["name"] in pk_columns,
                is_computed="computed" in col,
                temporal=_temporal_kind(sql_type),
                is_binary=isinstance(sql_type, sqltypes._Binary),
            )
        )
    return TableColumns(table=table, columns=columns)


async def introspect_columns(conn: AsyncConnection, table: str) -> TableColumns:
    """Introspect a live table's columns on an open connection.

    Args:
        conn: Open async connection (the restore transaction's connection).
        table: Table name.

    Returns:
        TableColumns in ordinal order.  A table that does not exist
        raises ``sqlalchemy.exc.NoSuchTableError``.
    """
    return await conn.run_sync(_reflect_table, table)
