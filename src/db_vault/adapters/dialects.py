"""Engine-specific SQL used by the restore engine and the legacy SQL dump.

Each supported engine gets one ``Dialect`` subclass:

- ``SQLiteDialect``: ``PRAGMA foreign_keys``, ``REPLACE INTO``
- ``MySQLDialect``: ``FOREIGN_KEY_CHECKS`` / ``UNIQUE_CHECKS``, ``REPLACE INTO``
- ``PostgresDialect``: ``session_replication_role``, ``INSERT ... ON CONFLICT DO UPDATE``

Usage:
    from db_vault.adapters.dialects import dialect_for

    dialect = dialect_for(engine.dialect)
    state = await dialect.suspend_constraints(conn)
    replaced = await dialect.apply_replace(conn, "sites", {"id": 1, "name": "A"}, ["id"])
    await dialect.resume_constraints(conn, state)
"""

import json
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Dialect as SADialect
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.types import TypeEngine

_INSERT_PREFIX = re.compile(r"^\s*INSERT\s+INTO\b", re.IGNORECASE)


class Dialect:
    """Base dialect: REPLACE INTO with a primary-key existence check."""

    name = "generic"

    def __init__(self, sa_dialect: SADialect) -> None:
        self._preparer = sa_dialect.identifier_preparer

    # ------------------------------------------------------------------
    # Identifiers and literals
    # ------------------------------------------------------------------

    def quote(self, identifier: str) -> str:
        """Quote an identifier if the engine requires it (reserved words, case)."""
        return self._preparer.quote(identifier)

    def quote_string(self, value: str) -> str:
        return "'" + value.replace("'", "''") + "'"

    def render_literal(self, value: Any) -> str:
        """Render a Python value as an SQL literal for the legacy text format."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, datetime):
            return self.quote_string(value.isoformat(sep=" "))
        if isinstance(value, (date, time)):
            return self.quote_string(value.isoformat())
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"X'{bytes(value).hex()}'"
        if isinstance(value, (dict, list)):
            return self.quote_string(json.dumps(value, default=str))
        return self.quote_string(str(value))

    # ------------------------------------------------------------------
    # Constraint suspension
    # ------------------------------------------------------------------

    async def suspend_constraints(self, conn: AsyncConnection) -> dict[str, Any]:
        """Disable FK/uniqueness enforcement; returns state for ``resume_constraints``."""
        return {}

    async def resume_constraints(self, conn: AsyncConnection, state: dict[str, Any]) -> None:
        """Restore enforcement to what it was before ``suspend_constraints``."""
        return None

    # ------------------------------------------------------------------
    # Upsert-by-replace
    # ------------------------------------------------------------------

    def _bind(
        self,
        sql: str,
        row: dict[str, Any],
        types: dict[str, TypeEngine] | None,
    ) -> tuple[Any, dict[str, Any]]:
        """Build a text() clause with positional-named, optionally typed params."""
        params: dict[str, Any] = {}
        binds = []
        for i, (col, value) in enumerate(row.items()):
            key = f"p{i}"
            params[key] = value
            if types and col in types:
                binds.append(bindparam(key, type_=types[col]))
        clause = text(sql)
        if binds:
            clause = clause.bindparams(*binds)
        return clause, params

    def _placeholders(self, row: dict[str, Any]) -> str:
        return ", ".join(f":p{i}" for i in range(len(row)))

    def _column_list(self, row: dict[str, Any]) -> str:
        return ", ".join(self.quote(c) for c in row)

    async def _row_exists(
        self,
        conn: AsyncConnection,
        table: str,
        row: dict[str, Any],
        pk: list[str],
        types: dict[str, TypeEngine] | None,
    ) -> bool:
        if not pk or any(row.get(k) is None for k in pk):
            return False
        key = {k: row[k] for k in pk}
        where = " AND ".join(f"{self.quote(k)} = :p{i}" for i, k in enumerate(key))
        clause, params = self._bind(
            f"SELECT 1 FROM {self.quote(table)} WHERE {where}", key, types
        )
        result = await conn.execute(clause, params)
        return result.first() is not None

    async def apply_replace(
        self,
        conn: AsyncConnection,
        table: str,
        row: dict[str, Any],
        pk: list[str],
        types: dict[str, TypeEngine] | None = None,
    ) -> bool:
        """Insert ``row``, replacing any row with the same primary key.

        Returns:
            ``True`` if an existing row was displaced, ``False`` if inserted.
        """
        existed = await self._row_exists(conn, table, row, pk, types)
        clause, params = self._bind(
            f"REPLACE INTO {self.quote(table)} ({self._column_list(row)}) "
            f"VALUES ({self._placeholders(row)})",
            row,
            types,
        )
        await conn.execute(clause, params)
        return existed

    def rewrite_insert(self, statement: str, pk: list[str], columns: list[str]) -> str:
        """Rewrite a literal ``INSERT INTO`` statement into its replace form."""
        return _INSERT_PREFIX.sub("REPLACE INTO", statement, count=1)

    def statement_replaced(self, rowcount: int) -> bool:
        """Whether a rewritten statement displaced a row, judged by its rowcount."""
        return False

    async def after_table_restore(
        self, conn: AsyncConnection, table: str, pk: list[str]
    ) -> None:
        """Hook run after a table has been populated."""
        return None


class SQLiteDialect(Dialect):
    """SQLite: ``PRAGMA foreign_keys`` only takes effect outside a transaction.

    ``suspend_constraints`` must therefore run before the first write of the
    restore and ``resume_constraints`` after the commit.
    """

    name = "sqlite"

    async def suspend_constraints(self, conn: AsyncConnection) -> dict[str, Any]:
        result = await conn.execute(text("PRAGMA foreign_keys"))
        enabled = bool(result.scalar())
        await conn.execute(text("PRAGMA foreign_keys = OFF"))
        return {"foreign_keys": enabled}

    async def resume_constraints(self, conn: AsyncConnection, state: dict[str, Any]) -> None:
        if state.get("foreign_keys"):
            await conn.execute(text("PRAGMA foreign_keys = ON"))


class MySQLDialect(Dialect):
    """MySQL / MariaDB: REPLACE reports 2 affected rows when it displaced one."""

    name = "mysql"

    def quote_string(self, value: str) -> str:
        return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"

    async def suspend_constraints(self, conn: AsyncConnection) -> dict[str, Any]:
        await conn.execute(text("SET FOREIGN_KEY_CHECKS = 0"))
        await conn.execute(text("SET UNIQUE_CHECKS = 0"))
        return {}

    async def resume_constraints(self, conn: AsyncConnection, state: dict[str, Any]) -> None:
        await conn.execute(text("SET UNIQUE_CHECKS = 1"))
        await conn.execute(text("SET FOREIGN_KEY_CHECKS = 1"))

    async def apply_replace(
        self,
        conn: AsyncConnection,
        table: str,
        row: dict[str, Any],
        pk: list[str],
        types: dict[str, TypeEngine] | None = None,
    ) -> bool:
        clause, params = self._bind(
            f"REPLACE INTO {self.quote(table)} ({self._column_list(row)}) "
            f"VALUES ({self._placeholders(row)})",
            row,
            types,
        )
        result = await conn.execute(clause, params)
        return self.statement_replaced(result.rowcount)

    def statement_replaced(self, rowcount: int) -> bool:
        return rowcount > 1


class PostgresDialect(Dialect):
    """PostgreSQL: no REPLACE; upsert with ``ON CONFLICT (pk) DO UPDATE``.

    Constraint suspension uses ``session_replication_role = replica`` which
    requires a superuser (or a role granted that setting).
    """

    name = "postgresql"

    def render_literal(self, value: Any) -> str:
        if isinstance(value, bool):
            return "TRUE" if value else "FALSE"
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"decode('{bytes(value).hex()}', 'hex')"
        return super().render_literal(value)

    async def suspend_constraints(self, conn: AsyncConnection) -> dict[str, Any]:
        await conn.execute(text("SET session_replication_role = replica"))
        return {}

    async def resume_constraints(self, conn: AsyncConnection, state: dict[str, Any]) -> None:
        await conn.execute(text("SET session_replication_role = DEFAULT"))

    def _conflict_clause(self, pk: list[str], columns: list[str]) -> str:
        if not pk:
            return ""
        conflict = ", ".join(self.quote(k) for k in pk)
        updates = [c for c in columns if c not in pk]
        if not updates:
            return f" ON CONFLICT ({conflict}) DO NOTHING"
        assignments = ", ".join(
            f"{self.quote(c)} = EXCLUDED.{self.quote(c)}" for c in updates
        )
        return f" ON CONFLICT ({conflict}) DO UPDATE SET {assignments}"

    async def apply_replace(
        self,
        conn: AsyncConnection,
        table: str,
        row: dict[str, Any],
        pk: list[str],
        types: dict[str, TypeEngine] | None = None,
    ) -> bool:
        conflict = self._conflict_clause(pk, list(row))
        clause, params = self._bind(
            f"INSERT INTO {self.quote(table)} ({self._column_list(row)}) "
            f"VALUES ({self._placeholders(row)}){conflict} "
            f"RETURNING (xmax = 0) AS inserted",
            row,
            types,
        )
        result = await conn.execute(clause, params)
        returned = result.first()
        # DO NOTHING returns no row: the key already existed
        if returned is None:
            return True
        return not returned[0]

    def rewrite_insert(self, statement: str, pk: list[str], columns: list[str]) -> str:
        body = statement.rstrip().rstrip(";")
        return body + self._conflict_clause(pk, columns)

    async def after_table_restore(
        self, conn: AsyncConnection, table: str, pk: list[str]
    ) -> None:
        """Advance the serial sequence past the restored primary keys."""
        if len(pk) != 1:
            return
        key = pk[0]
        await conn.execute(
            text(
                f"SELECT setval(pg_get_serial_sequence(:table, :column), "
                f"COALESCE((SELECT MAX({self.quote(key)}) FROM {self.quote(table)}), 0) + 1, false) "
                f"WHERE pg_get_serial_sequence(:table, :column) IS NOT NULL"
            ),
            {"table": table, "column": key},
        )


_DIALECTS: dict[str, type[Dialect]] = {
    "sqlite": SQLiteDialect,
    "mysql": MySQLDialect,
    "mariadb": MySQLDialect,
    "postgresql": PostgresDialect,
}


def dialect_for(sa_dialect: SADialect) -> Dialect:
    """Return the db-vault dialect for a SQLAlchemy dialect.

    Raises:
        ValueError: If the engine is not supported.
    """
    try:
        cls = _DIALECTS[sa_dialect.name]
    except KeyError:
        raise ValueError(
            f"Unsupported database engine '{sa_dialect.name}'. "
            f"Supported: {', '.join(sorted(_DIALECTS))}"
        ) from None
    return cls(sa_dialect)
