"""Restore Engine: destructive, dependency-ordered restore.

Both input encodings (sealed document, legacy SQL text) share one contract:

1. One connection, one transaction.  FK/uniqueness enforcement is suspended
   for the whole operation and re-enabled afterwards.
2. Clear phase: every catalog table is emptied in ``clear_order()``; a table
   that still has rows aborts the restore (rollback + ``TableClearError``).
3. Populate phase: tables are written in ``restore_order()``; each row (or
   SQL statement) is applied inside its own SAVEPOINT with upsert-by-replace
   semantics.  A failing unit is recorded and skipped, and the transaction
   still commits.  ``strict=True`` turns the first unit failure into a full
   rollback (``RestoreAbortedError``).

Usage:
    engine = RestoreEngine(adapter, default_catalog())
    summary = await engine.restore_document(document)
    print(summary.total_inserted, summary.errors)
"""

import base64
import logging
import time
from datetime import date, datetime, time as dt_time, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from db_vault.adapters.base import DatabaseClient
from db_vault.backup.integrity import require_structure
from db_vault.backup.models import RestoreSummary, RowRestoreError, TableCatalog
from db_vault.backup.sql_dump import parse_insert_target, preview_statement, split_statements
from db_vault.errors import RestoreAbortedError, TableClearError
from db_vault.schema.introspector import introspect_columns
from db_vault.schema.models import ColumnSchema, TableColumns

logger = logging.getLogger(__name__)

Populate = Callable[[AsyncConnection, RestoreSummary], Awaitable[None]]


# ============================================================================
# Value conversion
# ============================================================================


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))


def convert_value(value: Any, column: ColumnSchema) -> Any:
    """Convert a captured JSON value to what the driver expects for ``column``.

    Dates and timestamps were captured as ISO-8601 text (possibly with a
    ``Z`` suffix); binary as base64.  Raises ``ValueError`` when the text
    cannot be parsed; the caller records that as a row error.
    """
    if value is None:
        return None

    if column.temporal == "datetime":
        parsed = value if isinstance(value, datetime) else _parse_datetime(str(value))
        if parsed.tzinfo is not None and not getattr(column.sql_type, "timezone", False):
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    if column.temporal == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        text_value = str(value).strip()
        if len(text_value) == 10:
            return date.fromisoformat(text_value)
        return _parse_datetime(text_value).date()

    if column.temporal == "time":
        return value if isinstance(value, dt_time) else dt_time.fromisoformat(str(value))

    if column.is_binary and isinstance(value, str):
        return base64.b64decode(value, validate=True)

    return value


def describe_row(row: dict[str, Any], pk: list[str]) -> str:
    """Short row description for error lists, e.g. ``id=7``."""
    keys = [k for k in pk if k in row] or list(row)[:2]
    return ", ".join(f"{k}={row.get(k)!r}" for k in keys) or "(empty row)"


# ============================================================================
# Engine
# ============================================================================


class RestoreEngine:
    """Apply a backup to a live database.

    Args:
        client: Database adapter implementing ``DatabaseClient``.
        catalog: Declared tables.  Only catalog tables are cleared and
            populated; excluded tables are never touched.
    """

    def __init__(self, client: DatabaseClient, catalog: TableCatalog) -> None:
        self.client = client
        self.catalog = catalog
        self.dialect = client.dialect

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def restore_document(
        self,
        document: dict[str, Any],
        strict: bool = False,
    ) -> RestoreSummary:
        """Restore a sealed (or at least structurally valid) document.

        Raises:
            MalformedDocumentError: If ``metadata`` or ``tables`` is missing.
            TableClearError: If a table cannot be emptied (rolled back).
            RestoreAbortedError: In strict mode, on the first row failure.
        """
        require_structure(document)
        tables: dict[str, list[dict[str, Any]]] = document["tables"]

        async def populate(conn: AsyncConnection, summary: RestoreSummary) -> None:
            for name in tables:
                if self.catalog.is_excluded(name):
                    summary.skipped_tables.append(name)
                    summary.warnings.append(f"Skipped protected table '{name}'")
                elif not self.catalog.is_included(name):
                    summary.skipped_tables.append(name)
                    summary.warnings.append(f"Skipped table '{name}': not in the backup catalog")

            for table in self.catalog.restore_order():
                rows = tables.get(table) or []
                if rows:
                    await self._restore_table(conn, table, rows, summary)

        return await self._run("document", strict, populate)

    async def restore_sql(self, sql_text: str, strict: bool = False) -> RestoreSummary:
        """Restore a legacy SQL-text backup.

        ``INSERT INTO`` statements are rewritten to the engine's replace form
        and run one by one under the same failure policy as documents.
        """
        statements = split_statements(
            sql_text, backslash_escapes=self.dialect.name == "mysql"
        )

        async def populate(conn: AsyncConnection, summary: RestoreSummary) -> None:
            await self._apply_statements(conn, statements, summary)

        return await self._run("sql", strict, populate)

    # ------------------------------------------------------------------
    # Transaction frame
    # ------------------------------------------------------------------

    async def _run(self, encoding: str, strict: bool, populate: Populate) -> RestoreSummary:
        summary = RestoreSummary(encoding=encoding, strict=strict)
        started = time.perf_counter()
        logger.info(f"Restore started ({encoding}, strict={strict})")

        async with self.client.connect() as conn:
            state = await self.dialect.suspend_constraints(conn)
            try:
                await self._clear(conn, summary)
                await populate(conn, summary)
            except BaseException:
                await conn.rollback()
                logger.error("Restore failed; transaction rolled back")
                raise
            else:
                await conn.commit()
            finally:
                await self.dialect.resume_constraints(conn, state)
                await conn.commit()

        summary.duration_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            f"Restore finished: {summary.total_inserted} inserted, "
            f"{summary.total_replaced} replaced, {summary.total_skipped} skipped, "
            f"{len(summary.errors)} errors in {summary.duration_seconds}s"
        )
        return summary

    async def _clear(self, conn: AsyncConnection, summary: RestoreSummary) -> None:
        for table in self.catalog.clear_order():
            if self.catalog.is_excluded(table):
                continue
            quoted = self.dialect.quote(table)
            await conn.execute(text(f"DELETE FROM {quoted}"))
            result = await conn.execute(text(f"SELECT COUNT(*) FROM {quoted}"))
            remaining = int(result.scalar() or 0)
            if remaining != 0:
                raise TableClearError(table, remaining)
            summary.cleared_tables.append(table)
            logger.debug(f"Cleared '{table}'")

    def _record_failure(
        self,
        summary: RestoreSummary,
        table: str,
        row: str,
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        error = RowRestoreError(table=table, row=row, message=message)
        summary.errors.append(error)
        logger.warning(f"Restore error in '{table}' ({row}): {message}")
        if summary.strict:
            raise RestoreAbortedError(
                f"Restore aborted in strict mode: {table} ({row}): {message}",
                errors=list(summary.errors),
            ) from cause

    # ------------------------------------------------------------------
    # Document encoding
    # ------------------------------------------------------------------

    def _primary_key(self, table: str, live: TableColumns) -> list[str]:
        if live.primary_key:
            return live.primary_key
        table_def = self.catalog.get(table)
        return list(table_def.pk) if table_def else []

    async def _restore_table(
        self,
        conn: AsyncConnection,
        table: str,
        rows: list[dict[str, Any]],
        summary: RestoreSummary,
    ) -> None:
        stats = summary.stats(table)
        live = await introspect_columns(conn, table)
        writable = {c.name: c for c in live.writable}

        # Column sets: union keeps first-seen order, intersection is the table's shape
        document_columns: list[str] = []
        shape = set(rows[0])
        for row in rows:
            shape &= set(row)
            document_columns.extend(k for k in row if k not in document_columns)

        restorable = [c for c in document_columns if c in writable]
        if not restorable:
            stats.skipped += len(rows)
            self._record_failure(
                summary,
                table,
                "*",
                "No restorable columns: backup columns do not match the live table",
            )
            return

        dropped = sorted(c for c in shape if c not in live.names)
        if dropped:
            summary.warnings.append(
                f"Table '{table}': columns not in the live schema were dropped: {', '.join(dropped)}"
            )

        pk = self._primary_key(table, live)
        types = {
            name: col.sql_type
            for name, col in writable.items()
            if col.temporal or col.is_binary
        }

        for row in rows:
            label = describe_row(row, pk)
            try:
                unknown = [k for k in row if k not in live.names and k not in shape]
                if unknown:
                    raise ValueError(f"Unknown column(s): {', '.join(unknown)}")
                values = {
                    col: convert_value(row[col], writable[col])
                    for col in restorable
                    if col in row
                }
                async with conn.begin_nested():
                    replaced = await self.dialect.apply_replace(conn, table, values, pk, types)
            except Exception as e:
                stats.failed += 1
                self._record_failure(summary, table, label, str(e).splitlines()[0], e)
                continue

            if replaced:
                stats.replaced += 1
            else:
                stats.inserted += 1

        await self.dialect.after_table_restore(conn, table, pk)
        logger.debug(
            f"Restored '{table}': {stats.inserted} inserted, "
            f"{stats.replaced} replaced, {stats.failed} failed"
        )

    # ------------------------------------------------------------------
    # SQL-text encoding
    # ------------------------------------------------------------------

    async def _apply_statements(
        self,
        conn: AsyncConnection,
        statements: list[str],
        summary: RestoreSummary,
    ) -> None:
        primary_keys: dict[str, list[str]] = {}

        for statement in statements:
            label = preview_statement(statement)
            target = parse_insert_target(statement)
            if target is None:
                self._record_failure(summary, "(script)", label, "Not an INSERT statement")
                continue

            table, columns = target
            stats = summary.stats(table)
            if not self.catalog.is_included(table):
                stats.skipped += 1
                if table not in summary.skipped_tables:
                    summary.skipped_tables.append(table)
                reason = (
                    "protected table"
                    if self.catalog.is_excluded(table)
                    else "not in the backup catalog"
                )
                self._record_failure(summary, table, label, f"Rejected statement: {reason}")
                continue

            try:
                if table not in primary_keys:
                    primary_keys[table] = self._primary_key(
                        table, await introspect_columns(conn, table)
                    )
                rewritten = self.dialect.rewrite_insert(statement, primary_keys[table], columns)
                async with conn.begin_nested():
                    result = await conn.exec_driver_sql(
                        rewritten, execution_options={"no_parameters": True}
                    )
            except Exception as e:
                stats.failed += 1
                self._record_failure(summary, table, label, str(e).splitlines()[0], e)
                continue

            if self.dialect.statement_replaced(result.rowcount):
                stats.replaced += 1
            else:
                stats.inserted += 1

        for table, pk in primary_keys.items():
            await self.dialect.after_table_restore(conn, table, pk)
