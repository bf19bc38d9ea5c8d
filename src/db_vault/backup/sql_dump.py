"""Legacy SQL-text backups: writer, statement splitter and static analysis.

The legacy encoding is one ``INSERT INTO`` per row, grouped and commented per
table, with literals escaped by hand.  It carries no checksums or signature;
it exists for portability and human inspection.
"""

import re
from typing import Any, Iterable

from db_vault.adapters.dialects import Dialect
from db_vault.backup.models import SqlAnalysisReport, TableCatalog

SQL_BANNER = "-- DB Vault SQL backup"

_INSERT_TARGET = re.compile(
    r"""^\s*(?:INSERT|REPLACE)\s+INTO\s+
        (?P<table>`[^`]+`|"[^"]+"|\[[^\]]+\]|[\w.]+)
        \s*(?:\((?P<columns>[^)]*)\))?""",
    re.IGNORECASE | re.VERBOSE,
)
_HEADER_LINE = re.compile(r"^--\s*(?P<key>[A-Za-z ]+):\s*(?P<value>.*)$")


def _unquote(identifier: str) -> str:
    identifier = identifier.strip()
    if len(identifier) >= 2 and identifier[0] + identifier[-1] in ('``', '""', "[]"):
        return identifier[1:-1]
    return identifier


# ============================================================================
# Writer
# ============================================================================


def render_sql_dump(
    tables: dict[str, list[dict[str, Any]]],
    dialect: Dialect,
    catalog: TableCatalog,
    *,
    database: str = "",
    created_at: str = "",
) -> str:
    """Render a snapshot as a legacy SQL script.

    Tables are written in ``catalog.restore_order()`` so replaying the script
    top to bottom inserts parents before children.

    Args:
        tables: Snapshot rows (driver-native or normalized values).
        dialect: Target engine, for identifier quoting and literal escaping.
        catalog: Declared tables; tables outside ``catalog.included()`` are ignored.
        database: Source database identifier for the header.
        created_at: Creation timestamp for the header.
    """
    order = [t for t in catalog.restore_order() if t in tables]
    lines = [
        SQL_BANNER,
        f"-- Created: {created_at}",
        f"-- Database: {database}",
        f"-- Tables: {len(order)}",
        "-- Format: SQL (unsigned)",
        "",
    ]

    for table in order:
        rows = tables[table]
        lines.append(f"-- Table: {table} ({len(rows)} rows)")
        for row in rows:
            columns = ", ".join(dialect.quote(c) for c in row)
            values = ", ".join(dialect.render_literal(v) for v in row.values())
            lines.append(f"INSERT INTO {dialect.quote(table)} ({columns}) VALUES ({values});")
        lines.append("")

    return "\n".join(lines)


def parse_sql_header(text: str) -> dict[str, str]:
    """Read the leading ``-- Key: value`` comment block of a SQL backup.

    Example:
        >>> parse_sql_header("-- DB Vault SQL backup\\n-- Tables: 3\\n")
        {'tables': '3'}
    """
    header: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("--"):
            break
        match = _HEADER_LINE.match(line)
        if match:
            header[match.group("key").strip().lower()] = match.group("value").strip()
    return header


# ============================================================================
# Parsing
# ============================================================================


def split_statements(text: str, backslash_escapes: bool = False) -> list[str]:
    """Split an SQL script into statements.

    Semicolons inside quoted strings/identifiers and ``--`` / ``/* */``
    comments are ignored.  ``backslash_escapes`` enables MySQL-style ``\\'``
    inside single-quoted strings.
    """
    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        if quote:
            current.append(ch)
            if backslash_escapes and quote == "'" and ch == "\\" and i + 1 < n:
                current.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch == "-" and text.startswith("--", i):
            end = text.find("\n", i)
            i = n if end < 0 else end + 1
            current.append("\n")
            continue
        if ch == "/" and text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end < 0 else end + 2
            current.append(" ")
            continue
        if ch in ("'", '"', "`"):
            quote = ch
        if ch == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(ch)
        i += 1

    statement = "".join(current).strip()
    if statement:
        statements.append(statement)
    return statements


def parse_insert_target(statement: str) -> tuple[str, list[str]] | None:
    """Return ``(table, columns)`` of an INSERT/REPLACE statement, else ``None``."""
    match = _INSERT_TARGET.match(statement)
    if not match:
        return None
    columns = match.group("columns")
    return (
        _unquote(match.group("table")),
        [_unquote(c) for c in columns.split(",")] if columns else [],
    )


def analyze_sql_backup(
    text: str,
    catalog: TableCatalog,
    backslash_escapes: bool = False,
) -> SqlAnalysisReport:
    """Check a SQL backup against the catalog without touching the database.

    Statements writing to excluded tables are errors (a restore rejects
    them).  Unknown tables and non-INSERT statements are warnings.
    """
    report = SqlAnalysisReport()
    statements = split_statements(text, backslash_escapes=backslash_escapes)
    report.statements = len(statements)

    for statement in statements:
        target = parse_insert_target(statement)
        if target is None:
            report.warnings.append(f"Not an INSERT statement: {preview_statement(statement)}")
            continue
        table, _ = target
        report.tables[table] = report.tables.get(table, 0) + 1

    for table in report.tables:
        if catalog.is_excluded(table):
            report.errors.append(f"Backup writes to protected table '{table}'")
        elif not catalog.is_included(table):
            report.warnings.append(f"Table '{table}' is not in the backup catalog")

    for table in _missing(catalog.included(), report.tables):
        report.warnings.append(f"Table '{table}' has no rows in this backup")

    report.valid = not report.errors
    return report


def _missing(expected: Iterable[str], present: dict[str, int]) -> list[str]:
    return [t for t in expected if t not in present]


def preview_statement(statement: str, limit: int = 60) -> str:
    flat = " ".join(statement.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."
