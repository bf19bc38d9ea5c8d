"""Snapshot Builder: read every included table into an in-memory document.

Each table is read with its own ``SELECT *``; no snapshot isolation spans the
reads, so concurrent writers can make tables disagree with each other.
Server-generated columns are captured too; the restore engine drops them.
"""

import base64
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID

from db_vault.adapters.base import DatabaseClient
from db_vault.backup.models import TableCatalog

logger = logging.getLogger(__name__)


def normalize_value(value: Any) -> Any:
    """Convert a driver value to a JSON-compatible value.

    Temporal values become ISO-8601 strings, ``Decimal`` and UUID become
    strings (no float rounding of money columns), binary becomes base64.
    """
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return value


def normalize_row(row: dict[str, Any]) -> dict[str, Any]:
    """Normalize all values in a row dict."""
    return {k: normalize_value(v) for k, v in row.items()}


async def build_snapshot(
    client: DatabaseClient,
    catalog: TableCatalog,
    normalize: bool = True,
) -> dict[str, Any]:
    """Capture every included table.

    Args:
        client: Database adapter implementing ``DatabaseClient``.
        catalog: Declared tables; only ``catalog.included()`` is read.
        normalize: Convert values to JSON-compatible types (required for
            sealing).  The legacy SQL dump passes ``False`` to keep
            driver-native values for literal rendering.

    Returns:
        Partial document ``{"tables": {name: [row, ...]}}`` without metadata.
    """
    tables: dict[str, list[dict[str, Any]]] = {}

    for table in catalog.included():
        rows = await client.select_all(table)
        tables[table] = [normalize_row(r) for r in rows] if normalize else rows
        logger.debug(f"Captured {len(rows)} rows from '{table}'")

    total = sum(len(rows) for rows in tables.values())
    logger.info(f"Snapshot captured {total} rows from {len(tables)} tables")
    return {"tables": tables}
