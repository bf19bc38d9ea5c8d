"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol the backup engine talks to.
All I/O methods are ``async def``.

Usage:
    from db_vault.adapters.base import DatabaseClient

    async def do_work(client: DatabaseClient) -> None:
        rows = await client.select_all("sites")
        async with client.connect() as conn:
            await conn.execute(text("DELETE FROM sites"))
            await conn.commit()
        await client.close()
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncConnection

from db_vault.adapters.dialects import Dialect


class DatabaseClient(Protocol):
    """Database client interface the backup engine depends on.

    Snapshots use ``select_all``.  Restores need one connection for the whole
    operation (transaction, savepoints, session-level constraint switches)
    and therefore take it from ``connect()``.
    """

    @property
    def dialect(self) -> Dialect:
        """Engine-specific SQL helpers for this connection's database."""
        ...

    @property
    def database_name(self) -> str:
        """Identifier of the source database (recorded in backup metadata)."""
        ...

    async def select_all(self, table: str) -> list[dict[str, Any]]:
        """Read every row of ``table`` verbatim.

        Args:
            table: Table name.

        Returns:
            List of dicts, one per row, with driver-native values.

        Example:
            rows = await client.select_all("sites")
        """
        ...

    def connect(self) -> AbstractAsyncContextManager[AsyncConnection]:
        """Open a dedicated connection.

        The caller owns transaction control (``commit`` / ``rollback``).

        Example:
            async with client.connect() as conn:
                await conn.execute(text("SELECT 1"))
        """
        ...

    async def close(self) -> None:
        """Close database connection and clean up resources."""
        ...
