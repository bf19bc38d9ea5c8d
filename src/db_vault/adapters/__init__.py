"""Database adapters package.

Provides the ``DatabaseClient`` Protocol, the SQLAlchemy-based
``AsyncSQLAdapter`` and the per-engine ``Dialect`` helpers.

Usage:
    from db_vault.adapters import DatabaseClient, AsyncSQLAdapter
"""

from db_vault.adapters.base import DatabaseClient
from db_vault.adapters.dialects import (
    Dialect,
    MySQLDialect,
    PostgresDialect,
    SQLiteDialect,
    dialect_for,
)
from db_vault.adapters.sql import AsyncSQLAdapter, normalize_url

__all__ = [
    "DatabaseClient",
    "AsyncSQLAdapter",
    "normalize_url",
    "Dialect",
    "SQLiteDialect",
    "MySQLDialect",
    "PostgresDialect",
    "dialect_for",
]
