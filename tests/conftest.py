"""Shared fixtures: a small two-level SQLite schema behind ``AsyncSQLAdapter``.

``sites`` is the parent, ``locations`` references it, ``users`` is excluded
from backups and must never be touched by a restore.
"""

import pytest

from db_vault.adapters.sql import AsyncSQLAdapter
from db_vault.backup.models import ForeignKey, TableCatalog, TableDef
from db_vault.config.models import BackupSettings

SECRET = "test-hmac-secret"

SCHEMA = [
    """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY,
        email TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE sites (
        id INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        opened_on DATE,
        created_at DATETIME
    )
    """,
    """
    CREATE TABLE locations (
        id INTEGER PRIMARY KEY,
        site_id INTEGER NOT NULL REFERENCES sites(id),
        name TEXT NOT NULL,
        created_by INTEGER REFERENCES users(id)
    )
    """,
]

SEED = [
    "INSERT INTO users (id, email) VALUES (1, 'admin@example.com')",
    "INSERT INTO sites (id, name, opened_on, created_at) VALUES "
    "(1, 'North', '2023-04-01', '2024-01-15 10:30:00.000000'), "
    "(2, 'South', '2023-09-12', '2024-02-01 08:00:00.000000')",
    "INSERT INTO locations (id, site_id, name, created_by) VALUES "
    "(1, 1, 'Dock A', 1), (2, 1, 'Dock B', 1), (3, 2, 'Yard', NULL)",
]


def sites_catalog() -> TableCatalog:
    """Catalog for the test schema."""
    return TableCatalog(
        tables=[
            TableDef(name="sites"),
            TableDef(
                name="locations",
                parents=[
                    ForeignKey(table="sites", field="site_id"),
                    ForeignKey(table="users", field="created_by"),
                ],
            ),
        ],
        excluded=frozenset({"users"}),
    )


async def fetch_all(adapter: AsyncSQLAdapter, table: str) -> list[dict]:
    rows = await adapter.select_all(table)
    return sorted(rows, key=lambda r: r["id"])


@pytest.fixture
async def adapter(tmp_path):
    """File-backed SQLite database with the schema and seed rows."""
    db = AsyncSQLAdapter(f"sqlite:///{tmp_path / 'po.db'}")
    for statement in SCHEMA + SEED:
        await db.execute(statement)
    yield db
    await db.close()


@pytest.fixture
def catalog() -> TableCatalog:
    return sites_catalog()


@pytest.fixture
def settings(tmp_path) -> BackupSettings:
    return BackupSettings(
        hmac_secret=SECRET,
        backup_dir=tmp_path / "backups",
        database_name="po",
    )
