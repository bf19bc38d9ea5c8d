"""End-to-end restore tests against real SQLite databases (aiosqlite)."""

import copy
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.types import BLOB, DATE, DATETIME, Integer

from conftest import SECRET, fetch_all

from db_vault.adapters.dialects import SQLiteDialect
from db_vault.backup.integrity import seal_document
from db_vault.backup.restore import RestoreEngine, convert_value, describe_row
from db_vault.backup.snapshot import build_snapshot
from db_vault.backup.sql_dump import render_sql_dump
from db_vault.errors import MalformedDocumentError, RestoreAbortedError, TableClearError
from db_vault.schema.introspector import introspect_columns
from db_vault.schema.models import ColumnSchema


async def _sealed(adapter, catalog) -> dict:
    return seal_document(await build_snapshot(adapter, catalog), SECRET, database="po")


class _EnforcingSQLiteDialect(SQLiteDialect):
    """Leaves FK enforcement on for the whole restore."""

    async def suspend_constraints(self, conn):
        return {}


class _DisplacingSQLiteDialect(SQLiteDialect):
    """Reports every replace statement as having displaced a row."""

    def statement_replaced(self, rowcount):
        return True


# ============================================================================
# Value conversion
# ============================================================================


class TestConvertValue:
    """convert_value maps captured JSON values onto column types."""

    def _col(self, **kwargs) -> ColumnSchema:
        return ColumnSchema(name="c", data_type="x", **kwargs)

    def test_datetime_with_z_suffix(self):
        col = self._col(sql_type=DATETIME(), temporal="datetime")
        assert convert_value("2024-01-15T10:30:00.000Z", col) == datetime(2024, 1, 15, 10, 30)

    def test_aware_datetime_kept_for_timezone_columns(self):
        from sqlalchemy import DateTime

        col = self._col(sql_type=DateTime(timezone=True), temporal="datetime")
        value = convert_value("2024-01-15T10:30:00+00:00", col)
        assert value == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_date_from_timestamp_text(self):
        col = self._col(sql_type=DATE(), temporal="date")
        assert convert_value("2024-01-15", col) == date(2024, 1, 15)
        assert convert_value("2024-01-15T00:00:00.000Z", col) == date(2024, 1, 15)

    def test_binary_from_base64(self):
        col = self._col(sql_type=BLOB(), is_binary=True)
        assert convert_value("AQL/", col) == b"\x01\x02\xff"

    def test_unparseable_date_raises(self):
        col = self._col(sql_type=DATE(), temporal="date")
        with pytest.raises(ValueError):
            convert_value("not a date", col)

    def test_passthrough(self):
        col = self._col(sql_type=Integer())
        assert convert_value(5, col) == 5
        assert convert_value(None, col) is None

    def test_describe_row(self):
        assert describe_row({"id": 7, "name": "x"}, ["id"]) == "id=7"
        assert describe_row({"a": 1, "b": "x", "c": 3}, []) == "a=1, b='x'"


# ============================================================================
# Sealed-document restore
# ============================================================================


class TestRestoreDocument:
    """restore_document against the sites/locations schema."""

    async def test_sites_and_locations_scenario(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        assert document["metadata"]["tables"]["sites"]["rowCount"] == 2
        assert document["metadata"]["tables"]["locations"]["rowCount"] == 3
        original_sites = await fetch_all(adapter, "sites")
        original_locations = await fetch_all(adapter, "locations")

        # Drift the live data
        await adapter.execute("DELETE FROM locations WHERE id = 3")
        await adapter.execute("UPDATE sites SET name = 'Renamed' WHERE id = 1")
        await adapter.execute("INSERT INTO locations (id, site_id, name) VALUES (9, 2, 'New')")

        summary = await RestoreEngine(adapter, catalog).restore_document(document)

        assert summary.success
        assert summary.errors == []
        assert summary.cleared_tables == ["locations", "sites"]
        assert summary.tables["sites"].inserted == 2
        assert summary.tables["locations"].inserted == 3
        assert await fetch_all(adapter, "sites") == original_sites
        assert await fetch_all(adapter, "locations") == original_locations

    async def test_round_trip_checksums_match(self, adapter, catalog):
        first = await _sealed(adapter, catalog)
        await RestoreEngine(adapter, catalog).restore_document(first)
        second = await _sealed(adapter, catalog)
        assert second["metadata"]["tables"] == first["metadata"]["tables"]
        assert second["metadata"]["totalChecksum"] == first["metadata"]["totalChecksum"]

    async def test_idempotent_replay(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        engine = RestoreEngine(adapter, catalog)

        await engine.restore_document(document)
        after_first = {t: await fetch_all(adapter, t) for t in ("sites", "locations")}
        summary = await engine.restore_document(document)
        after_second = {t: await fetch_all(adapter, t) for t in ("sites", "locations")}

        assert after_first == after_second
        assert summary.total_inserted == 5
        assert summary.errors == []

    async def test_excluded_table_untouched(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        assert "users" not in document["tables"]

        poisoned = copy.deepcopy(document)
        poisoned["tables"]["users"] = [{"id": 1, "email": "attacker@example.com"}]
        await adapter.execute("INSERT INTO users (id, email) VALUES (2, 'second@example.com')")

        summary = await RestoreEngine(adapter, catalog).restore_document(poisoned)

        users = await fetch_all(adapter, "users")
        assert [u["email"] for u in users] == ["admin@example.com", "second@example.com"]
        assert "users" in summary.skipped_tables
        assert "users" not in summary.cleared_tables

    async def test_partial_row_resilience(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        document["tables"]["locations"][1]["bogus_column"] = "x"

        summary = await RestoreEngine(adapter, catalog).restore_document(document)

        assert len(summary.errors) == 1
        error = summary.errors[0]
        assert error.table == "locations"
        assert error.row == "id=2"
        assert "bogus_column" in error.message
        assert summary.tables["locations"].inserted == 2
        assert summary.tables["locations"].failed == 1
        assert [r["id"] for r in await fetch_all(adapter, "locations")] == [1, 3]
        assert len(await fetch_all(adapter, "sites")) == 2

    async def test_database_error_rolls_back_only_that_row(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        document["tables"]["sites"][0]["name"] = None  # NOT NULL violation

        summary = await RestoreEngine(adapter, catalog).restore_document(document)

        assert [e.row for e in summary.errors] == ["id=1"]
        assert [r["id"] for r in await fetch_all(adapter, "sites")] == [2]

    async def test_column_missing_everywhere_is_dropped_with_warning(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        for row in document["tables"]["sites"]:
            row["legacy_code"] = "L"

        summary = await RestoreEngine(adapter, catalog).restore_document(document)

        assert summary.errors == []
        assert any("legacy_code" in w for w in summary.warnings)
        assert len(await fetch_all(adapter, "sites")) == 2

    async def test_strict_mode_aborts_and_rolls_back(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        document["tables"]["locations"][1]["bogus_column"] = "x"
        await adapter.execute("UPDATE sites SET name = 'Live' WHERE id = 1")

        with pytest.raises(RestoreAbortedError) as exc_info:
            await RestoreEngine(adapter, catalog).restore_document(document, strict=True)

        assert len(exc_info.value.errors) == 1
        sites = await fetch_all(adapter, "sites")
        assert sites[0]["name"] == "Live"
        assert len(await fetch_all(adapter, "locations")) == 3

    async def test_clear_failure_aborts(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        await adapter.execute(
            "CREATE TRIGGER keep_sites BEFORE DELETE ON sites "
            "BEGIN SELECT RAISE(IGNORE); END"
        )

        with pytest.raises(TableClearError) as exc_info:
            await RestoreEngine(adapter, catalog).restore_document(document)

        assert exc_info.value.table == "sites"
        assert exc_info.value.remaining == 2
        # locations were cleared first; the rollback brings them back
        assert len(await fetch_all(adapter, "locations")) == 3

    async def test_constraints_re_enabled_after_restore(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        await RestoreEngine(adapter, catalog).restore_document(document)

        async with adapter.connect() as conn:
            enabled = (await conn.execute(text("PRAGMA foreign_keys"))).scalar()
        assert enabled == 1

    async def test_dependency_order_with_constraints_enforced(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        adapter._dialect = _EnforcingSQLiteDialect(adapter.engine.dialect)

        summary = await RestoreEngine(adapter, catalog).restore_document(document)

        assert summary.errors == []
        assert summary.total_inserted == 5
        async with adapter.connect() as conn:
            violations = (await conn.execute(text("PRAGMA foreign_key_check"))).all()
        assert violations == []

    async def test_child_before_parent_fails_with_constraints_enforced(self, adapter):
        from db_vault.backup.models import TableCatalog, TableDef

        # Undeclared dependency: locations restored before sites
        wrong = TableCatalog(tables=[TableDef(name="locations"), TableDef(name="sites")])
        document = await _sealed(adapter, wrong)
        adapter._dialect = _EnforcingSQLiteDialect(adapter.engine.dialect)

        with pytest.raises(IntegrityError):
            await RestoreEngine(adapter, wrong).restore_document(document)

    async def test_empty_table_in_document_leaves_table_empty(self, adapter, catalog):
        document = await _sealed(adapter, catalog)
        document["tables"]["locations"] = []

        summary = await RestoreEngine(adapter, catalog).restore_document(document)

        assert await fetch_all(adapter, "locations") == []
        assert "locations" in summary.cleared_tables

    async def test_malformed_document(self, adapter, catalog):
        with pytest.raises(MalformedDocumentError):
            await RestoreEngine(adapter, catalog).restore_document({"tables": {}})

    async def test_computed_columns_are_not_written(self, tmp_path):
        from db_vault.adapters.sql import AsyncSQLAdapter
        from db_vault.backup.models import TableCatalog, TableDef

        db = AsyncSQLAdapter(f"sqlite:///{tmp_path / 'gen.db'}")
        try:
            await db.execute(
                "CREATE TABLE items (id INTEGER PRIMARY KEY, qty INTEGER, "
                "double_qty INTEGER GENERATED ALWAYS AS (qty * 2) VIRTUAL)"
            )
            await db.execute("INSERT INTO items (id, qty) VALUES (1, 4)")
            catalog = TableCatalog(tables=[TableDef(name="items")])

            async with db.connect() as conn:
                columns = await introspect_columns(conn, "items")
            assert [c.name for c in columns.writable] == ["id", "qty"]

            document = await _sealed(db, catalog)
            assert document["tables"]["items"][0]["double_qty"] == 8
            summary = await RestoreEngine(db, catalog).restore_document(document)

            assert summary.errors == []
            assert await db.select_all("items") == [{"id": 1, "qty": 4, "double_qty": 8}]
        finally:
            await db.close()


# ============================================================================
# SQL-text restore
# ============================================================================


class TestRestoreSql:
    """restore_sql shares the clear phase and failure policy."""

    async def _dump(self, adapter, catalog) -> str:
        partial = await build_snapshot(adapter, catalog, normalize=False)
        return render_sql_dump(partial["tables"], adapter.dialect, catalog, database="po")

    async def test_round_trip(self, adapter, catalog):
        dump = await self._dump(adapter, catalog)
        original = {t: await fetch_all(adapter, t) for t in ("sites", "locations")}
        await adapter.execute("DELETE FROM locations")

        summary = await RestoreEngine(adapter, catalog).restore_sql(dump)

        assert summary.encoding == "sql"
        assert summary.errors == []
        assert summary.tables["locations"].inserted == 3
        assert {t: await fetch_all(adapter, t) for t in ("sites", "locations")} == original

    async def test_replay_replaces_duplicates(self, adapter, catalog):
        dump = await self._dump(adapter, catalog)
        duplicated = dump + "\nINSERT INTO sites (id, name) VALUES (1, 'Override');\n"

        summary = await RestoreEngine(adapter, catalog).restore_sql(duplicated)

        assert summary.errors == []
        sites = await fetch_all(adapter, "sites")
        assert sites[0]["name"] == "Override"

    async def test_displaced_rows_count_as_replaced(self, adapter, catalog):
        dump = await self._dump(adapter, catalog)
        adapter._dialect = _DisplacingSQLiteDialect(adapter.engine.dialect)

        summary = await RestoreEngine(adapter, catalog).restore_sql(dump)

        assert summary.tables["sites"].replaced == 2
        assert summary.tables["sites"].inserted == 0
        assert summary.tables["locations"].replaced == 3

    async def test_bad_statement_is_row_error(self, adapter, catalog):
        dump = await self._dump(adapter, catalog)
        broken = dump + "\nINSERT INTO sites (id, nope) VALUES (5, 'x');\n"

        summary = await RestoreEngine(adapter, catalog).restore_sql(broken)

        assert len(summary.errors) == 1
        assert summary.errors[0].table == "sites"
        assert summary.tables["sites"].failed == 1
        assert len(await fetch_all(adapter, "sites")) == 2

    async def test_protected_table_statement_rejected(self, adapter, catalog):
        script = (
            "INSERT INTO sites (id, name) VALUES (1, 'Only');\n"
            "INSERT INTO users (id, email) VALUES (1, 'attacker@example.com');\n"
        )

        summary = await RestoreEngine(adapter, catalog).restore_sql(script)

        assert [e.table for e in summary.errors] == ["users"]
        assert "protected table" in summary.errors[0].message
        users = await fetch_all(adapter, "users")
        assert users[0]["email"] == "admin@example.com"
        assert [s["name"] for s in await fetch_all(adapter, "sites")] == ["Only"]

    async def test_strict_sql_aborts(self, adapter, catalog):
        script = "INSERT INTO sites (id, nope) VALUES (5, 'x');"
        with pytest.raises(RestoreAbortedError):
            await RestoreEngine(adapter, catalog).restore_sql(script, strict=True)
        assert len(await fetch_all(adapter, "sites")) == 2
