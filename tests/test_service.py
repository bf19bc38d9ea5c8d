"""Tests for BackupService: the create / list / validate / restore / import facade."""

import gzip
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import sqlite

from conftest import SECRET, fetch_all

from db_vault.adapters.dialects import SQLiteDialect
from db_vault.backup.container import encode_document
from db_vault.backup.models import SqlAnalysisReport, ValidationReport
from db_vault.backup.service import BackupService
from db_vault.config.models import BackupSettings
from db_vault.errors import (
    BackupNotFoundError,
    InvalidEncodingError,
    MalformedDocumentError,
    MissingSecretError,
    PayloadTooLargeError,
    RestoreValidationRequired,
)


@pytest.fixture
def service(adapter, settings, catalog) -> BackupService:
    return BackupService(adapter, settings, catalog=catalog)


def _mock_client(tables: dict | None = None) -> AsyncMock:
    """AsyncMock DatabaseClient returning canned rows per table."""
    tables = tables or {}
    client = AsyncMock()
    client.dialect = SQLiteDialect(sqlite.dialect())
    client.database_name = "mock"

    async def _select_all(table):
        return [dict(r) for r in tables.get(table, [])]

    client.select_all = AsyncMock(side_effect=_select_all)
    client.connect = MagicMock()
    return client


class TestCreateBackup:
    """create_backup / create_sql_backup."""

    async def test_reads_only_catalog_tables(self, settings, catalog):
        client = _mock_client({"sites": [{"id": 1, "name": "North"}], "users": [{"id": 1}]})
        service = BackupService(client, settings, catalog=catalog)

        result = await service.create_backup(created_by={"userId": 3, "username": "ana"})

        called = [c.args[0] for c in client.select_all.await_args_list]
        assert called == ["sites", "locations"]
        document = service.store.load_document(result.filename)
        assert set(document["tables"]) == {"sites", "locations"}
        assert document["metadata"]["createdBy"]["username"] == "ana"
        assert document["metadata"]["database"] == "po"
        client.connect.assert_not_called()

    async def test_missing_secret_refuses_before_reading(self, tmp_path, catalog):
        client = _mock_client()
        service = BackupService(client, BackupSettings(backup_dir=tmp_path), catalog=catalog)

        with pytest.raises(MissingSecretError):
            await service.create_backup()
        client.select_all.assert_not_awaited()

    async def test_database_name_falls_back_to_client(self, tmp_path, catalog):
        client = _mock_client()
        service = BackupService(
            client, BackupSettings(hmac_secret=SECRET, backup_dir=tmp_path), catalog=catalog
        )
        result = await service.create_backup()
        assert service.get_metadata(result.filename)["database"] == "mock"

    async def test_sql_backup(self, service):
        result = await service.create_sql_backup()

        assert result.format == "sql"
        assert result.filename.endswith(".sql")
        header = service.get_metadata(result.filename)
        assert header["database"] == "po"
        assert header["tables"] == "2"


class TestInspect:
    """list / metadata / validate / delete."""

    async def test_list_and_metadata(self, service):
        result = await service.create_backup()
        infos = service.list_backups()
        assert [i.filename for i in infos] == [result.filename]
        assert infos[0].total_records == 5
        assert service.get_metadata(result.filename)["totalRecords"] == 5

    async def test_validate_sealed(self, service):
        result = await service.create_backup()
        report = service.validate_backup(result.filename)
        assert isinstance(report, ValidationReport)
        assert report.valid

    async def test_validate_sql(self, service):
        result = await service.create_sql_backup()
        report = service.validate_backup(result.filename)
        assert isinstance(report, SqlAnalysisReport)
        assert report.valid
        assert report.tables == {"sites": 2, "locations": 3}

    async def test_delete(self, service):
        result = await service.create_backup()
        service.delete_backup(result.filename)
        with pytest.raises(BackupNotFoundError):
            service.get_metadata(result.filename)

    async def test_read_bytes(self, service):
        result = await service.create_backup()
        data = service.read_backup_bytes(result.filename)
        assert json.loads(gzip.decompress(data))["format"] == "DBVault"


class TestRestore:
    """restore_backup validates before writing."""

    async def test_restore_sealed(self, service, adapter):
        result = await service.create_backup()
        await adapter.execute("DELETE FROM locations")

        summary = await service.restore_backup(result.filename)

        assert summary.errors == []
        assert len(await fetch_all(adapter, "locations")) == 3

    async def test_restore_sql(self, service, adapter):
        result = await service.create_sql_backup()
        await adapter.execute("UPDATE sites SET name = 'Changed'")

        summary = await service.restore_backup(result.filename)

        assert summary.encoding == "sql"
        assert [s["name"] for s in await fetch_all(adapter, "sites")] == ["North", "South"]

    async def test_tampered_document_requires_force(self, service, adapter):
        result = await service.create_backup()
        document = service.store.load_document(result.filename)
        document["tables"]["sites"][0]["name"] = "Tampered"

        with pytest.raises(RestoreValidationRequired) as exc_info:
            await service.restore_document(document)
        assert not exc_info.value.report.valid
        assert (await fetch_all(adapter, "sites"))[0]["name"] == "North"

        summary = await service.restore_document(document, force=True)
        assert "force" in summary.warnings[0]
        assert (await fetch_all(adapter, "sites"))[0]["name"] == "Tampered"

    async def test_sql_writing_protected_table_requires_force(self, service):
        with pytest.raises(RestoreValidationRequired) as exc_info:
            await service.restore_sql("INSERT INTO users (id, email) VALUES (9, 'x');")
        assert exc_info.value.report.errors

    async def test_unknown_backup(self, service):
        with pytest.raises(BackupNotFoundError):
            await service.restore_backup("backup_1999-01-01_00-00-00.dbvault")


class TestImport:
    """import_backup upload path."""

    async def test_import_container(self, service):
        result = await service.create_backup()
        data = service.read_backup_bytes(result.filename)

        imported = service.import_backup("upload.dbvault", data)

        assert imported.filename != result.filename
        assert service.validate_backup(imported.filename).valid

    async def test_import_plain_json_is_recompressed(self, service):
        result = await service.create_backup()
        document = service.store.load_document(result.filename)

        imported = service.import_backup("upload.dbvault", json.dumps(document).encode())

        assert service.store.load_document(imported.filename) == document
        assert service.read_backup_bytes(imported.filename)[:2] == b"\x1f\x8b"

    async def test_import_drops_unknown_top_level_keys(self, service):
        result = await service.create_backup()
        document = service.store.load_document(result.filename)
        upload = {**document, "annotations": {"metadata": {"totalRecords": 999}}}

        imported = service.import_backup("upload.dbvault", json.dumps(upload).encode())

        assert service.store.load_document(imported.filename) == document
        assert service.get_metadata(imported.filename)["totalRecords"] == 5
        listed = {i.filename: i for i in service.list_backups()}
        assert listed[imported.filename].total_records == 5
        assert service.validate_backup(imported.filename).valid

    async def test_import_sql(self, service):
        imported = service.import_backup("dump.sql", b"INSERT INTO sites (id) VALUES (1);")
        assert imported.format == "sql"

    async def test_too_large(self, adapter, tmp_path, catalog):
        settings = BackupSettings(hmac_secret=SECRET, backup_dir=tmp_path, max_upload_bytes=10)
        service = BackupService(adapter, settings, catalog=catalog)
        with pytest.raises(PayloadTooLargeError) as exc_info:
            service.import_backup("big.sql", b"x" * 11)
        assert exc_info.value.limit == 10

    async def test_wrong_extension(self, service):
        with pytest.raises(InvalidEncodingError):
            service.import_backup("notes.txt", b"hello")

    async def test_undecodable_container(self, service):
        with pytest.raises(InvalidEncodingError):
            service.import_backup("broken.dbvault", b"\x1f\x8bnot really gzip")

    async def test_structurally_invalid_container(self, service):
        data, _ = encode_document({"format": "DBVault"})
        with pytest.raises(MalformedDocumentError):
            service.import_backup("empty.dbvault", data)
        assert service.list_backups() == []
