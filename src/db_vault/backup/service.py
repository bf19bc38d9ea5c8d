"""BackupService: the facade an application (CLI, HTTP layer) talks to.

Wires the snapshot builder, sealer, store, validator and restore engine
together around one ``DatabaseClient`` and one ``BackupSettings``.

Usage:
    adapter = AsyncSQLAdapter(url)
    service = BackupService(adapter, load_settings())

    result = await service.create_backup(created_by={"userId": 1, "username": "ana"})
    report = service.validate_backup(result.filename)
    summary = await service.restore_backup(result.filename)
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from db_vault.adapters.base import DatabaseClient
from db_vault.backup.catalog import default_catalog
from db_vault.backup.container import (
    DOCUMENT_EXTENSION,
    SQL_EXTENSION,
    BackupStore,
    decode_document,
)
from db_vault.backup.integrity import seal_document
from db_vault.backup.models import (
    BackupInfo,
    RestoreSummary,
    SaveResult,
    SqlAnalysisReport,
    TableCatalog,
    ValidationReport,
)
from db_vault.backup.restore import RestoreEngine
from db_vault.backup.snapshot import build_snapshot
from db_vault.backup.sql_dump import analyze_sql_backup, parse_sql_header, render_sql_dump
from db_vault.backup.validator import validate_document
from db_vault.config.models import BackupSettings
from db_vault.errors import (
    InvalidEncodingError,
    PayloadTooLargeError,
    RestoreValidationRequired,
)

logger = logging.getLogger(__name__)

# Top-level keys of a sealed document
DOCUMENT_KEYS = frozenset({"format", "version", "metadata", "tables"})


class BackupService:
    """Create, inspect, validate, restore and manage backups.

    Args:
        client: Database adapter implementing ``DatabaseClient``.
        settings: Backup settings (secret, directory, retention, limits).
        catalog: Declared tables (default: ``default_catalog()``).
        store: Backup store (default: built from ``settings``).
    """

    def __init__(
        self,
        client: DatabaseClient,
        settings: BackupSettings,
        catalog: TableCatalog | None = None,
        store: BackupStore | None = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.catalog = catalog or default_catalog()
        self.store = store or BackupStore(settings.backup_dir, settings.max_backups)
        self.engine = RestoreEngine(client, self.catalog)

    @property
    def database(self) -> str:
        return self.settings.database_name or self.client.database_name

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_backup(self, created_by: dict[str, Any] | None = None) -> SaveResult:
        """Snapshot, seal and store a signed backup.

        Raises:
            MissingSecretError: If no HMAC secret is configured (checked
                before the database is read).
        """
        secret = self.settings.require_secret()
        logger.info(f"Creating backup of '{self.database}'")

        partial = await build_snapshot(self.client, self.catalog)
        document = seal_document(
            partial,
            secret,
            created_by=created_by,
            database=self.database,
            app_version=self.settings.app_version,
        )
        return self.store.write_document(document)

    async def create_sql_backup(self) -> SaveResult:
        """Snapshot and store an unsigned legacy SQL-text backup."""
        logger.info(f"Creating SQL backup of '{self.database}'")
        partial = await build_snapshot(self.client, self.catalog, normalize=False)
        sql_text = render_sql_dump(
            partial["tables"],
            self.client.dialect,
            self.catalog,
            database=self.database,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        return self.store.write_sql(sql_text)

    # ------------------------------------------------------------------
    # Inspect
    # ------------------------------------------------------------------

    def list_backups(self) -> list[BackupInfo]:
        return self.store.list_backups()

    def get_metadata(self, name: str) -> dict[str, Any]:
        """Metadata of a backup; header fields for SQL backups."""
        if self.store.format_of(name) == "dbvault":
            return self.store.read_metadata(name)
        return dict(parse_sql_header(self.store.read_sql(name)))

    def read_backup_bytes(self, name: str) -> bytes:
        """Raw stored bytes, for downloads."""
        return self.store.read_bytes(name)

    def delete_backup(self, name: str) -> str:
        return self.store.delete(name)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_document(self, document: dict[str, Any]) -> ValidationReport:
        return validate_document(document, self.settings.require_secret(), self.catalog)

    def validate_backup(self, name: str) -> ValidationReport | SqlAnalysisReport:
        """Validate a stored backup.

        Sealed containers get a full checksum/signature report; SQL backups
        (which carry neither) get a static analysis against the catalog.
        """
        if self.store.format_of(name) == "dbvault":
            return self.validate_document(self.store.load_document(name))
        return self._analyze_sql(self.store.read_sql(name))

    def _analyze_sql(self, sql_text: str) -> SqlAnalysisReport:
        return analyze_sql_backup(
            sql_text,
            self.catalog,
            backslash_escapes=self.client.dialect.name == "mysql",
        )

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_document(
        self,
        document: dict[str, Any],
        force: bool = False,
        strict: bool = False,
    ) -> RestoreSummary:
        """Validate (unless ``force``) and restore an in-memory document.

        Raises:
            RestoreValidationRequired: If validation fails and not ``force``.
        """
        if not force:
            report = self.validate_document(document)
            if not report.valid:
                logger.warning(f"Refusing restore: {len(report.errors)} validation errors")
                raise RestoreValidationRequired(report)
        else:
            logger.warning("Restoring without validation (force)")

        summary = await self.engine.restore_document(document, strict=strict)
        if force:
            summary.warnings.insert(0, "Restored without validation (force)")
        return summary

    async def restore_sql(
        self,
        sql_text: str,
        force: bool = False,
        strict: bool = False,
    ) -> RestoreSummary:
        """Analyze (unless ``force``) and restore a SQL-text backup.

        Raises:
            RestoreValidationRequired: If the script writes to protected
                tables and not ``force``.
        """
        if not force:
            report = self._analyze_sql(sql_text)
            if not report.valid:
                raise RestoreValidationRequired(report)
        return await self.engine.restore_sql(sql_text, strict=strict)

    async def restore_backup(
        self,
        name: str,
        force: bool = False,
        strict: bool = False,
    ) -> RestoreSummary:
        """Restore a stored backup of either format."""
        logger.info(f"Restoring backup {name}")
        if self.store.format_of(name) == "dbvault":
            document = self.store.load_document(name)
            return await self.restore_document(document, force=force, strict=strict)
        return await self.restore_sql(self.store.read_sql(name), force=force, strict=strict)

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_backup(self, filename: str, data: bytes) -> SaveResult:
        """Store an uploaded backup under a fresh name, with rotation.

        Sealed uploads may be the gzip container or plain JSON; they are
        re-encoded as a container with only the sealed top-level keys.
        Integrity is not checked here; a restore validates before applying.

        Raises:
            PayloadTooLargeError: If ``data`` exceeds ``max_upload_bytes``.
            InvalidEncodingError: Unsupported extension or undecodable content.
            MalformedDocumentError: Decodes, but lacks ``metadata``/``tables``.
        """
        limit = self.settings.max_upload_bytes
        if len(data) > limit:
            raise PayloadTooLargeError(len(data), limit)

        suffix = Path(filename).suffix.lower()
        if suffix == DOCUMENT_EXTENSION:
            document = decode_document(data)
            extra = sorted(set(document) - DOCUMENT_KEYS)
            if extra:
                logger.warning(
                    f"Dropping unknown top-level keys from {filename}: {', '.join(extra)}"
                )
                document = {k: v for k, v in document.items() if k in DOCUMENT_KEYS}
            result = self.store.write_document(document)
        elif suffix == SQL_EXTENSION:
            try:
                sql_text = data.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidEncodingError(f"{filename} is not valid UTF-8: {e}") from e
            result = self.store.write_sql(sql_text)
        else:
            raise InvalidEncodingError(
                f"Unsupported backup type '{suffix or filename}': "
                f"expected {DOCUMENT_EXTENSION} or {SQL_EXTENSION}"
            )

        logger.info(f"Imported {filename} as {result.filename}")
        return result
