"""Backup creation, integrity sealing and restore.

Usage:
    from db_vault.backup import BackupService, TableCatalog, TableDef, ForeignKey
    from db_vault.backup import seal_document, validate_document, RestoreEngine
"""

from db_vault.backup.catalog import EXCLUDED_TABLES, default_catalog
from db_vault.backup.container import BackupStore, decode_document, encode_document
from db_vault.backup.integrity import (
    BACKUP_FORMAT,
    BACKUP_VERSION,
    canonical_json,
    compute_signature,
    content_hash,
    seal_document,
    verify_signature,
)
from db_vault.backup.models import (
    BackupInfo,
    ForeignKey,
    RestoreSummary,
    RowRestoreError,
    SaveResult,
    SqlAnalysisReport,
    TableCatalog,
    TableDef,
    ValidationReport,
)
from db_vault.backup.restore import RestoreEngine
from db_vault.backup.service import BackupService
from db_vault.backup.snapshot import build_snapshot
from db_vault.backup.validator import validate_document

__all__ = [
    # Catalog
    "TableCatalog",
    "TableDef",
    "ForeignKey",
    "EXCLUDED_TABLES",
    "default_catalog",
    # Snapshot + sealing
    "build_snapshot",
    "seal_document",
    "canonical_json",
    "content_hash",
    "compute_signature",
    "verify_signature",
    "BACKUP_FORMAT",
    "BACKUP_VERSION",
    # Container
    "BackupStore",
    "encode_document",
    "decode_document",
    # Validation + restore
    "validate_document",
    "RestoreEngine",
    "BackupService",
    # Results
    "ValidationReport",
    "SqlAnalysisReport",
    "RestoreSummary",
    "RowRestoreError",
    "SaveResult",
    "BackupInfo",
]
