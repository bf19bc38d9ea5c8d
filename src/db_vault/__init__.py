"""db-vault: signed, compressed backups and dependency-ordered restore.

Captures a declared set of tables into a checksummed, HMAC-signed document,
stores it gzip-compressed with count-based retention, and restores it
destructively in foreign-key order inside one transaction.

Usage:
    from db_vault import AsyncSQLAdapter, BackupService, load_settings
    from db_vault import TableCatalog, TableDef, ForeignKey
"""

__version__ = "0.1.0"

# Adapters
from db_vault.adapters.base import DatabaseClient
from db_vault.adapters.sql import AsyncSQLAdapter

# Config
from db_vault.config.loader import load_db_config, load_settings, resolve_database_url
from db_vault.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

# Backup
from db_vault.backup.models import ForeignKey, TableCatalog, TableDef
from db_vault.backup.catalog import default_catalog
from db_vault.backup.service import BackupService

# Errors
from db_vault.errors import (
    DBVaultError,
    MalformedDocumentError,
    MissingSecretError,
    RestoreAbortedError,
    RestoreValidationRequired,
    TableClearError,
)

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncSQLAdapter",
    # Config
    "load_db_config",
    "load_settings",
    "resolve_database_url",
    "BackupSettings",
    "DatabaseConfig",
    "DatabaseProfile",
    # Backup
    "TableCatalog",
    "TableDef",
    "ForeignKey",
    "default_catalog",
    "BackupService",
    # Errors
    "DBVaultError",
    "MalformedDocumentError",
    "MissingSecretError",
    "RestoreAbortedError",
    "RestoreValidationRequired",
    "TableClearError",
]
