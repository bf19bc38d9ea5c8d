"""Exception taxonomy for db-vault.

Structural and pre-condition failures are raised.  Content-level integrity
problems (checksum and signature mismatches) and per-row restore failures are
collected into the returned reports instead; see
``db_vault.backup.models.ValidationReport`` and ``RestoreSummary``.
"""

from typing import Any


class DBVaultError(Exception):
    """Base class for every error raised by db-vault."""

    pass


# ============================================================================
# Configuration
# ============================================================================


class ConfigurationError(DBVaultError):
    """Raised when required configuration is missing or invalid."""

    pass


class MissingSecretError(ConfigurationError):
    """Raised when sealing or validating without an HMAC secret."""

    pass


class ProfileNotFoundError(ConfigurationError):
    """Raised when no database profile or URL is configured."""

    pass


class CatalogError(DBVaultError):
    """Raised when the declared table graph is inconsistent (cycle, duplicate, ...)."""

    pass


# ============================================================================
# Documents and containers
# ============================================================================


class MalformedDocumentError(DBVaultError):
    """Raised when a backup document is missing ``metadata`` or ``tables``."""

    pass


class InvalidEncodingError(DBVaultError):
    """Raised when an artifact cannot be decoded (bad gzip, UTF-8 or JSON)."""

    pass


class PayloadTooLargeError(DBVaultError):
    """Raised when an uploaded artifact exceeds the configured size limit."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Backup payload is {size} bytes; limit is {limit} bytes")
        self.size = size
        self.limit = limit


class BackupNotFoundError(DBVaultError, FileNotFoundError):
    """Raised when a named backup does not exist in the store."""

    pass


# ============================================================================
# Restore
# ============================================================================


class TableClearError(DBVaultError):
    """Raised when a table still holds rows after the clear phase.

    Fatal: the restore transaction is rolled back before this propagates.
    """

    def __init__(self, table: str, remaining: int) -> None:
        super().__init__(
            f"Failed to clear table '{table}': {remaining} rows remain after delete"
        )
        self.table = table
        self.remaining = remaining


class RestoreAbortedError(DBVaultError):
    """Raised in strict mode when a row or statement fails; nothing is committed."""

    def __init__(self, message: str, errors: list[Any] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class RestoreValidationRequired(DBVaultError):
    """Raised when a document fails validation and ``force`` was not given."""

    def __init__(self, report: Any) -> None:
        super().__init__(
            "Backup validation failed. Pass force=True to restore anyway."
        )
        self.report = report
