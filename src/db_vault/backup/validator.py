"""Validator: recompute checksums and signature of a loaded document.

Integrity problems are collected into a ``ValidationReport`` so a caller sees
every defect at once.  Only structural problems (no ``metadata``/``tables``)
and a missing secret raise.
"""

import logging
from typing import Any

from db_vault.backup.integrity import (
    BACKUP_FORMAT,
    BACKUP_VERSION,
    content_hash,
    require_structure,
    verify_signature,
)
from db_vault.backup.models import TableCatalog, TableValidation, ValidationReport
from db_vault.errors import MissingSecretError

logger = logging.getLogger(__name__)


def validate_document(
    document: dict[str, Any],
    secret: str | bytes,
    catalog: TableCatalog | None = None,
) -> ValidationReport:
    """Validate a decompressed, deserialized backup document.

    Args:
        document: Loaded document.
        secret: HMAC key used when the document was sealed.
        catalog: When given, catalog tables absent from the document and
            document tables outside the catalog are reported as warnings;
            excluded tables in the document are errors.

    Returns:
        ValidationReport; ``valid`` is ``False`` if any error was recorded.

    Raises:
        MalformedDocumentError: If ``metadata`` or ``tables`` is missing.
        MissingSecretError: If ``secret`` is empty.

    Example:
        report = validate_document(document, settings.require_secret(), default_catalog())
        if not report.valid:
            print(report.format_report())
    """
    if not secret:
        raise MissingSecretError("An HMAC secret is required to validate backups.")

    report = ValidationReport(
        format=document.get("format") if isinstance(document, dict) else None,
        version=document.get("version") if isinstance(document, dict) else None,
    )

    # Format gate: nothing else is meaningful for a foreign document
    if report.format != BACKUP_FORMAT:
        report.add_error(f"Invalid format: expected {BACKUP_FORMAT}, got {report.format}")
        return report

    require_structure(document)
    metadata: dict[str, Any] = document["metadata"]
    tables: dict[str, list] = document["tables"]

    if report.version != BACKUP_VERSION:
        report.warnings.append(
            f"Version mismatch: backup is v{report.version}, system is "
            f"v{BACKUP_VERSION}. Restore may have issues."
        )

    created_at = metadata.get("createdAt")
    report.created_at = created_at if isinstance(created_at, str) else None

    # Per-table checksums
    declared = metadata.get("tables") if isinstance(metadata.get("tables"), dict) else {}
    for name, rows in tables.items():
        checksum = content_hash(rows)
        entry = declared.get(name)
        expected = entry.get("checksum") if isinstance(entry, dict) else None
        matches = expected == checksum

        if expected is None:
            report.add_error(f"No checksum recorded for table '{name}'")
        elif not matches:
            report.add_error(
                f"Checksum mismatch for table '{name}': expected {expected}, got {checksum}"
            )

        if isinstance(entry, dict) and entry.get("rowCount") not in (None, len(rows)):
            report.warnings.append(
                f"Row count mismatch for table '{name}': metadata says "
                f"{entry.get('rowCount')}, document has {len(rows)}"
            )

        report.tables[name] = TableValidation(
            row_count=len(rows),
            checksum=checksum,
            checksum_valid=matches,
        )
        report.total_records += len(rows)

    # Total checksum
    total = content_hash(tables)
    report.checksum_valid = metadata.get("totalChecksum") == total
    if not report.checksum_valid:
        report.add_error(
            f"Total checksum mismatch: expected {metadata.get('totalChecksum')}, got {total}"
        )

    # Signature: recomputed over the signature-free payload, explicit gate
    if not metadata.get("signature"):
        report.add_error("Missing signature")
    else:
        report.signature_valid = verify_signature(document, secret)
        if not report.signature_valid:
            report.add_error("Invalid backup signature: backup may be corrupted or tampered with")

    if catalog is not None:
        for name in tables:
            if catalog.is_excluded(name):
                report.add_error(f"Backup contains protected table '{name}'")
            elif not catalog.is_included(name):
                report.warnings.append(
                    f"Table '{name}' is not in the backup catalog and will be skipped"
                )
        for name in catalog.included():
            if name not in tables:
                report.warnings.append(f"Table '{name}' is missing from the backup")

    logger.info(
        f"Validated backup: valid={report.valid}, "
        f"{len(report.errors)} errors, {len(report.warnings)} warnings"
    )
    return report
