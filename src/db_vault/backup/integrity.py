"""Integrity Sealer: checksums and HMAC signature for backup documents.

A sealed document looks like::

    {
      "format": "DBVault",
      "version": "2.0",
      "metadata": {
        "createdAt": "...", "createdBy": {...}, "database": "...",
        "appVersion": "...", "source": "backup_system",
        "tables": {"sites": {"rowCount": 2, "checksum": "<sha256>"}, ...},
        "totalRecords": 5,
        "totalChecksum": "<sha256>",
        "signature": "<hmac-sha256>"
      },
      "tables": {"sites": [...], ...}
    }

Checksums are SHA-256 over the canonical JSON serialization.  The signature
is HMAC-SHA256 over the canonical serialization of the whole document with
``metadata.signature`` removed.  Signing and verification both go through
``signing_payload()`` so they can never disagree on what is authenticated.
"""

import copy
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any

from db_vault.errors import MalformedDocumentError, MissingSecretError

BACKUP_FORMAT = "DBVault"
BACKUP_VERSION = "2.0"
BACKUP_SOURCE = "backup_system"


def canonical_json(data: Any) -> bytes:
    """Deterministic serialization: sorted keys, no whitespace, UTF-8."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def content_hash(data: Any) -> str:
    """SHA-256 hex digest of the canonical serialization of ``data``."""
    return hashlib.sha256(canonical_json(data)).hexdigest()


def _secret_bytes(secret: str | bytes | None) -> bytes:
    if not secret:
        raise MissingSecretError(
            "An HMAC secret is required to sign or verify backups."
        )
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def signing_payload(document: dict[str, Any]) -> bytes:
    """Canonical bytes of ``document`` with ``metadata.signature`` removed.

    The input is not modified.
    """
    unsigned = dict(document)
    metadata = unsigned.get("metadata")
    if isinstance(metadata, dict):
        unsigned["metadata"] = {k: v for k, v in metadata.items() if k != "signature"}
    return canonical_json(unsigned)


def compute_signature(document: dict[str, Any], secret: str | bytes) -> str:
    """HMAC-SHA256 hex digest over ``signing_payload(document)``."""
    return hmac.new(
        _secret_bytes(secret), signing_payload(document), hashlib.sha256
    ).hexdigest()


def verify_signature(document: dict[str, Any], secret: str | bytes) -> bool:
    """Check ``metadata.signature`` with a constant-time comparison.

    Returns ``False`` (never raises) for a missing or mismatched signature;
    a missing secret still raises ``MissingSecretError``.
    """
    expected = compute_signature(document, secret)
    metadata = document.get("metadata")
    signature = metadata.get("signature") if isinstance(metadata, dict) else None
    if not isinstance(signature, str):
        return False
    return hmac.compare_digest(expected, signature)


def require_structure(document: Any) -> dict[str, Any]:
    """Raise ``MalformedDocumentError`` unless ``metadata`` and ``tables`` are mappings."""
    if not isinstance(document, dict):
        raise MalformedDocumentError("Invalid backup format: document is not an object")
    if not isinstance(document.get("metadata"), dict) or not isinstance(
        document.get("tables"), dict
    ):
        raise MalformedDocumentError("Invalid backup format: missing metadata or tables")
    for name, rows in document["tables"].items():
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise MalformedDocumentError(
                f"Invalid backup format: table '{name}' is not a list of rows"
            )
    return document


def seal_document(
    partial: dict[str, Any],
    secret: str | bytes,
    *,
    created_by: dict[str, Any] | None = None,
    database: str = "",
    app_version: str = "1.0.0",
    now: datetime | None = None,
) -> dict[str, Any]:
    """Seal a snapshot into an immutable, signed backup document.

    Args:
        partial: ``{"tables": {...}}`` from ``build_snapshot``.
        secret: HMAC key (required).
        created_by: ``{"userId": ..., "username": ...}``; username defaults
            to ``"system"``.
        database: Source database identifier.
        app_version: Application version recorded in metadata.
        now: Creation time (UTC now by default).

    Returns:
        The sealed document.  The input snapshot is not modified.

    Raises:
        MalformedDocumentError: If ``partial`` has no ``tables`` mapping.
        MissingSecretError: If ``secret`` is empty.
    """
    secret_bytes = _secret_bytes(secret)
    tables = partial.get("tables")
    if not isinstance(tables, dict):
        raise MalformedDocumentError("Snapshot has no 'tables' mapping")
    tables = copy.deepcopy(tables)

    # 1. Per-table checksums
    table_meta = {
        name: {"rowCount": len(rows), "checksum": content_hash(rows)}
        for name, rows in tables.items()
    }

    # 2. Metadata without signature
    created_by = created_by or {}
    created_at = (now or datetime.now(timezone.utc)).isoformat()
    metadata: dict[str, Any] = {
        "createdAt": created_at,
        "createdBy": {
            "userId": created_by.get("userId"),
            "username": created_by.get("username") or "system",
        },
        "database": database,
        "appVersion": app_version,
        "source": BACKUP_SOURCE,
        "tables": table_meta,
        "totalRecords": sum(m["rowCount"] for m in table_meta.values()),
    }

    # 3. Total checksum
    metadata["totalChecksum"] = content_hash(tables)

    document = {
        "format": BACKUP_FORMAT,
        "version": BACKUP_VERSION,
        "metadata": metadata,
        "tables": tables,
    }

    # 4-6. Sign the signature-free serialization, then attach
    metadata["signature"] = hmac.new(
        secret_bytes, signing_payload(document), hashlib.sha256
    ).hexdigest()
    return document
