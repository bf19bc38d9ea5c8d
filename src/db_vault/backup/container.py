"""Container I/O: compressed document encoding and the flat-directory store.

Sealed documents are stored as ``gzip(canonical JSON)`` with the ``.dbvault``
extension; legacy SQL dumps as plain ``.sql`` text.  Both share one flat
directory, one naming scheme (``backup_YYYY-MM-DD_HH-MM-SS.<ext>``) and one
retention limit.

Usage:
    store = BackupStore(Path("backups"), max_backups=20)
    result = store.write_document(sealed)
    for info in store.list_backups():
        print(info.filename, info.total_records)
    document = store.load_document(result.filename)
"""

import codecs
import gzip
import json
import logging
import os
import re
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from db_vault.backup.integrity import canonical_json, require_structure
from db_vault.backup.models import BackupFormat, BackupInfo, SaveResult
from db_vault.backup.sql_dump import parse_sql_header
from db_vault.errors import BackupNotFoundError, InvalidEncodingError, MalformedDocumentError

logger = logging.getLogger(__name__)

DOCUMENT_EXTENSION = ".dbvault"
SQL_EXTENSION = ".sql"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

_GZIP_MAGIC = b"\x1f\x8b"
_NAME_PATTERN = re.compile(
    r"^backup_(?P<ts>\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})(?:_(?P<seq>\d+))?"
    r"\.(?P<ext>dbvault|sql)$"
)
_METADATA_KEY = '"metadata":'
_READ_CHUNK = 64 * 1024
_SQL_HEADER_BYTES = 4096


# ============================================================================
# Encoding
# ============================================================================


def encode_document(document: dict[str, Any]) -> tuple[bytes, int]:
    """Serialize canonically and gzip.

    Returns:
        ``(compressed_bytes, uncompressed_size)``
    """
    raw = canonical_json(document)
    return gzip.compress(raw), len(raw)


def decode_document(data: bytes) -> dict[str, Any]:
    """Decode a container (gzip) or an uploaded plain-JSON document.

    Raises:
        InvalidEncodingError: Corrupt gzip, invalid UTF-8 or invalid JSON.
        MalformedDocumentError: Decodes, but lacks ``metadata``/``tables``.
    """
    if data[:2] == _GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise InvalidEncodingError(f"Corrupt gzip container: {e}") from e
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InvalidEncodingError(f"Backup is not valid UTF-8: {e}") from e
    try:
        document = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidEncodingError(f"Invalid JSON: {e}") from e
    return require_structure(document)


def _stream_metadata(path: Path) -> dict[str, Any] | None:
    """Parse ``metadata`` from a container without inflating the row payload.

    Canonical serialization sorts keys, so ``"metadata"`` precedes
    ``"tables"``: decompression stops as soon as the metadata object parses.
    Returns ``None`` if the key is never found.
    """
    decoder = json.JSONDecoder()
    utf8 = codecs.getincrementaldecoder("utf-8")()
    buffer = ""
    start: int | None = None

    try:
        with gzip.open(path, "rb") as f:
            while True:
                chunk = f.read(_READ_CHUNK)
                buffer += utf8.decode(chunk, final=not chunk)
                if start is None:
                    index = buffer.find(_METADATA_KEY)
                    if index >= 0:
                        start = index + len(_METADATA_KEY)
                if start is not None:
                    try:
                        metadata, _ = decoder.raw_decode(buffer, start)
                    except json.JSONDecodeError:
                        if not chunk:
                            raise
                    else:
                        if not isinstance(metadata, dict):
                            raise MalformedDocumentError("Backup metadata is not an object")
                        return metadata
                if not chunk:
                    return None
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidEncodingError(f"Cannot read metadata from {path.name}: {e}") from e


# ============================================================================
# Store
# ============================================================================


class BackupStore:
    """Flat directory of backups with count-based retention.

    Args:
        directory: Backup directory (created on first write).
        max_backups: Retention ceiling across both formats.
        clock: Source of "now" for file names.  Aware values are named in
            UTC so names sort chronologically across DST changes.
    """

    def __init__(
        self,
        directory: Path,
        max_backups: int = 20,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if max_backups < 1:
            raise ValueError("max_backups must be at least 1")
        self.directory = Path(directory)
        self.max_backups = max_backups
        self._clock = clock

    # ------------------------------------------------------------------
    # Naming and ordering
    # ------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        """Resolve a backup name inside the store (base name only)."""
        safe = Path(name).name
        path = self.directory / safe
        if not safe or not path.is_file():
            raise BackupNotFoundError(f"Backup not found: {name}")
        return path

    def _new_path(self, extension: str) -> Path:
        now = self._clock()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        stamp = now.strftime(TIMESTAMP_FORMAT)
        path = self.directory / f"backup_{stamp}{extension}"
        seq = 0
        while path.exists():
            seq += 1
            path = self.directory / f"backup_{stamp}_{seq}{extension}"
        return path

    @staticmethod
    def _created(path: Path) -> tuple[datetime, int, float, str]:
        """Sort key: name timestamp, collision suffix, mtime, name."""
        mtime = path.stat().st_mtime
        match = _NAME_PATTERN.match(path.name)
        if match:
            created = datetime.strptime(match.group("ts"), TIMESTAMP_FORMAT)
            seq = int(match.group("seq") or 0)
        else:
            created = datetime.fromtimestamp(mtime, timezone.utc).replace(tzinfo=None)
            seq = 0
        return created, seq, mtime, path.name

    def _entries(self) -> list[Path]:
        """Stored backups, oldest first."""
        if not self.directory.exists():
            return []
        files = [
            p for p in self.directory.iterdir()
            if p.is_file() and p.suffix in (DOCUMENT_EXTENSION, SQL_EXTENSION)
        ]
        return sorted(files, key=self._created)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write(self, payload: bytes, original_size: int, fmt: BackupFormat) -> SaveResult:
        self.directory.mkdir(parents=True, exist_ok=True)

        existing = self._entries()
        deleted_oldest: str | None = None
        if len(existing) >= self.max_backups:
            oldest = existing[0]
            oldest.unlink()
            deleted_oldest = oldest.name
            logger.warning(f"Backup limit {self.max_backups} reached; deleted oldest {oldest.name}")

        extension = DOCUMENT_EXTENSION if fmt == "dbvault" else SQL_EXTENSION
        path = self._new_path(extension)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(payload)
        os.replace(tmp_path, path)

        size = path.stat().st_size
        ratio = round((1 - size / original_size) * 100, 2) if original_size else 0.0
        stored = len(existing) - (1 if deleted_oldest else 0) + 1
        logger.info(f"Saved backup {path.name} ({original_size} -> {size} bytes)")

        return SaveResult(
            filename=path.name,
            path=str(path),
            size=size,
            original_size=original_size,
            compression_ratio=ratio,
            format=fmt,
            deleted_oldest=deleted_oldest,
            is_at_limit=stored >= self.max_backups,
        )

    def write_document(self, document: dict[str, Any]) -> SaveResult:
        """Compress and store a sealed document, rotating if at the limit."""
        payload, original_size = encode_document(document)
        return self._write(payload, original_size, "dbvault")

    def write_sql(self, sql_text: str) -> SaveResult:
        """Store a legacy SQL dump, rotating if at the limit."""
        payload = sql_text.encode("utf-8")
        return self._write(payload, len(payload), "sql")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_bytes(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def load_document(self, name: str) -> dict[str, Any]:
        """Load and fully decode a sealed container."""
        path = self._path(name)
        if path.suffix != DOCUMENT_EXTENSION:
            raise InvalidEncodingError(f"{path.name} is not a {DOCUMENT_EXTENSION} container")
        return decode_document(path.read_bytes())

    def read_sql(self, name: str) -> str:
        path = self._path(name)
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise InvalidEncodingError(f"{path.name} is not valid UTF-8: {e}") from e

    def read_metadata(self, name: str) -> dict[str, Any]:
        """Metadata of a sealed container, without decoding its rows."""
        path = self._path(name)
        metadata = _stream_metadata(path)
        if metadata is None:
            raise MalformedDocumentError(f"{path.name} has no metadata")
        return metadata

    def format_of(self, name: str) -> BackupFormat:
        return "dbvault" if self._path(name).suffix == DOCUMENT_EXTENSION else "sql"

    def list_backups(self) -> list[BackupInfo]:
        """All stored backups, newest first, with per-entry metadata."""
        infos: list[BackupInfo] = []
        for path in reversed(self._entries()):
            created, _, _, _ = self._created(path)
            info = BackupInfo(
                filename=path.name,
                format="dbvault" if path.suffix == DOCUMENT_EXTENSION else "sql",
                size=path.stat().st_size,
                created=created,
            )
            if info.format == "dbvault":
                try:
                    metadata = _stream_metadata(path)
                except (InvalidEncodingError, MalformedDocumentError) as e:
                    logger.warning(f"Unreadable backup {path.name}: {e}")
                    info.metadata = {"error": str(e)}
                else:
                    info.metadata = metadata or {}
                    tables = info.metadata.get("tables")
                    info.table_count = len(tables) if isinstance(tables, dict) else None
                    total = info.metadata.get("totalRecords")
                    info.total_records = total if isinstance(total, int) else None
            else:
                with open(path, "rb") as f:
                    head = f.read(_SQL_HEADER_BYTES).decode("utf-8", errors="replace")
                info.metadata = dict(parse_sql_header(head))
                tables = info.metadata.get("tables")
                info.table_count = int(tables) if isinstance(tables, str) and tables.isdigit() else None
            infos.append(info)
        return infos

    def delete(self, name: str) -> str:
        """Delete a backup; returns the deleted file name."""
        path = self._path(name)
        path.unlink()
        logger.info(f"Deleted backup {path.name}")
        return path.name
