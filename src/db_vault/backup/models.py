"""Backup models: declarative table catalog and result reports.

Projects declare their tables and FK parents once; restore order and clear
order are derived from that single dependency graph.

Usage:
    from db_vault.backup.models import TableCatalog, TableDef, ForeignKey

    catalog = TableCatalog(
        tables=[
            TableDef(name="authors"),
            TableDef(name="books", parents=[ForeignKey(table="authors", field="author_id")]),
            TableDef(name="reviews", parents=[
                ForeignKey(table="books", field="book_id"),
                ForeignKey(table="users", field="reviewer_id"),  # excluded, ignored for ordering
            ]),
        ],
        excluded={"users", "audit_log"},
    )
    catalog.restore_order()  # ['authors', 'books', 'reviews']
    catalog.clear_order()    # ['reviews', 'books', 'authors']
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, PrivateAttr, model_validator

from db_vault.errors import CatalogError


# ============================================================================
# Table Catalog
# ============================================================================


class ForeignKey(BaseModel):
    """Foreign key reference to a parent table."""

    table: str          # parent table name
    field: str          # FK column in this table


class TableDef(BaseModel):
    """Definition of an included table."""

    name: str                                               # table name
    pk: list[str] = Field(default_factory=lambda: ["id"])   # primary key columns
    parents: list[ForeignKey] = Field(default_factory=list)  # FK parents

    @property
    def depends_on(self) -> list[str]:
        """Distinct parent table names, self-references removed."""
        seen: list[str] = []
        for fk in self.parents:
            if fk.table != self.name and fk.table not in seen:
                seen.append(fk.table)
        return seen


class TableCatalog(BaseModel):
    """Declared set of included tables plus the never-touched exclusion set.

    Orders are computed once at construction with Kahn's algorithm (ties
    broken by declaration order).  Construction raises ``CatalogError`` when
    the graph is not a DAG or is otherwise inconsistent.
    """

    tables: list[TableDef]
    excluded: frozenset[str] = frozenset()

    _restore_order: list[str] = PrivateAttr(default_factory=list)
    _ranks: dict[str, int] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _build_orders(self) -> "TableCatalog":
        names = [t.name for t in self.tables]
        declared = set(names)

        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise CatalogError(f"Tables declared more than once: {', '.join(duplicates)}")

        overlap = sorted(declared & self.excluded)
        if overlap:
            raise CatalogError(f"Tables both included and excluded: {', '.join(overlap)}")

        # Parents must be included or excluded; excluded parents don't order anything
        deps: dict[str, list[str]] = {}
        for table in self.tables:
            unknown = [
                p for p in table.depends_on
                if p not in declared and p not in self.excluded
            ]
            if unknown:
                raise CatalogError(
                    f"Table '{table.name}' depends on undeclared table(s): "
                    f"{', '.join(unknown)}"
                )
            deps[table.name] = [p for p in table.depends_on if p in declared]

        # Kahn's algorithm
        remaining = {name: len(deps[name]) for name in names}
        children: dict[str, list[str]] = {name: [] for name in names}
        for name in names:
            for parent in deps[name]:
                children[parent].append(name)

        ranks: dict[str, int] = {}
        order: list[str] = []
        ready = [name for name in names if remaining[name] == 0]
        while ready:
            name = ready.pop(0)
            order.append(name)
            ranks[name] = max((ranks[p] + 1 for p in deps[name]), default=0)
            for child in children[name]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)
            # Keep declaration order among tables that are ready together
            ready.sort(key=names.index)

        if len(order) != len(names):
            cyclic = sorted(n for n in names if n not in order)
            raise CatalogError(f"Dependency cycle among tables: {', '.join(cyclic)}")

        assert set(order) == declared and len(order) == len(declared)

        self._restore_order = order
        self._ranks = ranks
        return self

    def included(self) -> list[str]:
        """Included table names in declaration order."""
        return [t.name for t in self.tables]

    def restore_order(self) -> list[str]:
        """Parents before children."""
        return list(self._restore_order)

    def clear_order(self) -> list[str]:
        """Children before parents (reverse of ``restore_order``)."""
        return list(reversed(self._restore_order))

    def is_excluded(self, name: str) -> bool:
        return name in self.excluded

    def is_included(self, name: str) -> bool:
        return name in self._ranks

    def rank(self, name: str) -> int:
        """Dependency rank: 0 for roots, else 1 + the highest parent rank."""
        return self._ranks[name]

    def get(self, name: str) -> TableDef | None:
        for t in self.tables:
            if t.name == name:
                return t
        return None


# ============================================================================
# Validation Report
# ============================================================================


class TableValidation(BaseModel):
    """Per-table outcome of checksum validation."""

    row_count: int
    checksum: str
    checksum_valid: bool


class ValidationReport(BaseModel):
    """Result of validating a sealed document."""

    valid: bool = True
    format: str | None = None
    version: str | None = None
    created_at: str | None = None
    total_records: int = 0
    tables: dict[str, TableValidation] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    checksum_valid: bool = False
    signature_valid: bool = False

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def format_report(self) -> str:
        """Format validation result as human-readable report."""
        if self.valid and not self.warnings:
            return f"Backup valid ({self.total_records} records)"

        lines = [
            f"Backup valid with warnings ({self.total_records} records):"
            if self.valid
            else "Backup validation failed:"
        ]

        if self.errors:
            lines.append(f"\n  Errors ({len(self.errors)}):")
            for error in self.errors:
                lines.append(f"    - {error}")

        if self.warnings:
            lines.append(f"\n  Warnings ({len(self.warnings)}):")
            for warning in self.warnings:
                lines.append(f"    - {warning}")

        return "\n".join(lines)


class SqlAnalysisReport(BaseModel):
    """Static analysis of a legacy SQL-text backup."""

    valid: bool = True
    statements: int = 0
    tables: dict[str, int] = Field(default_factory=dict)  # table -> INSERT count
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# ============================================================================
# Restore Summary
# ============================================================================


class RowRestoreError(BaseModel):
    """A row (or SQL statement) that could not be applied; never fatal."""

    table: str
    row: str            # short description, e.g. "id=7"
    message: str


class TableRestoreStats(BaseModel):
    """Per-table counts for one restore."""

    inserted: int = 0
    replaced: int = 0
    skipped: int = 0
    failed: int = 0


class RestoreSummary(BaseModel):
    """Result of a restore that ran to completion (and committed)."""

    success: bool = True
    encoding: Literal["document", "sql"] = "document"
    strict: bool = False
    tables: dict[str, TableRestoreStats] = Field(default_factory=dict)
    cleared_tables: list[str] = Field(default_factory=list)
    skipped_tables: list[str] = Field(default_factory=list)
    errors: list[RowRestoreError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0

    def stats(self, table: str) -> TableRestoreStats:
        """Get (creating on first use) the counters for ``table``."""
        if table not in self.tables:
            self.tables[table] = TableRestoreStats()
        return self.tables[table]

    @property
    def total_inserted(self) -> int:
        return sum(s.inserted for s in self.tables.values())

    @property
    def total_replaced(self) -> int:
        return sum(s.replaced for s in self.tables.values())

    @property
    def total_skipped(self) -> int:
        return sum(s.skipped for s in self.tables.values())

    @property
    def total_failed(self) -> int:
        return sum(s.failed for s in self.tables.values())


# ============================================================================
# Container Results
# ============================================================================

BackupFormat = Literal["dbvault", "sql"]


class SaveResult(BaseModel):
    """Result of writing a backup to the store."""

    filename: str
    path: str
    size: int                       # bytes on disk
    original_size: int              # uncompressed bytes
    compression_ratio: float        # percent saved, 2 decimals
    format: BackupFormat
    deleted_oldest: str | None = None
    is_at_limit: bool = False


class BackupInfo(BaseModel):
    """One entry of ``BackupStore.list_backups()``."""

    filename: str
    format: BackupFormat
    size: int
    created: datetime
    metadata: dict[str, object] = Field(default_factory=dict)
    table_count: int | None = None
    total_records: int | None = None
