"""Default table catalog for the purchase-order system.

Declares each included table once, with its FK parents.  Restore and clear
orders are derived by ``TableCatalog``; nothing here lists an order by hand.

``users``, ``audit_log`` and ``schema_migrations`` are never snapshotted or
cleared: credentials and the audit trail must survive a restore, and the
migration history describes the live schema rather than the data.
"""

from db_vault.backup.models import ForeignKey, TableCatalog, TableDef

EXCLUDED_TABLES = frozenset({"users", "audit_log", "schema_migrations"})


def _fk(table: str, field: str) -> ForeignKey:
    return ForeignKey(table=table, field=field)


DEFAULT_TABLES = [
    TableDef(name="sites"),
    TableDef(name="site_letters", parents=[_fk("sites", "site_id")]),
    TableDef(name="suppliers"),
    TableDef(name="po_stages"),
    TableDef(name="locations", parents=[_fk("sites", "site_id")]),
    TableDef(
        name="location_spread_rules",
        parents=[
            _fk("locations", "source_location_id"),
            _fk("users", "created_by"),
        ],
    ),
    TableDef(
        name="location_spread_rule_sites",
        parents=[
            _fk("location_spread_rules", "rule_id"),
            _fk("sites", "site_id"),
        ],
    ),
    TableDef(
        name="location_spread_rule_locations",
        parents=[
            _fk("location_spread_rule_sites", "rule_site_id"),
            _fk("locations", "location_id"),
        ],
    ),
    TableDef(
        name="purchase_orders",
        parents=[
            _fk("suppliers", "supplier_id"),
            _fk("sites", "site_id"),
            _fk("locations", "location_id"),
            _fk("po_stages", "stage_id"),
            _fk("users", "created_by"),
            _fk("users", "approved_by"),
            _fk("users", "cancelled_by"),
        ],
    ),
    TableDef(name="po_line_items", parents=[_fk("purchase_orders", "po_id")]),
    TableDef(
        name="invoices",
        parents=[
            _fk("purchase_orders", "purchase_order_id"),
            _fk("users", "created_by"),
        ],
    ),
    TableDef(name="site_settings"),
    TableDef(name="po_sequences", parents=[_fk("sites", "site_id")]),
]


def default_catalog() -> TableCatalog:
    """Build the catalog of the purchase-order system's backed-up tables."""
    return TableCatalog(tables=DEFAULT_TABLES, excluded=EXCLUDED_TABLES)
