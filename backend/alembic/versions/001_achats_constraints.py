"""achats_constraints

Revision ID: 001_achats_constraints
Revises:
Create Date: 2026-10-18

Adds the constraints the pricing code relies on:
- purchase_orders.reference unique (reference retry loop)
- purchase_order_devis (purchase_order_id, position) unique (two-phase reorder)
- estimate_versions (project_id, version_number) unique (duplication)
- estimate_items (version_id, parent_id) lookup index
- products.tax_rate_bp default 2000 (20 %)

All DDL uses IF NOT EXISTS patterns so the migration is idempotent and safe
to run even when Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
from sqlalchemy import text

revision = '001_achats_constraints'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

_INDEXES = [
    ("purchase_orders", "uq_purchase_orders_reference",
     "CREATE UNIQUE INDEX IF NOT EXISTS uq_purchase_orders_reference ON purchase_orders (reference)"),
    ("purchase_order_devis", "uq_devis_order_position",
     "CREATE UNIQUE INDEX IF NOT EXISTS uq_devis_order_position "
     "ON purchase_order_devis (purchase_order_id, position)"),
    ("estimate_versions", "uq_estimate_version_number",
     "CREATE UNIQUE INDEX IF NOT EXISTS uq_estimate_version_number "
     "ON estimate_versions (project_id, version_number)"),
    ("estimate_items", "ix_estimate_items_version_parent",
     "CREATE INDEX IF NOT EXISTS ix_estimate_items_version_parent "
     "ON estimate_items (version_id, parent_id)"),
]


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def upgrade() -> None:
    conn = op.get_bind()

    for table_name, index_name, ddl in _INDEXES:
        if not _table_exists(conn, table_name):
            logger.info(f"Table {table_name} missing, skipping {index_name}")
            continue
        conn.execute(text(ddl))
        logger.info(f"Ensured index {index_name}")

    if _table_exists(conn, 'products'):
        conn.execute(text("ALTER TABLE products ALTER COLUMN tax_rate_bp SET DEFAULT 2000"))


def downgrade() -> None:
    conn = op.get_bind()
    for table_name, index_name, _ in reversed(_INDEXES):
        if _table_exists(conn, table_name):
            conn.execute(text(f"DROP INDEX IF EXISTS {index_name}"))
