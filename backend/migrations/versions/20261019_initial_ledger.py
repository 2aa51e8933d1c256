"""Initial lounge inventory ledger schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("loyalty_tier", sa.String(16), nullable=False, server_default="Bronze"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_phone", ["phone_number"], unique=False)
        batch_op.create_index("ix_customers_is_active", ["is_active"], unique=False)

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("category", sa.String(64), nullable=False),
        sa.Column("unit_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_price_cents", sa.Integer(), nullable=True),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("is_redeemable", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("points_required", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_vip_only", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_promo_active", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("expiry_date", sa.Date(), nullable=True),
        sa.Column("supplier", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("inventory_items", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_items_category", ["category"], unique=False)
        batch_op.create_index("ix_inventory_items_expiry_date", ["expiry_date"], unique=False)
        batch_op.create_index("ix_inventory_items_category_name", ["category", "name"], unique=False)
        batch_op.create_index("ix_inventory_items_active_stock", ["is_active", "stock_quantity"], unique=False)

    op.create_table(
        "inventory_ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(16), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("unit_price_cents_at_entry", sa.Integer(), nullable=True),
        sa.Column("related_session_id", sa.String(64), nullable=True),
        sa.Column("related_customer_id", sa.Integer(), nullable=True),
        sa.Column("payment_method", sa.String(32), nullable=True),
        sa.Column("notes", sa.String(255), nullable=True),
        sa.Column("performed_by", sa.String(64), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("idempotency_attempt", sa.Integer(), server_default="0", nullable=False),
        sa.Column("reverses_entry_id", sa.Integer(), nullable=True),
        sa.Column("reversal_kind", sa.String(16), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["inventory_items.id"]),
        sa.ForeignKeyConstraint(["related_customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["reverses_entry_id"], ["inventory_ledger_entries.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", "idempotency_attempt", name="uq_ledger_idempotency_key"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("inventory_ledger_entries", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_ledger_entries_item_id", ["item_id"], unique=False)
        batch_op.create_index("ix_inventory_ledger_entries_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_inventory_ledger_entries_related_session_id", ["related_session_id"], unique=False)
        batch_op.create_index("ix_inventory_ledger_entries_related_customer_id", ["related_customer_id"], unique=False)
        batch_op.create_index("ix_inventory_ledger_entries_reverses_entry_id", ["reverses_entry_id"], unique=False)
        batch_op.create_index("ix_ledger_item_created", ["item_id", "created_at"], unique=False)
        batch_op.create_index("ix_ledger_type_created", ["entry_type", "created_at"], unique=False)

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("session_id", sa.String(64), nullable=True),
        sa.Column("ledger_entry_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["ledger_entry_id"], ["inventory_ledger_entries.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("loyalty_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_loyalty_transactions_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_transaction_type", ["transaction_type"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_ledger_entry_id", ["ledger_entry_id"], unique=False)
        batch_op.create_index("ix_loyalty_transactions_created_at", ["created_at"], unique=False)
        batch_op.create_index("ix_loyalty_customer_created", ["customer_id", "created_at"], unique=False)


def downgrade():
    op.drop_table("loyalty_transactions")
    op.drop_table("inventory_ledger_entries")
    op.drop_table("inventory_items")
    op.drop_table("customers")
