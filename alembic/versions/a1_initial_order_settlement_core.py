"""orders, wallet ledger, settlement records

Revision ID: a1c0f3e5d201
Revises:
Create Date: 2026-10-18 09:00:00
"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "a1c0f3e5d201"
down_revision = None
branch_labels = None
depends_on = None

CREDIT_PREDICATE = sa.text("type = 'credit'")


def upgrade():
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_number", sa.String(32), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("vendor_id", sa.String(64), nullable=False),
        sa.Column("item_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False),
        sa.Column("cashback_used", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_type", sa.String(16), nullable=False),
        sa.Column("delivery_address", sa.JSON, nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("sub_status", sa.String(255), nullable=True),
        sa.Column("payment_ref", sa.String(64), nullable=True),
        sa.Column("payment_id", sa.String(64), nullable=True),
        sa.Column("payment_status", sa.String(32), nullable=False),
        sa.Column("mockup_images", sa.JSON, nullable=True),
        sa.Column("revision_request", sa.JSON, nullable=True),
        sa.Column("cancel_reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_orders_order_number", "orders", ["order_number"], unique=True)
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_payment_ref", "orders", ["payment_ref"])
    op.create_index("ix_orders_vendor_status", "orders", ["vendor_id", "status"])
    op.create_index("ix_orders_customer_created", "orders", ["customer_id", "created_at"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("customization", sa.JSON, nullable=True),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "order_status_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("old_status", sa.String(32), nullable=True),
        sa.Column("new_status", sa.String(32), nullable=False),
        sa.Column("sub_status", sa.String(255), nullable=True),
        sa.Column("actor", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_order_status_events_order_id", "order_status_events", ["order_id"])

    op.create_table(
        "wallet",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False, unique=True),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("wallet_id", sa.Integer, sa.ForeignKey("wallet.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_id", sa.Integer, nullable=True),
        sa.Column("type", sa.String(8), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_wallet_transactions_wallet_id", "wallet_transactions", ["wallet_id"])
    op.create_index("ix_wallet_transactions_order_id", "wallet_transactions", ["order_id"])
    # 同一订单最多一笔 credit
    op.create_index(
        "uq_wallet_tx_credit_per_order",
        "wallet_transactions",
        ["wallet_id", "order_id"],
        unique=True,
        postgresql_where=CREDIT_PREDICATE,
        sqlite_where=CREDIT_PREDICATE,
    )

    op.create_table(
        "settlement_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("payment_id", sa.String(64), nullable=False),
        sa.Column("total_amount", sa.BigInteger, nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("platform_amount", sa.BigInteger, nullable=False),
        sa.Column("vendor_amount", sa.BigInteger, nullable=False),
        sa.Column("vendor_account_ref", sa.String(64), nullable=True),
        sa.Column("route_transfer_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("order_id", "payment_id", name="uq_settlement_order_payment"),
        sa.CheckConstraint("platform_amount + vendor_amount = total_amount", name="ck_settlement_split_sum"),
    )
    op.create_index("ix_settlement_records_order_id", "settlement_records", ["order_id"])
    op.create_index("ix_settlement_records_status", "settlement_records", ["status"])

    op.create_table(
        "vendor_payout_accounts",
        sa.Column("vendor_id", sa.String(64), primary_key=True),
        sa.Column("route_account_id", sa.String(64), nullable=False),
        sa.Column("commission_rate_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table("vendor_payout_accounts")
    op.drop_index("ix_settlement_records_status", table_name="settlement_records")
    op.drop_index("ix_settlement_records_order_id", table_name="settlement_records")
    op.drop_table("settlement_records")
    op.drop_index("uq_wallet_tx_credit_per_order", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_order_id", table_name="wallet_transactions")
    op.drop_index("ix_wallet_transactions_wallet_id", table_name="wallet_transactions")
    op.drop_table("wallet_transactions")
    op.drop_table("wallet")
    op.drop_index("ix_order_status_events_order_id", table_name="order_status_events")
    op.drop_table("order_status_events")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_customer_created", table_name="orders")
    op.drop_index("ix_orders_vendor_status", table_name="orders")
    op.drop_index("ix_orders_payment_ref", table_name="orders")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_order_number", table_name="orders")
    op.drop_table("orders")
