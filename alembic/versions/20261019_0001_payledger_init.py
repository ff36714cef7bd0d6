"""Initialize payment and credit ledger schema.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    def has_index(table: str, index_name: str) -> bool:
        if table not in set(inspector.get_table_names()):
            return False
        return any(item.get("name") == index_name for item in inspector.get_indexes(table))

    def ensure_index(table: str, columns: list[str], *, unique: bool = False, name: str | None = None) -> None:
        index_name = name or op.f(f"ix_{table}_{'_'.join(columns)}")
        if not has_index(table, index_name):
            op.create_index(index_name, table, columns, unique=unique)

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=64), nullable=False),
            sa.Column("nickname", sa.String(length=120), nullable=True),
            sa.Column("credits", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("total_spent_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("ledger_seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )

    if "orders" not in existing_tables:
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=128), nullable=False),
            sa.Column("identifier", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("order_type", sa.String(length=64), nullable=False),
            sa.Column("price_cents", sa.Integer(), nullable=False),
            sa.Column("promotion_price_cents", sa.Integer(), nullable=False),
            sa.Column("transaction_id", sa.String(length=128), nullable=False),
            sa.Column("promoter", sa.String(length=64), nullable=True),
            sa.Column("credit_amount", sa.Integer(), nullable=True),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("transaction_id"),
        )
    ensure_index("orders", ["order_id"], unique=True)
    ensure_index("orders", ["identifier"])
    ensure_index("orders", ["order_type"])
    ensure_index("orders", ["promoter"])
    ensure_index("orders", ["created_at"])

    if "pay_orders" not in existing_tables:
        op.create_table(
            "pay_orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("identifier", sa.String(length=128), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("sign", sa.String(length=64), nullable=True),
            sa.Column(
                "status",
                sa.Enum("PENDING", "SUCCESS", name="payorderstatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=False),
            sa.Column("order_type", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("credit_amount", sa.Integer(), nullable=True),
            sa.Column("promoter", sa.String(length=64), nullable=True),
            sa.Column("promotion_price_cents", sa.Integer(), nullable=False),
            sa.Column("checkout_url", sa.Text(), nullable=True),
            sa.Column("transaction_id", sa.String(length=128), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    ensure_index("pay_orders", ["identifier"], unique=True)
    ensure_index("pay_orders", ["user_id"])
    ensure_index("pay_orders", ["status"])
    ensure_index("pay_orders", ["created_at"])
    ensure_index("pay_orders", ["status", "created_at"], name="ix_pay_orders_status_created")

    if "credit_transactions" not in existing_tables:
        op.create_table(
            "credit_transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column(
                "type",
                sa.Enum("RECHARGE", "CONSUME", "REFUND", name="credittransactiontype", native_enum=False),
                nullable=False,
            ),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("balance", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.String(length=128), nullable=True),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "sequence", name="uq_credit_transactions_user_sequence"),
        )
    ensure_index("credit_transactions", ["user_id"])
    ensure_index("credit_transactions", ["type"])
    ensure_index("credit_transactions", ["order_id"])
    ensure_index("credit_transactions", ["created_at"])
    ensure_index("credit_transactions", ["user_id", "created_at"], name="ix_credit_transactions_user_created")

    if "redemption_codes" not in existing_tables:
        op.create_table(
            "redemption_codes",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("code", sa.String(length=32), nullable=False),
            sa.Column("credit_amount", sa.Integer(), nullable=False),
            sa.Column("max_uses", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("used_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(length=64), nullable=False),
            sa.Column("batch_id", sa.String(length=36), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.CheckConstraint("used_count <= max_uses", name="ck_redemption_codes_usage"),
            sa.CheckConstraint("max_uses >= 1", name="ck_redemption_codes_max_uses"),
            sa.PrimaryKeyConstraint("id"),
        )
    ensure_index("redemption_codes", ["code"], unique=True)
    ensure_index("redemption_codes", ["is_active"])
    ensure_index("redemption_codes", ["batch_id"])
    ensure_index("redemption_codes", ["created_at"])

    if "redemption_records" not in existing_tables:
        op.create_table(
            "redemption_records",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("code_id", sa.String(length=36), nullable=False),
            sa.Column("code", sa.String(length=32), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("user_identifier", sa.String(length=128), nullable=False),
            sa.Column("credit_amount", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["code_id"], ["redemption_codes.id"]),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code_id", "user_id", name="uq_redemption_records_code_user"),
        )
    ensure_index("redemption_records", ["code_id"])
    ensure_index("redemption_records", ["user_id"])
    ensure_index("redemption_records", ["created_at"])

    if "payment_audit_logs" not in existing_tables:
        op.create_table(
            "payment_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("source", sa.String(length=16), nullable=False),
            sa.Column("out_trade_no", sa.String(length=128), nullable=True),
            sa.Column("transaction_id", sa.String(length=128), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    ensure_index("payment_audit_logs", ["occurred_at"])
    ensure_index("payment_audit_logs", ["provider"])
    ensure_index("payment_audit_logs", ["out_trade_no"])
    ensure_index("payment_audit_logs", ["outcome"])

    if "reconciliation_issues" not in existing_tables:
        op.create_table(
            "reconciliation_issues",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("pay_order_id", sa.String(length=36), nullable=False),
            sa.Column("out_trade_no", sa.String(length=128), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("credit_amount", sa.Integer(), nullable=True),
            sa.Column("transaction_id", sa.String(length=128), nullable=True),
            sa.Column(
                "status",
                sa.Enum("OPEN", "RESOLVED", name="reconciliationissuestatus", native_enum=False),
                nullable=False,
            ),
            sa.Column("error", sa.Text(), nullable=False),
            sa.Column("resolved_by", sa.String(length=64), nullable=True),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["pay_order_id"], ["pay_orders.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    ensure_index("reconciliation_issues", ["pay_order_id"])
    ensure_index("reconciliation_issues", ["out_trade_no"])
    ensure_index("reconciliation_issues", ["user_id"])
    ensure_index("reconciliation_issues", ["status"])
    ensure_index("reconciliation_issues", ["created_at"])


def downgrade() -> None:
    for table in (
        "reconciliation_issues",
        "payment_audit_logs",
        "redemption_records",
        "redemption_codes",
        "credit_transactions",
        "pay_orders",
        "orders",
        "users",
    ):
        op.drop_table(table)
