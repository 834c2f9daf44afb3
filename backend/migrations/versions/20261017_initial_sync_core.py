"""Initial sync core schema: ledger, sales, cash sessions, audit, outbox

Revision ID: 20261017_sync_core
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_sync_core"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    op.create_table(
        "branches",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_branches_tenant_id", "branches", ["tenant_id"])

    op.create_table(
        "branch_sales_policies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("fx_rate_khr_per_usd", sa.Numeric(12, 4), nullable=False),
        sa.Column("vat_enabled", sa.Boolean(), nullable=False),
        sa.Column("vat_rate_percent", sa.Numeric(6, 2), nullable=False),
        sa.Column("khr_rounding_enabled", sa.Boolean(), nullable=False),
        sa.Column("khr_rounding_mode", sa.String(length=16), nullable=False),
        sa.Column("khr_rounding_granularity", sa.Integer(), nullable=False),
        _ts("updated_at"),
        sa.UniqueConstraint("tenant_id", "branch_id", name="uq_branch_sales_policies_tenant_branch"),
    )
    op.create_index("ix_branch_sales_policies_tenant_id", "branch_sales_policies", ["tenant_id"])
    op.create_index("ix_branch_sales_policies_branch_id", "branch_sales_policies", ["branch_id"])

    op.create_table(
        "discount_policies",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("scope", sa.String(length=16), nullable=False),
        sa.Column("menu_item_id", sa.String(length=36), nullable=True),
        sa.Column("discount_type", sa.String(length=16), nullable=False),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_discount_policies_tenant_id", "discount_policies", ["tenant_id"])
    op.create_index("ix_discount_policies_branch_id", "discount_policies", ["branch_id"])
    op.create_index("ix_discount_policies_menu_item_id", "discount_policies", ["menu_item_id"])

    op.create_table(
        "menu_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("price_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_menu_items_tenant_id", "menu_items", ["tenant_id"])

    op.create_table(
        "branch_menu_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("branch_id", sa.String(length=36), sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("menu_item_id", sa.String(length=36), sa.ForeignKey("menu_items.id"), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("price_override_usd", sa.Numeric(12, 2), nullable=True),
        sa.UniqueConstraint("branch_id", "menu_item_id", name="uq_branch_menu_items_branch_item"),
    )
    op.create_index("ix_branch_menu_items_branch_id", "branch_menu_items", ["branch_id"])
    op.create_index("ix_branch_menu_items_menu_item_id", "branch_menu_items", ["menu_item_id"])

    op.create_table(
        "offline_sync_operations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), nullable=False),
        sa.Column("client_op_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        _ts("occurred_at", nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("tenant_id", "client_op_id", name="uq_offline_sync_operations_tenant_op"),
    )
    op.create_index("ix_offline_sync_operations_tenant_id", "offline_sync_operations", ["tenant_id"])
    op.create_index("ix_offline_sync_operations_branch_id", "offline_sync_operations", ["branch_id"])
    op.create_index("ix_offline_sync_operations_status", "offline_sync_operations", ["status"])

    op.create_table(
        "sales",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("client_uuid", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), nullable=False),
        sa.Column("employee_id", sa.String(length=36), nullable=False),
        sa.Column("sale_type", sa.String(length=16), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column("ref_previous_sale_id", sa.String(length=36), sa.ForeignKey("sales.id"), nullable=True),
        sa.Column("vat_enabled", sa.Boolean(), nullable=False),
        sa.Column("vat_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("vat_amount_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("vat_amount_khr", sa.BigInteger(), nullable=False),
        sa.Column("order_discount_type", sa.String(length=16), nullable=True),
        sa.Column("order_discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("applied_policy_ids", sa.JSON(), nullable=False),
        sa.Column("policy_stale", sa.Boolean(), nullable=False),
        sa.Column("fx_rate_used", sa.Numeric(12, 4), nullable=False),
        sa.Column("subtotal_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("subtotal_khr", sa.BigInteger(), nullable=False),
        sa.Column("total_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_khr", sa.BigInteger(), nullable=False),
        sa.Column("tender_currency", sa.String(length=3), nullable=False),
        sa.Column("khr_rounding_applied", sa.Boolean(), nullable=False),
        sa.Column("khr_rounding_enabled", sa.Boolean(), nullable=False),
        sa.Column("khr_rounding_mode", sa.String(length=16), nullable=False),
        sa.Column("khr_rounding_granularity", sa.Integer(), nullable=False),
        sa.Column("total_khr_rounded", sa.BigInteger(), nullable=True),
        sa.Column("rounding_delta_khr", sa.BigInteger(), nullable=True),
        sa.Column("payment_method", sa.String(length=16), nullable=False),
        sa.Column("cash_received_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("cash_received_khr", sa.BigInteger(), nullable=True),
        sa.Column("change_given_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("change_given_khr", sa.BigInteger(), nullable=True),
        sa.Column("fulfillment_status", sa.String(length=16), nullable=False),
        sa.Column("void_reason", sa.Text(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("finalized_at", nullable=True),
        _ts("in_prep_at", nullable=True),
        _ts("ready_at", nullable=True),
        _ts("delivered_at", nullable=True),
        _ts("cancelled_at", nullable=True),
        sa.UniqueConstraint("tenant_id", "client_uuid", name="uq_sales_tenant_client_uuid"),
    )
    op.create_index("ix_sales_tenant_id", "sales", ["tenant_id"])
    op.create_index("ix_sales_branch_state", "sales", ["branch_id", "state"])

    op.create_table(
        "sale_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("sale_id", sa.String(length=36), sa.ForeignKey("sales.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("menu_item_id", sa.String(length=36), nullable=False),
        sa.Column("menu_item_name", sa.String(length=255), nullable=False),
        sa.Column("unit_price_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("unit_price_khr", sa.BigInteger(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("modifiers", sa.JSON(), nullable=False),
        sa.Column("line_discount_type", sa.String(length=16), nullable=True),
        sa.Column("line_discount_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("line_discount_policy_id", sa.String(length=36), nullable=True),
        sa.Column("line_total_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("line_total_khr", sa.BigInteger(), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_sale_items_sale_id", "sale_items", ["sale_id"])

    op.create_table(
        "cash_registers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), sa.ForeignKey("branches.id"), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_cash_registers_tenant_id", "cash_registers", ["tenant_id"])
    op.create_index("ix_cash_registers_branch_id", "cash_registers", ["branch_id"])

    op.create_table(
        "cash_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), nullable=False),
        sa.Column("register_id", sa.String(length=36), sa.ForeignKey("cash_registers.id"), nullable=True),
        sa.Column("opened_by", sa.String(length=36), nullable=False),
        _ts("opened_at"),
        sa.Column("opening_float_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("opening_float_khr", sa.Numeric(16, 2), nullable=False),
        sa.Column("expected_cash_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("expected_cash_khr", sa.Numeric(16, 2), nullable=False),
        sa.Column("counted_cash_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("counted_cash_khr", sa.Numeric(16, 2), nullable=True),
        sa.Column("variance_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("variance_khr", sa.Numeric(16, 2), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("closed_by", sa.String(length=36), nullable=True),
        _ts("closed_at", nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
    )
    op.create_index("ix_cash_sessions_tenant_id", "cash_sessions", ["tenant_id"])
    op.create_index("ix_cash_sessions_branch_id", "cash_sessions", ["branch_id"])
    op.create_index("ix_cash_sessions_status", "cash_sessions", ["status"])
    op.create_index(
        "uq_cash_sessions_open_register",
        "cash_sessions",
        ["tenant_id", "branch_id", "register_id"],
        unique=True,
        sqlite_where=sa.text("status = 'OPEN' AND register_id IS NOT NULL"),
        postgresql_where=sa.text("status = 'OPEN' AND register_id IS NOT NULL"),
    )
    op.create_index(
        "uq_cash_sessions_open_branch",
        "cash_sessions",
        ["tenant_id", "branch_id"],
        unique=True,
        sqlite_where=sa.text("status = 'OPEN' AND register_id IS NULL"),
        postgresql_where=sa.text("status = 'OPEN' AND register_id IS NULL"),
    )

    op.create_table(
        "cash_movements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(length=36), sa.ForeignKey("cash_sessions.id"), nullable=False),
        sa.Column("sale_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("amount_usd", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_khr", sa.Numeric(16, 2), nullable=False),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        _ts("created_at"),
        sa.UniqueConstraint("sale_id", "type", name="uq_cash_movements_sale_type"),
    )
    op.create_index("ix_cash_movements_session_id", "cash_movements", ["session_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("branch_id", sa.String(length=36), nullable=True),
        sa.Column("employee_id", sa.String(length=36), nullable=True),
        sa.Column("actor_role", sa.String(length=32), nullable=True),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("resource_type", sa.String(length=64), nullable=True),
        sa.Column("resource_id", sa.String(length=64), nullable=True),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("denial_reason", sa.String(length=64), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        _ts("occurred_at"),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
    op.create_index("ix_audit_logs_branch_id", "audit_logs", ["branch_id"])
    op.create_index("ix_audit_logs_action_type", "audit_logs", ["action_type"])
    op.create_index("ix_audit_logs_occurred_at", "audit_logs", ["occurred_at"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        _ts("created_at"),
        _ts("sent_at", nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_outbox_events_tenant_id", "outbox_events", ["tenant_id"])
    op.create_index("ix_outbox_events_type", "outbox_events", ["type"])
    op.create_index("ix_outbox_events_sent_at", "outbox_events", ["sent_at"])


def downgrade():
    op.drop_table("outbox_events")
    op.drop_table("audit_logs")
    op.drop_table("cash_movements")
    op.drop_index("uq_cash_sessions_open_branch", table_name="cash_sessions")
    op.drop_index("uq_cash_sessions_open_register", table_name="cash_sessions")
    op.drop_table("cash_sessions")
    op.drop_table("cash_registers")
    op.drop_table("sale_items")
    op.drop_table("sales")
    op.drop_table("offline_sync_operations")
    op.drop_table("branch_menu_items")
    op.drop_table("menu_items")
    op.drop_table("discount_policies")
    op.drop_table("branch_sales_policies")
    op.drop_table("branches")
