"""settlement engine initial schema

Revision ID: c4f1a2b3d5e6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "c4f1a2b3d5e6"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=160), nullable=True),
        sa.Column("role", sa.String(length=24), nullable=False, server_default="buyer"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("unit_price_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_products_vendor_id", "products", ["vendor_id"])

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("on_hand_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("min_stock_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_restocked_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"),
        sa.CheckConstraint("reserved_quantity <= on_hand_quantity", name="ck_inventory_reserved_le_on_hand"),
    )
    op.create_index("ix_inventory_items_product_id", "inventory_items", ["product_id"], unique=True)

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])

    op.create_table(
        "sub_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("parent_order_id", sa.String(length=36), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("installer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("payment_type", sa.String(length=16), nullable=False, server_default="full"),
        sa.Column("installment_months", sa.Integer(), nullable=True),
        sa.Column("installment_fee_bps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tax_bps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("subtotal_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("shipping_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tax_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("installment_fee_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_payment_minor", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
    )
    for col in ("parent_order_id", "buyer_id", "vendor_id", "installer_id", "status"):
        op.create_index(f"ix_sub_orders_{col}", "sub_orders", [col])

    op.create_table(
        "sub_order_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sub_order_id", sa.Integer(), sa.ForeignKey("sub_orders.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price_minor", sa.Integer(), nullable=False),
    )
    op.create_index("ix_sub_order_lines_sub_order_id", "sub_order_lines", ["sub_order_id"])

    op.create_table(
        "sub_order_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sub_order_id", sa.Integer(), nullable=False),
        sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=16), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_sub_order_transitions_sub_order_id", "sub_order_transitions", ["sub_order_id"])

    op.create_table(
        "inventory_reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("sub_order_id", sa.Integer(), sa.ForeignKey("sub_orders.id"), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("committed_at", sa.DateTime(), nullable=True),
        sa.Column("released_at", sa.DateTime(), nullable=True),
        sa.Column("release_reason", sa.String(length=64), nullable=True),
    )
    for col in ("product_id", "sub_order_id", "status", "expires_at"):
        op.create_index(f"ix_inventory_reservations_{col}", "inventory_reservations", [col])

    op.create_table(
        "inventory_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("previous_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sub_order_id", sa.Integer(), nullable=True),
        sa.Column("reservation_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.String(length=240), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    for col in ("product_id", "sub_order_id", "reservation_id"):
        op.create_index(f"ix_inventory_movements_{col}", "inventory_movements", [col])

    op.create_table(
        "inventory_alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("vendor_id", sa.Integer(), nullable=False),
        sa.Column("alert_type", sa.String(length=24), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_inventory_alerts_product_id", "inventory_alerts", ["product_id"])
    op.create_index("ix_inventory_alerts_vendor_id", "inventory_alerts", ["vendor_id"])

    op.create_table(
        "escrow_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sub_order_id", sa.Integer(), sa.ForeignKey("sub_orders.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), nullable=False),
        sa.Column("vendor_id", sa.Integer(), nullable=False),
        sa.Column("installer_id", sa.Integer(), nullable=True),
        sa.Column("total_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("held_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("released_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refunded_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="created"),
        sa.Column("status_before_dispute", sa.String(length=24), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("funded_at", sa.DateTime(), nullable=True),
        sa.Column("disputed_at", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("held_minor >= 0", name="ck_escrow_held_non_negative"),
        sa.CheckConstraint("released_minor >= 0", name="ck_escrow_released_non_negative"),
        sa.CheckConstraint("held_minor + released_minor <= total_minor", name="ck_escrow_within_total"),
    )
    op.create_index("ix_escrow_accounts_sub_order_id", "escrow_accounts", ["sub_order_id"], unique=True)
    for col in ("buyer_id", "vendor_id", "installer_id", "status"):
        op.create_index(f"ix_escrow_accounts_{col}", "escrow_accounts", [col])

    op.create_table(
        "escrow_ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("escrow_account_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(length=160), nullable=False),
        sa.Column("recipient_type", sa.String(length=16), nullable=True),
        sa.Column("recipient_id", sa.Integer(), nullable=True),
        sa.Column("held_after_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("escrow_account_id", "kind", "reference", name="uq_escrow_entry_account_kind_ref"),
    )
    op.create_index("ix_escrow_ledger_entries_escrow_account_id", "escrow_ledger_entries", ["escrow_account_id"])

    op.create_table(
        "escrow_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("escrow_account_id", sa.Integer(), nullable=False),
        sa.Column("sub_order_id", sa.Integer(), nullable=False),
        sa.Column("from_status", sa.String(length=24), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=24), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_escrow_transitions_escrow_account_id", "escrow_transitions", ["escrow_account_id"])
    op.create_index("ix_escrow_transitions_sub_order_id", "escrow_transitions", ["sub_order_id"])

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("escrow_account_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=False),
        sa.Column("sub_order_id", sa.Integer(), sa.ForeignKey("sub_orders.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=240), nullable=True),
        sa.Column("percentage_bps", sa.Integer(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("recipient_type", sa.String(length=16), nullable=False, server_default="vendor"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("due_date", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("disputed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("escrow_account_id", "sequence", name="uq_milestone_account_sequence"),
        sa.CheckConstraint("percentage_bps > 0 AND percentage_bps <= 10000", name="ck_milestone_percentage_range"),
    )
    for col in ("escrow_account_id", "sub_order_id", "status"):
        op.create_index(f"ix_milestones_{col}", "milestones", [col])

    op.create_table(
        "milestone_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("milestone_id", sa.Integer(), sa.ForeignKey("milestones.id"), nullable=False),
        sa.Column("escrow_account_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=False),
        sa.Column("recipient_type", sa.String(length=16), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("released_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_milestone_payments_milestone_id", "milestone_payments", ["milestone_id"], unique=True)
    op.create_index("ix_milestone_payments_escrow_account_id", "milestone_payments", ["escrow_account_id"])
    op.create_index("ix_milestone_payments_recipient_id", "milestone_payments", ["recipient_id"])

    op.create_table(
        "refund_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sub_order_id", sa.Integer(), sa.ForeignKey("sub_orders.id"), nullable=False),
        sa.Column("escrow_account_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=False),
        sa.Column("requester_id", sa.Integer(), nullable=True),
        sa.Column("vendor_id", sa.Integer(), nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("admin_response", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    for col in ("sub_order_id", "escrow_account_id", "vendor_id"):
        op.create_index(f"ix_refund_requests_{col}", "refund_requests", [col])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=48), nullable=False),
        sa.Column("title", sa.String(length=160), nullable=True),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("subject_type", sa.String(length=32), nullable=True),
        sa.Column("subject_id", sa.Integer(), nullable=True),
        sa.Column("dedupe_key", sa.String(length=160), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("meta", sa.Text(), nullable=True),
        sa.UniqueConstraint("dedupe_key", name="uq_notifications_dedupe_key"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_kind", "notifications", ["kind"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="gateway"),
        sa.Column("event_id", sa.String(length=128), nullable=False),
        sa.Column("parent_order_id", sa.String(length=36), nullable=True),
        sa.Column("amount_minor", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("payload_hash", sa.String(length=128), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )
    op.create_index("ix_webhook_events_parent_order_id", "webhook_events", ["parent_order_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("response_json", sa.Text(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
    )
    op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])

    op.create_table(
        "settlement_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("subject_type", sa.String(length=40), nullable=True),
        sa.Column("subject_id", sa.String(length=64), nullable=True),
        sa.Column("request_id", sa.String(length=80), nullable=True),
        sa.Column("idempotency_key", sa.String(length=180), nullable=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
        sa.Column("metadata_json", sa.Text(), nullable=True),
    )
    op.create_index("ix_settlement_events_idempotency_key", "settlement_events", ["idempotency_key"], unique=True)
    for col in ("created_at", "event_type", "actor_user_id", "subject_type", "subject_id"):
        op.create_index(f"ix_settlement_events_{col}", "settlement_events", [col])

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("ran_at", sa.DateTime(), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
    op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])


def downgrade():
    for table in (
        "job_runs",
        "settlement_events",
        "idempotency_keys",
        "webhook_events",
        "notifications",
        "refund_requests",
        "milestone_payments",
        "milestones",
        "escrow_transitions",
        "escrow_ledger_entries",
        "escrow_accounts",
        "inventory_alerts",
        "inventory_movements",
        "inventory_reservations",
        "sub_order_transitions",
        "sub_order_lines",
        "sub_orders",
        "orders",
        "inventory_items",
        "products",
        "users",
    ):
        op.drop_table(table)
