"""order orchestration core

Revision ID: b1c2d3e4f5a6
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "b1c2d3e4f5a6"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _create_users(bind):
    if _table_exists(bind, "users"):
        return
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)


def _create_orders(bind):
    if _table_exists(bind, "orders"):
        return
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("book_id", sa.Integer(), nullable=False),
        sa.Column("book_title", sa.String(length=240), nullable=True),
        sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("delivery_fee", sa.Float(), nullable=False, server_default="0"),
        sa.Column("custom_payment_id", sa.String(length=80), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("payment_provider", sa.String(length=16), nullable=False, server_default="unknown"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="created"),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("delivery_status", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("refund_status", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("commit_deadline", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("committed_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("courier_provider", sa.String(length=32), nullable=True),
        sa.Column("shipment_id", sa.String(length=80), nullable=True),
        sa.Column("tracking_number", sa.String(length=80), nullable=True),
        sa.Column("last_tracking_location", sa.String(length=240), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=240), nullable=True),
        sa.Column("decline_reason", sa.String(length=240), nullable=True),
        sa.Column("refunded_amount", sa.Float(), nullable=True),
        sa.Column("settlement_method", sa.String(length=32), nullable=True),
        sa.Column("settled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])
    op.create_index("ix_orders_seller_id", "orders", ["seller_id"])
    op.create_index("ix_orders_book_id", "orders", ["book_id"])
    op.create_index("ix_orders_custom_payment_id", "orders", ["custom_payment_id"], unique=True)
    op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_refund_status", "orders", ["refund_status"])
    op.create_index("ix_orders_commit_deadline", "orders", ["commit_deadline"])
    op.create_index("ix_orders_shipment_id", "orders", ["shipment_id"])
    op.create_index("ix_orders_tracking_number", "orders", ["tracking_number"])


def _create_order_transitions(bind):
    if _table_exists(bind, "order_transitions"):
        return
    op.create_table(
        "order_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("event", sa.String(length=40), nullable=False, server_default=""),
        sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=False),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
    )
    op.create_index("ix_order_transitions_order_id", "order_transitions", ["order_id"])


def _create_payment_tables(bind):
    if not _table_exists(bind, "payment_transactions"):
        op.create_table(
            "payment_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("reference", sa.String(length=80), nullable=False),
            sa.Column("provider_reference", sa.String(length=128), nullable=True),
            sa.Column("payment_method", sa.String(length=16), nullable=False, server_default="unknown"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("provider_response_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_payment_transactions_order_id", "payment_transactions", ["order_id"])
        op.create_index("ix_payment_transactions_reference", "payment_transactions", ["reference"])
        op.create_index("ix_payment_transactions_provider_reference", "payment_transactions", ["provider_reference"])
        op.create_index("ix_payment_transactions_status", "payment_transactions", ["status"])
        op.create_index(
            "uq_payment_transactions_order_success",
            "payment_transactions",
            ["order_id"],
            unique=True,
            sqlite_where=sa.text("status = 'success'"),
            postgresql_where=sa.text("status = 'success'"),
        )

    if not _table_exists(bind, "refund_transactions"):
        op.create_table(
            "refund_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("provider", sa.String(length=16), nullable=False, server_default="unknown"),
            sa.Column("route", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("provider_reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("provider_response_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("initiated_by_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("initiated_by_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_refund_transactions_order_id", "refund_transactions", ["order_id"])
        op.create_index("ix_refund_transactions_status", "refund_transactions", ["status"])
        op.create_index(
            "uq_refund_transactions_order_success",
            "refund_transactions",
            ["order_id"],
            unique=True,
            sqlite_where=sa.text("status = 'success'"),
            postgresql_where=sa.text("status = 'success'"),
        )


def _create_payout_tables(bind):
    if not _table_exists(bind, "seller_wallets"):
        op.create_table(
            "seller_wallets",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("available_balance", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_earned", sa.Float(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_seller_wallets_user_id", "seller_wallets", ["user_id"], unique=True)

    if not _table_exists(bind, "wallet_transactions"):
        op.create_table(
            "wallet_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("type", sa.String(length=16), nullable=False, server_default="credit"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("gross_amount", sa.Float(), nullable=True),
            sa.Column("commission_amount", sa.Float(), nullable=True),
            sa.Column("reference", sa.String(length=80), nullable=True),
            sa.Column("description", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("order_id", "type", name="uq_wallet_transactions_order_type"),
        )
        op.create_index("ix_wallet_transactions_user_id", "wallet_transactions", ["user_id"])
        op.create_index("ix_wallet_transactions_order_id", "wallet_transactions", ["order_id"])
        op.create_index("ix_wallet_transactions_created_at", "wallet_transactions", ["created_at"])

    if not _table_exists(bind, "banking_subaccounts"):
        op.create_table(
            "banking_subaccounts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("subaccount_code", sa.String(length=80), nullable=True),
            sa.Column("encrypted_details", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_banking_subaccounts_user_id", "banking_subaccounts", ["user_id"], unique=True)

    if not _table_exists(bind, "affiliate_referrals"):
        op.create_table(
            "affiliate_referrals",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("affiliate_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("referred_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("referred_user_id", name="uq_affiliate_referrals_referred_user"),
        )
        op.create_index("ix_affiliate_referrals_affiliate_user_id", "affiliate_referrals", ["affiliate_user_id"])
        op.create_index("ix_affiliate_referrals_referred_user_id", "affiliate_referrals", ["referred_user_id"])

    if not _table_exists(bind, "affiliate_orders"):
        op.create_table(
            "affiliate_orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("referral_id", sa.Integer(), sa.ForeignKey("affiliate_referrals.id"), nullable=False),
            sa.Column("affiliate_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_affiliate_orders_order_id", "affiliate_orders", ["order_id"], unique=True)
        op.create_index("ix_affiliate_orders_affiliate_user_id", "affiliate_orders", ["affiliate_user_id"])
        op.create_index("ix_affiliate_orders_status", "affiliate_orders", ["status"])


def _create_ops_tables(bind):
    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="internal"),
            sa.Column("idempotency_key", sa.String(length=180), nullable=False),
            sa.Column("effect", sa.String(length=40), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="processing"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("idempotency_key", "effect", name="uq_webhook_events_key_effect"),
        )
        op.create_index("ix_webhook_events_idempotency_key", "webhook_events", ["idempotency_key"])
        op.create_index("ix_webhook_events_order_id", "webhook_events", ["order_id"])
        op.create_index("ix_webhook_events_status", "webhook_events", ["status"])

    if not _table_exists(bind, "order_notifications"):
        op.create_table(
            "order_notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
            sa.Column("kind", sa.String(length=40), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("message", sa.Text(), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("read_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_order_notifications_user_id", "order_notifications", ["user_id"])
        op.create_index("ix_order_notifications_order_id", "order_notifications", ["order_id"])
        op.create_index("ix_order_notifications_created_at", "order_notifications", ["created_at"])

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("subject_type", sa.String(length=80), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"])
        op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"])
        op.create_index("ix_platform_events_actor_user_id", "platform_events", ["actor_user_id"])
        op.create_index("ix_platform_events_subject_type", "platform_events", ["subject_type"])
        op.create_index("ix_platform_events_subject_id", "platform_events", ["subject_id"])
        op.create_index("ix_platform_events_order_id", "platform_events", ["order_id"])
        op.create_index("ix_platform_events_request_id", "platform_events", ["request_id"])
        op.create_index("ix_platform_events_idempotency_key", "platform_events", ["idempotency_key"], unique=True)
        op.create_index("ix_platform_events_severity", "platform_events", ["severity"])

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])
        op.create_index("ix_job_runs_ok", "job_runs", ["ok"])

    if not _table_exists(bind, "app_settings"):
        op.create_table(
            "app_settings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=80), nullable=False),
            sa.Column("value_json", sa.Text(), nullable=False, server_default="null"),
            sa.Column("updated_by", sa.Integer(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_app_settings_key", "app_settings", ["key"], unique=True)


def upgrade():
    bind = op.get_bind()
    _create_users(bind)
    _create_orders(bind)
    _create_order_transitions(bind)
    _create_payment_tables(bind)
    _create_payout_tables(bind)
    _create_ops_tables(bind)


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "app_settings",
        "job_runs",
        "platform_events",
        "order_notifications",
        "webhook_events",
        "affiliate_orders",
        "affiliate_referrals",
        "banking_subaccounts",
        "wallet_transactions",
        "seller_wallets",
        "refund_transactions",
        "payment_transactions",
        "order_transitions",
        "orders",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
