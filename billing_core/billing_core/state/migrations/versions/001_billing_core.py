"""Create subscriptions, payments and plan_changes.

Row-level security restricts every table to the tenant bound through
``app.tenant_id`` (PostgreSQL only).

Revision ID: 001_billing_core
Revises:
Create Date: 2026-03-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_billing_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JsonType = JSONB().with_variant(sa.JSON(), "sqlite")

_RLS_TABLES = ("subscriptions", "payments", "plan_changes")


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False, unique=True),
        sa.Column("plan", sa.String(32), nullable=False),
        sa.Column("active_addons", _JsonType, nullable=False),
        sa.Column("user_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("is_trial", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_period_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_plan", sa.String(32), nullable=True),
        sa.Column("pending_user_limit", sa.Integer(), nullable=True),
        sa.Column("pending_plan_effective_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_renewal_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_renewal_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("grace_period_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gateway_customer_reference", sa.String(256), nullable=True),
        sa.Column("gateway_default_payment_method_reference", sa.String(256), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "(pending_plan IS NULL AND pending_user_limit IS NULL AND pending_plan_effective_at IS NULL)"
            " OR (pending_plan IS NOT NULL AND pending_user_limit IS NOT NULL"
            " AND pending_plan_effective_at IS NOT NULL)",
            name="ck_subscriptions_pending_all_or_none",
        ),
        sa.CheckConstraint("user_count >= 1", name="ck_subscriptions_user_count_positive"),
        sa.CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'canceled')",
            name="ck_subscriptions_status",
        ),
        sa.CheckConstraint(
            "billing_period_ends_at IS NULL OR billing_period_started_at IS NULL"
            " OR billing_period_ends_at >= billing_period_started_at",
            name="ck_subscriptions_period_order",
        ),
    )
    op.create_index(
        "ix_subscriptions_status_period_end",
        "subscriptions",
        ["status", "billing_period_ends_at"],
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="EUR"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("gateway_transaction_reference", sa.String(256), nullable=False, unique=True),
        sa.Column("operation", sa.String(32), nullable=False),
        sa.Column("period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", _JsonType, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_payments_status",
        ),
    )
    op.create_index("ix_payments_tenant_created", "payments", ["tenant_id", "created_at"])
    op.create_index("ix_payments_subscription_status", "payments", ["subscription_id", "status"])

    op.create_table(
        "plan_changes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("subscriptions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("from_plan", sa.String(32), nullable=True),
        sa.Column("to_plan", sa.String(32), nullable=False),
        sa.Column("from_user_count", sa.Integer(), nullable=True),
        sa.Column("to_user_count", sa.Integer(), nullable=False),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(64), nullable=False),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_plan_changes_tenant_created", "plan_changes", ["tenant_id", "created_at"])

    if op.get_context().dialect.name == "postgresql":
        for table in _RLS_TABLES:
            op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
            op.execute(
                f"CREATE POLICY tenant_isolation_{table} ON {table} "
                "USING (tenant_id = current_setting('app.tenant_id', true))"
            )


def downgrade() -> None:
    if op.get_context().dialect.name == "postgresql":
        for table in _RLS_TABLES:
            op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
    op.drop_index("ix_plan_changes_tenant_created", table_name="plan_changes")
    op.drop_table("plan_changes")
    op.drop_index("ix_payments_subscription_status", table_name="payments")
    op.drop_index("ix_payments_tenant_created", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_subscriptions_status_period_end", table_name="subscriptions")
    op.drop_table("subscriptions")
