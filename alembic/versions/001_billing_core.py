"""Create billing core tables.

Revision ID: 001_billing_core
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

revision: str = "001_billing_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ACTIVE_SET_SQL = "status IN ('trialing','active','past_due','cancel_pending')"


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("NOW()"),
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "customers",
        _id_column(),
        sa.Column("user_id", sa.Text(), nullable=False, unique=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("provider_customer_ref", sa.Text(), nullable=False, unique=True),
        _timestamp("created_at"),
    )

    op.create_table(
        "subscriptions",
        _id_column(),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Text(), nullable=False),
        sa.Column("provider_subscription_ref", sa.Text(), nullable=False, unique=True),
        sa.Column("provider_customer_ref", sa.Text(), nullable=True),
        sa.Column("provider_price_ref", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False),
        sa.Column(
            "billing_environment", sa.Text(), nullable=False, server_default=sa.text("'test'")
        ),
        sa.Column("last_event_id", sa.Text(), nullable=True),
        sa.Column("provider_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('incomplete','trialing','active','past_due','canceled','cancel_pending')",
            name="ck_subscription_status",
        ),
        sa.CheckConstraint(
            "plan_id IN ('1-month','3-month','6-month','12-month')",
            name="ck_subscription_plan",
        ),
        sa.CheckConstraint(
            "(status = 'canceled') = (canceled_at IS NOT NULL)",
            name="ck_subscription_canceled_at",
        ),
        sa.CheckConstraint(
            "NOT cancel_at_period_end OR status IN ('cancel_pending','canceled')",
            name="ck_subscription_cancel_flag",
        ),
        sa.CheckConstraint(
            "current_period_end > current_period_start",
            name="ck_subscription_period",
        ),
        sa.CheckConstraint(
            "billing_environment IN ('test','production')",
            name="ck_subscription_environment",
        ),
    )
    op.create_index(
        "idx_subscriptions_one_active_per_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_SET_SQL),
    )
    op.create_index("idx_subscriptions_user", "subscriptions", ["user_id", "created_at"])
    op.create_index("idx_subscriptions_canceled_at", "subscriptions", ["status", "canceled_at"])

    op.create_table(
        "invoices",
        _id_column(),
        sa.Column("provider_invoice_ref", sa.Text(), nullable=False, unique=True),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hosted_url", sa.Text(), nullable=True),
        sa.Column("pdf_url", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('open','paid','void','uncollectible')",
            name="ck_invoice_status",
        ),
    )
    op.create_index("idx_invoices_subscription", "invoices", ["subscription_id", "issued_at"])

    op.create_table(
        "processed_events",
        _id_column(),
        sa.Column("provider_event_id", sa.Text(), nullable=False, unique=True),
        sa.Column("kind", sa.Text(), nullable=False),
        _timestamp("received_at"),
    )
    op.create_index("idx_processed_events_received", "processed_events", ["received_at"])

    op.create_table(
        "subscription_compensations",
        _id_column(),
        sa.Column("provider_subscription_ref", sa.Text(), nullable=False, unique=True),
        sa.Column("provider_customer_ref", sa.Text(), nullable=True),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("plan_id", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        _timestamp("created_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "billing_events",
        _id_column(),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp("created_at"),
    )
    op.create_index("idx_billing_events_type", "billing_events", ["event_type", "created_at"])


def downgrade() -> None:
    op.drop_table("billing_events")
    op.drop_table("subscription_compensations")
    op.drop_table("processed_events")
    op.drop_table("invoices")
    op.drop_table("subscriptions")
    op.drop_table("customers")
