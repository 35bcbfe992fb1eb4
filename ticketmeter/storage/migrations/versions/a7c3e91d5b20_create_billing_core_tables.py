"""create billing core tables

Revision ID: a7c3e91d5b20
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel.sql.sqltypes
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a7c3e91d5b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_LIVE = sa.text("status IN ('active', 'trial')")


def upgrade() -> None:
    """Add plan, subscription, usage and billing tables."""
    op.create_table(
        "plans",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("slug", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("name", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("description", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "currency", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="usd"
        ),
        sa.Column(
            "billing_interval",
            sqlmodel.sql.sqltypes.AutoString(),
            nullable=False,
            server_default="month",
        ),
        sa.Column("active_ticket_limit", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("completed_ticket_limit", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("total_ticket_limit", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("billing_interval IN ('month', 'year')", name="ck_plans_interval"),
    )
    op.create_index(op.f("ix_plans_slug"), "plans", ["slug"], unique=True)

    op.create_table(
        "subscriptions",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("customer_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("plan_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column(
            "status", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="active"
        ),
        sa.Column("current_period_start", sa.DateTime(), nullable=False),
        sa.Column("current_period_end", sa.DateTime(), nullable=False),
        sa.Column("trial_start", sa.DateTime(), nullable=True),
        sa.Column("trial_end", sa.DateTime(), nullable=True),
        sa.Column("converted_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("custom_limits_json", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("custom_price_cents", sa.Integer(), nullable=True),
        sa.Column("custom_billing_interval", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column(
            "external_subscription_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True
        ),
        sa.Column("external_customer_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("last_event_at", sa.DateTime(), nullable=True),
        sa.Column("metadata_json", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_subscription_id"),
        sa.CheckConstraint(
            "status IN ('trial', 'active', 'past_due', 'cancelled', 'suspended')",
            name="ck_subscriptions_status",
        ),
    )
    op.create_index(op.f("ix_subscriptions_customer_id"), "subscriptions", ["customer_id"])
    op.create_index(op.f("ix_subscriptions_plan_id"), "subscriptions", ["plan_id"])
    op.create_index(op.f("ix_subscriptions_status"), "subscriptions", ["status"])
    # One live (active or trial) subscription per customer
    op.create_index(
        "uq_subscriptions_live_customer",
        "subscriptions",
        ["customer_id"],
        unique=True,
        postgresql_where=_LIVE,
        sqlite_where=_LIVE,
    )

    op.create_table(
        "usage_events",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("subscription_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("ticket_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("action", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("previous_status", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("new_status", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("action_timestamp", sa.DateTime(), nullable=False),
        sa.Column("dedupe_key", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("metadata_json", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedupe_key"),
        sa.CheckConstraint(
            "action IN ('created', 'completed', 'archived', 'deleted')",
            name="ck_usage_events_action",
        ),
    )
    op.create_index(op.f("ix_usage_events_ticket_id"), "usage_events", ["ticket_id"])
    op.create_index(
        "ix_usage_events_subscription_timestamp",
        "usage_events",
        ["subscription_id", "action_timestamp"],
    )
    op.create_index(
        "ix_usage_events_subscription_action_timestamp",
        "usage_events",
        ["subscription_id", "action", "action_timestamp"],
    )

    op.create_table(
        "usage_summaries",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("subscription_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("period", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("active_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_usage_summaries_subscription_id"), "usage_summaries", ["subscription_id"]
    )
    # Target of the ON CONFLICT upsert in the aggregator
    op.create_unique_constraint(
        "uq_usage_summaries_subscription_period",
        "usage_summaries",
        ["subscription_id", "period"],
    )

    op.create_table(
        "billing_records",
        sa.Column("id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("subscription_id", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("external_invoice_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column(
            "external_payment_intent_id", sqlmodel.sql.sqltypes.AutoString(), nullable=True
        ),
        sa.Column("invoice_number", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column(
            "status", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="draft"
        ),
        sa.Column("amount_due", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_remaining", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "currency", sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default="usd"
        ),
        sa.Column("billing_date", sa.DateTime(), nullable=False),
        sa.Column("due_date", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("voided_at", sa.DateTime(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_reason", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("line_items_json", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("metadata_json", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_invoice_id"),
        sa.CheckConstraint(
            "status IN ('draft', 'open', 'paid', 'void', 'uncollectible')",
            name="ck_billing_records_status",
        ),
    )
    op.create_index(
        op.f("ix_billing_records_subscription_id"), "billing_records", ["subscription_id"]
    )
    op.create_index(op.f("ix_billing_records_status"), "billing_records", ["status"])
    op.create_index(op.f("ix_billing_records_billing_date"), "billing_records", ["billing_date"])


def downgrade() -> None:
    """Remove plan, subscription, usage and billing tables."""
    op.drop_index(op.f("ix_billing_records_billing_date"), table_name="billing_records")
    op.drop_index(op.f("ix_billing_records_status"), table_name="billing_records")
    op.drop_index(op.f("ix_billing_records_subscription_id"), table_name="billing_records")
    op.drop_table("billing_records")

    op.drop_constraint(
        "uq_usage_summaries_subscription_period", "usage_summaries", type_="unique"
    )
    op.drop_index(op.f("ix_usage_summaries_subscription_id"), table_name="usage_summaries")
    op.drop_table("usage_summaries")

    op.drop_index("ix_usage_events_subscription_action_timestamp", table_name="usage_events")
    op.drop_index("ix_usage_events_subscription_timestamp", table_name="usage_events")
    op.drop_index(op.f("ix_usage_events_ticket_id"), table_name="usage_events")
    op.drop_table("usage_events")

    op.drop_index("uq_subscriptions_live_customer", table_name="subscriptions")
    op.drop_index(op.f("ix_subscriptions_status"), table_name="subscriptions")
    op.drop_index(op.f("ix_subscriptions_plan_id"), table_name="subscriptions")
    op.drop_index(op.f("ix_subscriptions_customer_id"), table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index(op.f("ix_plans_slug"), table_name="plans")
    op.drop_table("plans")
