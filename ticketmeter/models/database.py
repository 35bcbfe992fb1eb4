"""SQLModel database table models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Return current UTC time as naive datetime for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def _new_uuid() -> str:
    return str(uuid.uuid4())


_LIVE_SUBSCRIPTION_FILTER = text("status IN ('active', 'trial')")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class Plan(SQLModel, table=True):
    __tablename__ = "plans"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    slug: str = Field(unique=True, index=True)
    name: str
    description: str | None = None
    price_cents: int = Field(default=0)
    currency: str = Field(default="usd")
    billing_interval: str = Field(default="month")  # month | year
    # -1 means unlimited
    active_ticket_limit: int = Field(default=-1)
    completed_ticket_limit: int = Field(default=-1)
    total_ticket_limit: int = Field(default=-1)
    trial_days: int = Field(default=0)
    is_active: bool = Field(default=True)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # One live (active or trial) subscription per customer
        Index(
            "uq_subscriptions_live_customer",
            "customer_id",
            unique=True,
            postgresql_where=_LIVE_SUBSCRIPTION_FILTER,
            sqlite_where=_LIVE_SUBSCRIPTION_FILTER,
        ),
    )

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    customer_id: str = Field(index=True)
    plan_id: str | None = Field(default=None, foreign_key="plans.id", index=True)
    # trial | active | past_due | cancelled | suspended
    status: str = Field(default="active", index=True)
    current_period_start: datetime = Field(default_factory=_utc_now)
    current_period_end: datetime = Field(default_factory=_utc_now)
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    converted_at: datetime | None = None
    cancelled_at: datetime | None = None
    # Suspension window; analytics treat the subscription as not live inside it
    suspended_at: datetime | None = None
    resumed_at: datetime | None = None
    cancel_at_period_end: bool = Field(default=False)
    custom_limits_json: str | None = None
    custom_price_cents: int | None = None
    custom_billing_interval: str | None = None
    external_subscription_id: str | None = Field(default=None, unique=True)
    external_customer_id: str | None = None
    # Timestamp of the newest provider event applied; older events are discarded
    last_event_at: datetime | None = None
    metadata_json: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class UsageEvent(SQLModel, table=True):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_subscription_timestamp", "subscription_id", "action_timestamp"),
        Index(
            "ix_usage_events_subscription_action_timestamp",
            "subscription_id",
            "action",
            "action_timestamp",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    subscription_id: str = Field(foreign_key="subscriptions.id", ondelete="CASCADE")
    ticket_id: str = Field(index=True)
    action: str  # created | completed | archived | deleted
    previous_status: str | None = None
    new_status: str | None = None
    action_timestamp: datetime = Field(default_factory=_utc_now)
    dedupe_key: str = Field(unique=True)
    metadata_json: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)


class UsageSummary(SQLModel, table=True):
    __tablename__ = "usage_summaries"
    __table_args__ = (
        # Target of the ON CONFLICT upsert in the aggregator
        UniqueConstraint(
            "subscription_id", "period", name="uq_usage_summaries_subscription_period"
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    subscription_id: str = Field(foreign_key="subscriptions.id", ondelete="CASCADE", index=True)
    period: str  # YYYY-MM format
    active_count: int = Field(default=0)
    completed_count: int = Field(default=0)
    total_count: int = Field(default=0)
    archived_count: int = Field(default=0)
    last_updated: datetime = Field(default_factory=_utc_now)
    created_at: datetime = Field(default_factory=_utc_now)


class UsageBalance(SQLModel, table=True):
    """Latest state of every ticket a subscription has ever recorded, across all periods."""

    __tablename__ = "usage_balances"

    subscription_id: str = Field(
        foreign_key="subscriptions.id", ondelete="CASCADE", primary_key=True
    )
    active_count: int = Field(default=0)
    completed_count: int = Field(default=0)
    total_count: int = Field(default=0)
    archived_count: int = Field(default=0)
    last_updated: datetime = Field(default_factory=_utc_now)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class BillingRecord(SQLModel, table=True):
    __tablename__ = "billing_records"

    id: str = Field(default_factory=_new_uuid, primary_key=True)
    subscription_id: str = Field(foreign_key="subscriptions.id", ondelete="CASCADE", index=True)
    external_invoice_id: str | None = Field(default=None, unique=True)
    external_payment_intent_id: str | None = None
    invoice_number: str | None = None
    status: str = Field(default="draft", index=True)  # draft | open | paid | void | uncollectible
    # Amounts in minor units (cents)
    amount_due: int = Field(default=0)
    amount_paid: int = Field(default=0)
    amount_remaining: int = Field(default=0)
    currency: str = Field(default="usd")
    billing_date: datetime = Field(default_factory=_utc_now, index=True)
    due_date: datetime | None = None
    paid_at: datetime | None = None
    voided_at: datetime | None = None
    attempt_count: int = Field(default=0)
    failure_reason: str | None = None
    line_items_json: str | None = None
    metadata_json: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
