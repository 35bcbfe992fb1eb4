"""Enums and type aliases for ticketmeter."""

from enum import StrEnum


class BillingInterval(StrEnum):
    MONTH = "month"
    YEAR = "year"


class SubscriptionStatus(StrEnum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class UsageAction(StrEnum):
    CREATED = "created"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    DELETED = "deleted"


class GateAction(StrEnum):
    CREATE = "create"
    COMPLETE = "complete"


class LimitType(StrEnum):
    ACTIVE_TICKETS = "active_tickets"
    COMPLETED_TICKETS = "completed_tickets"
    TOTAL_TICKETS = "total_tickets"


class BillingStatus(StrEnum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class WarningLevel(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"
    AT_LIMIT = "at_limit"


class EnforcementMode(StrEnum):
    BEST_EFFORT = "best_effort"
    STRICT = "strict"


# Statuses that occupy a customer's single live-subscription slot
LIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}
)

# Statuses that cannot pass the entitlement gate
BLOCKED_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.SUSPENDED}
)
