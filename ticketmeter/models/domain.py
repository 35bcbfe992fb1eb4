"""Inter-module data contracts (not persisted directly)."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from ticketmeter.types import GateAction, LimitType, WarningLevel

UNLIMITED = -1


# ---------------------------------------------------------------------------
# Structured JSON payloads
# ---------------------------------------------------------------------------


class EventMetadata(BaseModel):
    """Known metadata fields for a usage event plus an open extension map."""

    source: str | None = None  # api | webhook | backfill | worker
    actor_id: str | None = None
    request_id: str | None = None
    is_restoration: bool = False
    extensions: dict[str, Any] = {}


class LineItem(BaseModel):
    id: str | None = None
    description: str | None = None
    amount: int = 0  # cents
    currency: str = "usd"
    quantity: int = 1
    price_id: str | None = None
    product_id: str | None = None
    extensions: dict[str, Any] = {}


class CustomLimits(BaseModel):
    """Per-subscription override; unset fields fall back to the plan."""

    active_tickets: int | None = None
    completed_tickets: int | None = None
    total_tickets: int | None = None


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class TicketLimits(BaseModel):
    active_tickets: int = UNLIMITED
    completed_tickets: int = UNLIMITED
    total_tickets: int = UNLIMITED

    def merged(self, override: CustomLimits | None) -> TicketLimits:
        """Return these limits with any set override fields applied."""
        if override is None:
            return self
        return TicketLimits(
            active_tickets=(
                override.active_tickets
                if override.active_tickets is not None
                else self.active_tickets
            ),
            completed_tickets=(
                override.completed_tickets
                if override.completed_tickets is not None
                else self.completed_tickets
            ),
            total_tickets=(
                override.total_tickets
                if override.total_tickets is not None
                else self.total_tickets
            ),
        )

    def for_type(self, limit_type: LimitType) -> int:
        return {
            LimitType.ACTIVE_TICKETS: self.active_tickets,
            LimitType.COMPLETED_TICKETS: self.completed_tickets,
            LimitType.TOTAL_TICKETS: self.total_tickets,
        }[limit_type]


class UsageCounts(BaseModel):
    active_tickets: int = 0
    completed_tickets: int = 0
    total_tickets: int = 0
    archived_tickets: int = 0

    def for_type(self, limit_type: LimitType) -> int:
        return {
            LimitType.ACTIVE_TICKETS: self.active_tickets,
            LimitType.COMPLETED_TICKETS: self.completed_tickets,
            LimitType.TOTAL_TICKETS: self.total_tickets,
        }[limit_type]


class UsagePercentages(BaseModel):
    active_tickets: float = 0.0
    completed_tickets: float = 0.0
    total_tickets: float = 0.0


class ReconcileResult(BaseModel):
    subscription_id: str
    # None for the all-period balance
    period: str | None
    cached: UsageCounts
    recomputed: UsageCounts
    drift: int
    corrected: bool


class AdmissionDecision(BaseModel):
    allowed: bool
    action: GateAction
    reason: str | None = None
    limit_type: LimitType | None = None
    usage: UsageCounts = Field(default_factory=UsageCounts)
    limits: TicketLimits = Field(default_factory=TicketLimits)
    upgrade_message: str | None = None
    suggested_plans: list[str] = []  # plan slugs, cheapest first


class UsageWarning(BaseModel):
    limit_type: LimitType
    level: WarningLevel
    percentage: float
    current: int
    limit: int
    message: str


# ---------------------------------------------------------------------------
# Revenue
# ---------------------------------------------------------------------------


class RevenueStats(BaseModel):
    start: datetime
    end: datetime
    total_revenue: int = 0  # cents, paid records only
    paid_invoices: int = 0
    pending_revenue: int = 0  # amount_remaining of draft/open records
    failed_payments: int = 0  # open records with at least one failed attempt


class MonthlyRevenue(BaseModel):
    month: int
    revenue: int = 0  # cents
    invoice_count: int = 0


class BillingSummary(BaseModel):
    as_of: datetime
    current_month: RevenueStats
    previous_month: RevenueStats
    pending_payments: int = 0
    failed_payments: int = 0
    monthly_trend: list[MonthlyRevenue] = []


class MrrReport(BaseModel):
    period: str
    mrr: Decimal
    new_mrr: Decimal
    churned_mrr: Decimal
    previous_mrr: Decimal
    net_growth: Decimal
    growth_rate: float
    subscription_count: int


class ChurnReport(BaseModel):
    period: str
    cohort_size: int
    churned: int
    churn_rate: float
    cancellations_total: int


class ConversionReport(BaseModel):
    period: str
    trials_started: int
    trials_converted: int
    conversion_rate: float


class ClvEntry(BaseModel):
    customer_id: str
    total_revenue: int  # cents
    tenure_months: float
    average_monthly_revenue: Decimal
    predicted_clv: Decimal


class ClvReport(BaseModel):
    as_of: datetime
    lifetime_months: float
    entries: list[ClvEntry] = []
    total_customers: int = 0
    limit: int
    offset: int


class PlanDistributionEntry(BaseModel):
    plan_slug: str | None
    subscriptions: int
    mrr: Decimal


class RevenueMetrics(BaseModel):
    start: datetime
    end: datetime
    total_revenue: int  # cents paid in the range
    recurring_revenue: Decimal  # MRR of paying subscriptions at the end of the range
    average_revenue_per_user: Decimal
    total_customers: int
    new_customers: int
    churned_customers: int
    net_revenue_retention: float  # percent of starting MRR still billed at the end


class AnalyticsDashboard(BaseModel):
    period: str
    mrr: MrrReport
    churn: ChurnReport
    conversion: ConversionReport
    revenue: RevenueMetrics
    historical_mrr: list[MrrReport] = []
    plan_distribution: list[PlanDistributionEntry] = []


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TrialStatus(BaseModel):
    is_trial: bool
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    days_remaining: int = 0
    expired: bool = False


class TrialSweepResult(BaseModel):
    downgraded: list[str] = []
    cancelled: list[str] = []
