"""Revenue analytics over subscription and billing history.

Every report takes an explicit period or ``as_of`` instant and is a pure
function of the rows it reads, so re-running a report over the same
history gives the same answer. Membership is judged from timestamps
(``created_at``, ``cancelled_at``, the suspension window, trial dates),
not from the current status, so closed periods stay stable as subscriptions move on.
Money is reported as Decimal major units rounded to cents.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ticketmeter.billing.periods import months_between, period_bounds, shift_period
from ticketmeter.billing.plans import monthly_amount
from ticketmeter.models.database import Plan, Subscription
from ticketmeter.models.domain import (
    AnalyticsDashboard,
    ChurnReport,
    ClvEntry,
    ClvReport,
    ConversionReport,
    MrrReport,
    PlanDistributionEntry,
    RevenueMetrics,
)
from ticketmeter.types import BillingInterval, SubscriptionStatus

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.billing.records import BillingRecordManager
    from ticketmeter.config.settings import Settings

logger = structlog.get_logger(__name__)

_CENT = Decimal("0.01")
_ZERO = Decimal("0.00")


@dataclass(frozen=True, slots=True)
class SubscriptionSnapshot:
    """The columns analytics needs from a subscription and its plan."""

    id: str
    customer_id: str
    status: str
    plan_slug: str | None
    price_cents: int
    billing_interval: str
    created_at: datetime
    cancelled_at: datetime | None
    suspended_at: datetime | None
    resumed_at: datetime | None
    trial_start: datetime | None
    trial_end: datetime | None
    converted_at: datetime | None

    @property
    def monthly_value(self) -> Decimal:
        return monthly_amount(self.price_cents, self.billing_interval)


def snapshot(subscription: Subscription, plan: Plan | None) -> SubscriptionSnapshot:
    if subscription.custom_price_cents is not None:
        price = subscription.custom_price_cents
    else:
        price = plan.price_cents if plan is not None else 0
    interval = subscription.custom_billing_interval or (
        plan.billing_interval if plan is not None else BillingInterval.MONTH.value
    )
    return SubscriptionSnapshot(
        id=subscription.id,
        customer_id=subscription.customer_id,
        status=subscription.status,
        plan_slug=plan.slug if plan is not None else None,
        price_cents=price,
        billing_interval=interval,
        created_at=subscription.created_at,
        cancelled_at=subscription.cancelled_at,
        suspended_at=subscription.suspended_at,
        resumed_at=subscription.resumed_at,
        trial_start=subscription.trial_start,
        trial_end=subscription.trial_end,
        converted_at=subscription.converted_at,
    )


def is_suspended_at(sub: SubscriptionSnapshot, moment: datetime) -> bool:
    if sub.suspended_at is None or sub.suspended_at >= moment:
        return False
    return sub.resumed_at is None or sub.resumed_at >= moment


def is_live_at(sub: SubscriptionSnapshot, moment: datetime) -> bool:
    """Whether ``sub`` was billable (active, trial or past due) just before ``moment``."""
    if sub.created_at >= moment or is_suspended_at(sub, moment):
        return False
    if sub.cancelled_at is not None:
        return sub.cancelled_at >= moment
    return sub.status != SubscriptionStatus.CANCELLED


def is_trialing_at(sub: SubscriptionSnapshot, moment: datetime) -> bool:
    if sub.trial_start is None or sub.trial_start > moment:
        return False
    trial_over = sub.converted_at or sub.trial_end
    return trial_over is None or moment < trial_over


def _in_range(moment: datetime | None, start: datetime, end: datetime) -> bool:
    return moment is not None and start <= moment < end


def _sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, _ZERO).quantize(_CENT, rounding=ROUND_HALF_UP)


def _ratio(numerator: float, denominator: float, digits: int = 4) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator, digits)


def compute_mrr(subs: list[SubscriptionSnapshot], period: str) -> MrrReport:
    start, end = period_bounds(period)
    live_now = [s for s in subs if is_live_at(s, end)]
    live_before = [s for s in subs if is_live_at(s, start)]
    mrr = _sum(s.monthly_value for s in live_now)
    previous = _sum(s.monthly_value for s in live_before)
    new_mrr = _sum(s.monthly_value for s in live_now if _in_range(s.created_at, start, end))
    churned_mrr = _sum(
        s.monthly_value for s in live_before if _in_range(s.cancelled_at, start, end)
    )
    net_growth = mrr - previous
    return MrrReport(
        period=period,
        mrr=mrr,
        new_mrr=new_mrr,
        churned_mrr=churned_mrr,
        previous_mrr=previous,
        net_growth=net_growth,
        growth_rate=_ratio(float(net_growth) * 100, float(previous), digits=2),
        subscription_count=len(live_now),
    )


def compute_churn(subs: list[SubscriptionSnapshot], period: str) -> ChurnReport:
    """Cohort churn: paying subscriptions at period start that cancelled during it."""
    start, end = period_bounds(period)
    cohort = [s for s in subs if is_live_at(s, start) and not is_trialing_at(s, start)]
    churned = sum(1 for s in cohort if _in_range(s.cancelled_at, start, end))
    return ChurnReport(
        period=period,
        cohort_size=len(cohort),
        churned=churned,
        churn_rate=_ratio(churned, len(cohort)),
        cancellations_total=sum(1 for s in subs if _in_range(s.cancelled_at, start, end)),
    )


def compute_conversion(subs: list[SubscriptionSnapshot], period: str) -> ConversionReport:
    start, end = period_bounds(period)
    started = [s for s in subs if _in_range(s.trial_start, start, end)]
    converted = sum(1 for s in started if _in_range(s.converted_at, start, end))
    return ConversionReport(
        period=period,
        trials_started=len(started),
        trials_converted=converted,
        conversion_rate=_ratio(converted, len(started)),
    )


def average_lifetime_months(
    subs: list[SubscriptionSnapshot], as_of: datetime, default: float
) -> float:
    """Mean lifetime of subscriptions that ended before ``as_of``, or ``default``."""
    lifetimes = [
        months_between(s.created_at, s.cancelled_at)
        for s in subs
        if s.cancelled_at is not None and s.cancelled_at <= as_of
    ]
    if not lifetimes:
        return float(default)
    return round(sum(lifetimes) / len(lifetimes), 2)


def compute_clv(
    subs: list[SubscriptionSnapshot],
    revenue_by_subscription: dict[str, int],
    as_of: datetime,
    default_lifetime_months: float,
    limit: int = 50,
    offset: int = 0,
) -> ClvReport:
    """Per-customer lifetime value: paid revenue per month of tenure times expected lifetime."""
    lifetime = average_lifetime_months(subs, as_of, default_lifetime_months)
    by_customer: dict[str, list[SubscriptionSnapshot]] = defaultdict(list)
    for sub in subs:
        if sub.created_at < as_of:
            by_customer[sub.customer_id].append(sub)

    entries: list[ClvEntry] = []
    for customer_id, customer_subs in by_customer.items():
        revenue = sum(revenue_by_subscription.get(s.id, 0) for s in customer_subs)
        first = min(s.created_at for s in customer_subs)
        still_live = any(s.cancelled_at is None or s.cancelled_at > as_of for s in customer_subs)
        last = as_of if still_live else max(s.cancelled_at or as_of for s in customer_subs)
        tenure = months_between(first, last)
        average = (Decimal(revenue) / 100 / Decimal(str(max(1.0, tenure)))).quantize(
            _CENT, rounding=ROUND_HALF_UP
        )
        entries.append(
            ClvEntry(
                customer_id=customer_id,
                total_revenue=revenue,
                tenure_months=round(tenure, 2),
                average_monthly_revenue=average,
                predicted_clv=(average * Decimal(str(lifetime))).quantize(
                    _CENT, rounding=ROUND_HALF_UP
                ),
            )
        )

    entries.sort(key=lambda e: (-e.total_revenue, e.customer_id))
    return ClvReport(
        as_of=as_of,
        lifetime_months=lifetime,
        entries=entries[offset : offset + limit],
        total_customers=len(entries),
        limit=limit,
        offset=offset,
    )


def compute_plan_distribution(
    subs: list[SubscriptionSnapshot], as_of: datetime
) -> list[PlanDistributionEntry]:
    buckets: dict[str | None, list[SubscriptionSnapshot]] = defaultdict(list)
    for sub in subs:
        if is_live_at(sub, as_of):
            buckets[sub.plan_slug].append(sub)
    return sorted(
        (
            PlanDistributionEntry(
                plan_slug=slug,
                subscriptions=len(members),
                mrr=_sum(s.monthly_value for s in members),
            )
            for slug, members in buckets.items()
        ),
        key=lambda e: (-e.subscriptions, e.plan_slug or ""),
    )


def compute_revenue_metrics(
    subs: list[SubscriptionSnapshot], total_revenue: int, start: datetime, end: datetime
) -> RevenueMetrics:
    """Customer and retention figures for ``[start, end)``.

    ``total_revenue`` is the paid revenue in the range, in cents. Net
    revenue retention compares the MRR of subscriptions paying at ``start``
    with what the same subscriptions still bill at ``end``.
    """
    paying = [s for s in subs if is_live_at(s, end) and not is_trialing_at(s, end)]
    customers = {s.customer_id for s in paying}
    new_customers = {s.customer_id for s in subs if _in_range(s.created_at, start, end)}
    churned = {s.customer_id for s in subs if _in_range(s.cancelled_at, start, end)}

    cohort = [s for s in subs if is_live_at(s, start) and not is_trialing_at(s, start)]
    starting_mrr = _sum(s.monthly_value for s in cohort)
    retained_mrr = _sum(s.monthly_value for s in cohort if is_live_at(s, end))

    arpu = _ZERO
    if customers:
        arpu = (Decimal(total_revenue) / 100 / len(customers)).quantize(
            _CENT, rounding=ROUND_HALF_UP
        )
    return RevenueMetrics(
        start=start,
        end=end,
        total_revenue=total_revenue,
        recurring_revenue=_sum(s.monthly_value for s in paying),
        average_revenue_per_user=arpu,
        total_customers=len(customers),
        new_customers=len(new_customers),
        churned_customers=len(churned),
        net_revenue_retention=_ratio(
            float(retained_mrr) * 100, float(starting_mrr), digits=2
        ),
    )


class RevenueAnalytics:
    """Loads subscription and billing history and runs the report functions over it."""

    def __init__(
        self,
        engine: AsyncEngine,
        records: BillingRecordManager,
        settings: Settings,
    ) -> None:
        self._engine = engine
        self._records = records
        self._settings = settings

    async def _snapshots(self) -> list[SubscriptionSnapshot]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(Subscription, Plan)
                .outerjoin(Plan, col(Subscription.plan_id) == col(Plan.id))
                .order_by(col(Subscription.created_at), col(Subscription.id))
            )
            results = await session.execute(statement)
            return [snapshot(sub, plan) for sub, plan in results.all()]

    async def mrr(self, period: str) -> MrrReport:
        report = compute_mrr(await self._snapshots(), period)
        logger.debug("mrr_computed", period=period, mrr=str(report.mrr))
        return report

    async def historical_mrr(self, period: str, months: int = 12) -> list[MrrReport]:
        """MRR for ``months`` periods ending with ``period``, oldest first."""
        subs = await self._snapshots()
        return [compute_mrr(subs, shift_period(period, -i)) for i in range(months - 1, -1, -1)]

    async def churn(self, period: str) -> ChurnReport:
        return compute_churn(await self._snapshots(), period)

    async def conversion(self, period: str) -> ConversionReport:
        return compute_conversion(await self._snapshots(), period)

    async def customer_lifetime_value(
        self, as_of: datetime, limit: int = 50, offset: int = 0
    ) -> ClvReport:
        if limit < 1 or offset < 0:
            msg = "limit must be positive and offset non-negative"
            raise ValueError(msg)
        subs = await self._snapshots()
        revenue = await self._records.paid_revenue_by_subscription(as_of)
        return compute_clv(
            subs,
            revenue,
            as_of,
            self._settings.clv_default_lifetime_months,
            limit=limit,
            offset=offset,
        )

    async def plan_distribution(self, as_of: datetime) -> list[PlanDistributionEntry]:
        return compute_plan_distribution(await self._snapshots(), as_of)

    async def historical_conversion(
        self, period: str, months: int = 12
    ) -> list[ConversionReport]:
        """Trial conversion for ``months`` periods ending with ``period``, oldest first."""
        subs = await self._snapshots()
        return [
            compute_conversion(subs, shift_period(period, -i)) for i in range(months - 1, -1, -1)
        ]

    async def revenue_metrics(self, start: datetime, end: datetime) -> RevenueMetrics:
        if start >= end:
            msg = "start must be before end"
            raise ValueError(msg)
        stats = await self._records.get_revenue_stats(start, end)
        return compute_revenue_metrics(await self._snapshots(), stats.total_revenue, start, end)

    async def dashboard(self, period: str) -> AnalyticsDashboard:
        """Headline reports for one period plus the six-month MRR trend."""
        start, end = period_bounds(period)
        subs = await self._snapshots()
        stats = await self._records.get_revenue_stats(start, end)
        dashboard = AnalyticsDashboard(
            period=period,
            mrr=compute_mrr(subs, period),
            churn=compute_churn(subs, period),
            conversion=compute_conversion(subs, period),
            revenue=compute_revenue_metrics(subs, stats.total_revenue, start, end),
            historical_mrr=[compute_mrr(subs, shift_period(period, -i)) for i in range(5, -1, -1)],
            plan_distribution=compute_plan_distribution(subs, end),
        )
        logger.info("analytics_dashboard_built", period=period, mrr=str(dashboard.mrr.mrr))
        return dashboard
