"""Revenue analytics API routes."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ticketmeter.billing.periods import current_period, period_bounds
from ticketmeter.billing.services import BillingServices
from ticketmeter.models.database import _utc_now
from ticketmeter.models.domain import (
    AnalyticsDashboard,
    BillingSummary,
    ChurnReport,
    ClvReport,
    ConversionReport,
    MonthlyRevenue,
    MrrReport,
    PlanDistributionEntry,
    RevenueMetrics,
    RevenueStats,
)
from ticketmeter.web.dependencies import get_period, get_services, naive_utc

router = APIRouter(prefix="/api/analytics", tags=["analytics"])


@router.get("/mrr", response_model=MrrReport)
async def get_mrr(
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> MrrReport:
    return await services.analytics.mrr(period)


@router.get("/mrr/history", response_model=list[MrrReport])
async def get_mrr_history(
    period: str = Depends(get_period),
    months: int = Query(default=12, ge=1, le=60),
    services: BillingServices = Depends(get_services),
) -> list[MrrReport]:
    return await services.analytics.historical_mrr(period, months=months)


@router.get("/churn", response_model=ChurnReport)
async def get_churn(
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> ChurnReport:
    return await services.analytics.churn(period)


@router.get("/conversion", response_model=ConversionReport)
async def get_conversion(
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> ConversionReport:
    return await services.analytics.conversion(period)


@router.get("/conversion/history", response_model=list[ConversionReport])
async def get_conversion_history(
    period: str = Depends(get_period),
    months: int = Query(default=12, ge=1, le=60),
    services: BillingServices = Depends(get_services),
) -> list[ConversionReport]:
    return await services.analytics.historical_conversion(period, months=months)


@router.get("/clv", response_model=ClvReport)
async def get_clv(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    as_of: datetime | None = None,
    services: BillingServices = Depends(get_services),
) -> ClvReport:
    return await services.analytics.customer_lifetime_value(
        naive_utc(as_of) or _utc_now(), limit=limit, offset=offset
    )


@router.get("/plans", response_model=list[PlanDistributionEntry])
async def get_plan_distribution(
    as_of: datetime | None = None,
    services: BillingServices = Depends(get_services),
) -> list[PlanDistributionEntry]:
    return await services.analytics.plan_distribution(naive_utc(as_of) or _utc_now())


def _range_or_current_month(
    start: datetime | None, end: datetime | None
) -> tuple[datetime, datetime]:
    start, end = naive_utc(start), naive_utc(end)
    if start is None or end is None:
        month_start, month_end = period_bounds(current_period())
        start = start or month_start
        end = end or month_end
    if start >= end:
        msg = "start must be before end"
        raise ValueError(msg)
    return start, end


@router.get("/revenue", response_model=RevenueStats)
async def get_revenue(
    start: datetime | None = None,
    end: datetime | None = None,
    services: BillingServices = Depends(get_services),
) -> RevenueStats:
    """Revenue between ``start`` and ``end``; defaults to the current month."""
    return await services.records.get_revenue_stats(*_range_or_current_month(start, end))


@router.get("/revenue/metrics", response_model=RevenueMetrics)
async def get_revenue_metrics(
    start: datetime | None = None,
    end: datetime | None = None,
    services: BillingServices = Depends(get_services),
) -> RevenueMetrics:
    """ARPU, customer movement and net revenue retention; defaults to the current month."""
    return await services.analytics.revenue_metrics(*_range_or_current_month(start, end))


@router.get("/revenue/monthly", response_model=list[MonthlyRevenue])
async def get_monthly_revenue(
    year: int | None = Query(default=None, ge=2000, le=2100),
    services: BillingServices = Depends(get_services),
) -> list[MonthlyRevenue]:
    return await services.records.get_monthly_revenue(year or _utc_now().year)


@router.get("/billing/summary", response_model=BillingSummary)
async def get_billing_summary(
    as_of: datetime | None = None,
    services: BillingServices = Depends(get_services),
) -> BillingSummary:
    return await services.records.billing_summary(naive_utc(as_of))


@router.get("/dashboard", response_model=AnalyticsDashboard)
async def get_dashboard(
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> AnalyticsDashboard:
    return await services.analytics.dashboard(period)
