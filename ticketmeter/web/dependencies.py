"""FastAPI dependency injection and shared state."""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import Query, Request

from ticketmeter.billing.periods import current_period, validate_period
from ticketmeter.billing.services import BillingServices


def get_services(request: Request) -> BillingServices:
    """The process-wide service container built by ``create_app``."""
    services: BillingServices = request.app.state.services
    return services


def get_period(period: str | None = Query(default=None, description="YYYY-MM")) -> str:
    """Validated ``?period=`` parameter, defaulting to the current month."""
    if period is None:
        return current_period()
    return validate_period(period)


def naive_utc(moment: datetime | None) -> datetime | None:
    """Query and body datetimes may carry an offset; storage is naive UTC."""
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(UTC).replace(tzinfo=None)
