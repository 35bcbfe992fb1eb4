"""Periodic maintenance jobs run by the worker."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from ticketmeter.billing.periods import current_period, previous_period

if TYPE_CHECKING:
    from datetime import datetime

    from ticketmeter.billing.services import BillingServices

logger = structlog.get_logger(__name__)


async def reconcile_usage(services: BillingServices, period: str | None = None) -> int:
    """Reconcile summaries for ``period`` and the month before it.

    Late events can still land in the previous month right after a
    boundary, so both periods are checked. The balance of every
    subscription touched in either month is checked too. Returns the
    number of summaries and balances corrected.
    """
    period = period or current_period()
    corrected = 0
    touched: set[str] = set()
    for key in (previous_period(period), period):
        results = await services.aggregator.reconcile_period(key)
        corrected += sum(1 for r in results if r.corrected)
        touched.update(r.subscription_id for r in results)
    for subscription_id in sorted(touched):
        balance = await services.aggregator.reconcile_balance(subscription_id)
        corrected += int(balance.corrected)
    logger.info("job_reconcile_usage_done", period=period, corrected=corrected)
    return corrected


async def expire_trials(services: BillingServices, now: datetime | None = None) -> int:
    """Downgrade or cancel trials past their end date."""
    result = await services.subscriptions.process_expired_trials(now)
    handled = len(result.downgraded) + len(result.cancelled)
    logger.info(
        "job_expire_trials_done",
        downgraded=len(result.downgraded),
        cancelled=len(result.cancelled),
    )
    return handled


async def sweep_usage_warnings(services: BillingServices, period: str | None = None) -> int:
    """Log every live subscription that is close to one of its limits."""
    period = period or current_period()
    flagged = await services.warnings.subscriptions_approaching_limits(period)
    for subscription_id, warnings in flagged.items():
        logger.warning(
            "subscription_approaching_limits",
            subscription_id=subscription_id,
            period=period,
            limits=[f"{w.limit_type}={w.percentage:g}%" for w in warnings],
        )
    return len(flagged)


Job = Callable[["BillingServices"], Awaitable[int]]

DEFAULT_JOBS: dict[str, Job] = {
    "reconcile_usage": reconcile_usage,
    "expire_trials": expire_trials,
    "sweep_usage_warnings": sweep_usage_warnings,
}
