"""Advisory usage warnings as a subscription approaches its limits."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from ticketmeter.billing.aggregator import usage_percentage
from ticketmeter.models.domain import UNLIMITED, UsageWarning
from ticketmeter.types import LimitType, SubscriptionStatus, WarningLevel

if TYPE_CHECKING:
    from ticketmeter.billing.aggregator import UsageAggregator
    from ticketmeter.billing.subscriptions import SubscriptionManager
    from ticketmeter.config.settings import Settings
    from ticketmeter.models.domain import TicketLimits, UsageCounts

logger = structlog.get_logger(__name__)

WARNING_HEADER = "X-Usage-Warning"

_LABELS: dict[LimitType, str] = {
    LimitType.ACTIVE_TICKETS: "active tickets",
    LimitType.COMPLETED_TICKETS: "completed tickets",
    LimitType.TOTAL_TICKETS: "total tickets",
}


def build_warnings(
    usage: UsageCounts,
    limits: TicketLimits,
    warning_threshold: float = 75,
    critical_threshold: float = 90,
) -> list[UsageWarning]:
    """One warning per finite limit at or above the warning threshold."""
    warnings: list[UsageWarning] = []
    for limit_type in LimitType:
        limit = limits.for_type(limit_type)
        if limit == UNLIMITED:
            continue
        current = usage.for_type(limit_type)
        percentage = usage_percentage(current, limit)
        if percentage >= 100:
            level = WarningLevel.AT_LIMIT
            message = f"You've reached your {_LABELS[limit_type]} limit ({current}/{limit})."
        elif percentage >= critical_threshold:
            level = WarningLevel.CRITICAL
            message = (
                f"You're at {percentage:.0f}% of your {_LABELS[limit_type]} limit "
                f"({current}/{limit}). Upgrade soon to avoid interruptions."
            )
        elif percentage >= warning_threshold:
            level = WarningLevel.WARNING
            message = (
                f"You're at {percentage:.0f}% of your {_LABELS[limit_type]} limit "
                f"({current}/{limit})."
            )
        else:
            continue
        warnings.append(
            UsageWarning(
                limit_type=limit_type,
                level=level,
                percentage=percentage,
                current=current,
                limit=limit,
                message=message,
            )
        )
    return warnings


def warning_headers(warnings: list[UsageWarning]) -> dict[str, str]:
    """Render warnings as a single comma-separated response header."""
    if not warnings:
        return {}
    value = ", ".join(f"{w.limit_type}={w.level};{w.percentage:g}" for w in warnings)
    return {WARNING_HEADER: value}


class UsageWarningService:
    def __init__(
        self,
        subscriptions: SubscriptionManager,
        aggregator: UsageAggregator,
        settings: Settings,
    ) -> None:
        self._subscriptions = subscriptions
        self._aggregator = aggregator
        self._settings = settings

    async def usage_warnings(self, subscription_id: str, period: str) -> list[UsageWarning]:
        subscription = await self._subscriptions.get(subscription_id)
        limits = await self._subscriptions.effective_limits(subscription)
        usage = await self._aggregator.get_enforced_usage(subscription_id, period)
        return build_warnings(
            usage,
            limits,
            warning_threshold=self._settings.warning_threshold_percent,
            critical_threshold=self._settings.critical_threshold_percent,
        )

    async def subscriptions_approaching_limits(
        self, period: str, threshold: float | None = None
    ) -> dict[str, list[UsageWarning]]:
        """Live subscriptions with at least one limit at or above ``threshold`` percent."""
        threshold = self._settings.warning_threshold_percent if threshold is None else threshold
        flagged: dict[str, list[UsageWarning]] = {}
        live = await self._subscriptions.list_by_status(
            SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE
        )
        for subscription in live:
            warnings = [
                w
                for w in await self.usage_warnings(subscription.id, period)
                if w.percentage >= threshold
            ]
            if warnings:
                flagged[subscription.id] = warnings
        if flagged:
            logger.info("usage_warning_sweep", period=period, flagged=len(flagged))
        return flagged
