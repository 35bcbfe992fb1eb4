"""Entitlement gate: admission control for ticket operations against plan limits."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

import structlog

from ticketmeter.billing.locks import KeyedLocks
from ticketmeter.billing.periods import period_key
from ticketmeter.models.database import _utc_now
from ticketmeter.models.domain import UNLIMITED, AdmissionDecision
from ticketmeter.types import (
    BLOCKED_STATUSES,
    EnforcementMode,
    GateAction,
    LimitType,
    UsageAction,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from ticketmeter.billing.aggregator import UsageAggregator
    from ticketmeter.billing.ledger import UsageLedger
    from ticketmeter.billing.plans import PlanCatalog
    from ticketmeter.billing.subscriptions import SubscriptionManager
    from ticketmeter.config.settings import Settings
    from ticketmeter.models.database import UsageEvent
    from ticketmeter.models.domain import EventMetadata, TicketLimits, UsageCounts

logger = structlog.get_logger(__name__)

# Limits checked per action, in order; the first exhausted one is reported
_CHECKS: dict[GateAction, tuple[LimitType, ...]] = {
    GateAction.CREATE: (LimitType.ACTIVE_TICKETS, LimitType.TOTAL_TICKETS),
    GateAction.COMPLETE: (LimitType.COMPLETED_TICKETS,),
}

_ACTION_RECORDED: dict[GateAction, UsageAction] = {
    GateAction.CREATE: UsageAction.CREATED,
    GateAction.COMPLETE: UsageAction.COMPLETED,
}

_UPGRADE_MESSAGES: dict[LimitType, str] = {
    LimitType.ACTIVE_TICKETS: (
        "You've reached your active ticket limit ({limit}). "
        "Complete or archive existing tickets, or upgrade your plan for more capacity."
    ),
    LimitType.COMPLETED_TICKETS: (
        "You've reached your completed ticket limit ({limit}) for this period. "
        "Upgrade your plan to keep closing tickets."
    ),
    LimitType.TOTAL_TICKETS: (
        "You've reached your total ticket limit ({limit}) for this period. "
        "Upgrade your plan to create more tickets."
    ),
}


def exhausted_limit(
    action: GateAction,
    usage: UsageCounts,
    limits: TicketLimits,
    count: int = 1,
) -> LimitType | None:
    """Return the first limit that ``count`` more operations would exceed.

    Reaching a limit exactly denies, so a limit of 0 denies everything and
    ``UNLIMITED`` never denies.
    """
    for limit_type in _CHECKS[action]:
        limit = limits.for_type(limit_type)
        if limit == UNLIMITED:
            continue
        if usage.for_type(limit_type) + count > limit:
            return limit_type
    return None


def upgrade_message(limit_type: LimitType, limits: TicketLimits) -> str:
    return _UPGRADE_MESSAGES[limit_type].format(limit=limits.for_type(limit_type))


class EntitlementGate:
    """Answers "may this subscription perform this action in this period?".

    ``can_perform`` is a pure read. In best-effort mode concurrent callers
    can all pass the check before any of them records, so usage may
    overshoot a limit by the number of in-flight requests. In strict mode
    ``admission``/``admit`` serialize check and record per subscription so
    the limit is never exceeded by callers in this process.
    """

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        aggregator: UsageAggregator,
        ledger: UsageLedger,
        catalog: PlanCatalog,
        settings: Settings,
    ) -> None:
        self._subscriptions = subscriptions
        self._aggregator = aggregator
        self._ledger = ledger
        self._catalog = catalog
        self._settings = settings
        self._locks = KeyedLocks()

    @property
    def strict(self) -> bool:
        return self._settings.enforcement_mode == EnforcementMode.STRICT

    async def can_perform(
        self,
        subscription_id: str,
        action: GateAction,
        period: str,
        count: int = 1,
    ) -> AdmissionDecision:
        action = GateAction(action)
        subscription = await self._subscriptions.get(subscription_id)
        limits = await self._subscriptions.effective_limits(subscription)
        usage = await self._aggregator.get_enforced_usage(subscription_id, period)

        if subscription.status in BLOCKED_STATUSES:
            return AdmissionDecision(
                allowed=False,
                action=action,
                reason=f"Subscription is {subscription.status}",
                usage=usage,
                limits=limits,
            )

        limit_type = exhausted_limit(action, usage, limits, count=count)
        if limit_type is None:
            return AdmissionDecision(allowed=True, action=action, usage=usage, limits=limits)

        plan = await self._subscriptions.plan_for(subscription)
        suggestions = await self._catalog.suggest_upgrades(plan)
        logger.warning(
            "usage_limit_exceeded",
            subscription_id=subscription_id,
            action=action,
            limit_type=limit_type,
            current=usage.for_type(limit_type),
            limit=limits.for_type(limit_type),
            requested=count,
        )
        return AdmissionDecision(
            allowed=False,
            action=action,
            reason=f"{limit_type} limit reached",
            limit_type=limit_type,
            usage=usage,
            limits=limits,
            upgrade_message=upgrade_message(limit_type, limits),
            suggested_plans=[p.slug for p in suggestions],
        )

    async def validate_bulk(
        self,
        subscription_id: str,
        action: GateAction,
        count: int,
        period: str,
    ) -> AdmissionDecision:
        """Check whether ``count`` operations fit in the remaining allowance at once."""
        if count < 1:
            msg = "Bulk operation count must be at least 1"
            raise ValueError(msg)
        return await self.can_perform(subscription_id, action, period, count=count)

    @contextlib.asynccontextmanager
    async def admission(
        self,
        subscription_id: str,
        action: GateAction,
        period: str,
    ) -> AsyncIterator[AdmissionDecision]:
        """Check admission and, in strict mode, hold the subscription's lock.

        The caller performs its action and records it in the ledger inside
        the ``async with`` block; concurrent admissions for the same
        subscription wait until the block exits.
        """
        if not self.strict:
            yield await self.can_perform(subscription_id, action, period)
            return
        async with self._locks.hold(subscription_id):
            yield await self.can_perform(subscription_id, action, period)

    async def admit(
        self,
        subscription_id: str,
        action: GateAction,
        ticket_id: str,
        previous_status: str | None = None,
        new_status: str | None = None,
        metadata: EventMetadata | None = None,
        occurred_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[AdmissionDecision, UsageEvent | None]:
        """Check admission and, when allowed, record the matching usage event."""
        action = GateAction(action)
        occurred_at = occurred_at or _utc_now()
        async with self.admission(subscription_id, action, period_key(occurred_at)) as decision:
            if not decision.allowed:
                return decision, None
            event = await self._ledger.record(
                subscription_id,
                ticket_id,
                _ACTION_RECORDED[action],
                previous_status=previous_status,
                new_status=new_status,
                metadata=metadata,
                occurred_at=occurred_at,
                idempotency_key=idempotency_key,
            )
        return decision, event
