"""Subscription record: lifecycle state machine, periods and limit overrides."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ticketmeter.billing.locks import KeyedLocks
from ticketmeter.billing.periods import add_months
from ticketmeter.billing.plans import plan_limits
from ticketmeter.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from ticketmeter.models.database import (
    BillingRecord,
    Plan,
    Subscription,
    UsageBalance,
    UsageEvent,
    UsageSummary,
    _utc_now,
)
from ticketmeter.models.domain import CustomLimits, TicketLimits, TrialStatus, TrialSweepResult
from ticketmeter.types import LIVE_STATUSES, BillingInterval, SubscriptionStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.billing.plans import PlanCatalog
    from ticketmeter.config.settings import Settings

logger = structlog.get_logger(__name__)

_S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    _S.TRIAL: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.CANCELLED, _S.SUSPENDED}),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.CANCELLED, _S.SUSPENDED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.CANCELLED, _S.SUSPENDED}),
    _S.SUSPENDED: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.CANCELLED}),
    _S.CANCELLED: frozenset(),
}


def check_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if SubscriptionStatus(target) not in ALLOWED_TRANSITIONS[SubscriptionStatus(current)]:
        raise InvalidTransitionError("subscription", current, target)


def transition_timestamps(current: str, target: str, at: datetime) -> dict[str, datetime | None]:
    """Lifecycle timestamps a ``current -> target`` status change sets."""
    changes: dict[str, datetime | None] = {}
    if target == SubscriptionStatus.CANCELLED:
        changes["cancelled_at"] = at
    if current == SubscriptionStatus.TRIAL and target == SubscriptionStatus.ACTIVE:
        changes["converted_at"] = at
    if target == SubscriptionStatus.SUSPENDED:
        changes["suspended_at"] = at
        changes["resumed_at"] = None
    elif current == SubscriptionStatus.SUSPENDED and target != SubscriptionStatus.CANCELLED:
        changes["resumed_at"] = at
    return changes


def interval_months(billing_interval: str | None) -> int:
    return 12 if billing_interval == BillingInterval.YEAR else 1


def custom_limits_of(subscription: Subscription) -> CustomLimits | None:
    if not subscription.custom_limits_json:
        return None
    return CustomLimits.model_validate_json(subscription.custom_limits_json)


class SubscriptionManager:
    """Owns every write to the subscriptions table.

    Status changes on one subscription are serialized through a per-id
    lock, and provider-driven changes are additionally version-gated on
    ``last_event_at`` so a late, older event can never overwrite a newer
    state.
    """

    def __init__(self, engine: AsyncEngine, catalog: PlanCatalog, settings: Settings) -> None:
        self._engine = engine
        self._catalog = catalog
        self._settings = settings
        self._locks = KeyedLocks()

    # -- reads ---------------------------------------------------------------

    async def get(self, subscription_id: str) -> Subscription:
        async with AsyncSession(self._engine) as session:
            subscription = await session.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def get_live_for_customer(self, customer_id: str) -> Subscription | None:
        """Return the customer's active or trial subscription, if any."""
        async with AsyncSession(self._engine) as session:
            statement = select(Subscription).where(
                col(Subscription.customer_id) == customer_id,
                col(Subscription.status).in_([s.value for s in LIVE_STATUSES]),
            )
            results = await session.execute(statement)
            return results.scalars().first()

    async def get_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        async with AsyncSession(self._engine) as session:
            statement = select(Subscription).where(
                col(Subscription.external_subscription_id) == external_subscription_id
            )
            results = await session.execute(statement)
            return results.scalars().first()

    async def list_for_customer(self, customer_id: str) -> list[Subscription]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(Subscription)
                .where(col(Subscription.customer_id) == customer_id)
                .order_by(col(Subscription.created_at).desc())
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def list_by_status(self, *statuses: SubscriptionStatus) -> list[Subscription]:
        async with AsyncSession(self._engine) as session:
            statement = select(Subscription).where(
                col(Subscription.status).in_([s.value for s in statuses])
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def plan_for(self, subscription: Subscription) -> Plan | None:
        if subscription.plan_id is None:
            return None
        return await self._catalog.get_plan(subscription.plan_id)

    async def effective_limits(self, subscription: Subscription) -> TicketLimits:
        """Plan limits with the subscription's custom override applied.

        Resolved on every call so plan edits apply to the next decision.
        A subscription without a plan starts from unlimited.
        """
        plan = await self.plan_for(subscription)
        base = plan_limits(plan) if plan is not None else TicketLimits()
        return base.merged(custom_limits_of(subscription))

    async def billing_interval(self, subscription: Subscription) -> str:
        if subscription.custom_billing_interval:
            return subscription.custom_billing_interval
        plan = await self.plan_for(subscription)
        return plan.billing_interval if plan is not None else BillingInterval.MONTH.value

    async def trial_status(self, subscription_id: str, now: datetime | None = None) -> TrialStatus:
        subscription = await self.get(subscription_id)
        now = now or _utc_now()
        if subscription.status != SubscriptionStatus.TRIAL or subscription.trial_end is None:
            return TrialStatus(is_trial=False)
        remaining = subscription.trial_end - now
        return TrialStatus(
            is_trial=True,
            trial_start=subscription.trial_start,
            trial_end=subscription.trial_end,
            days_remaining=max(0, remaining.days + (1 if remaining.seconds else 0)),
            expired=remaining.total_seconds() <= 0,
        )

    # -- creation ------------------------------------------------------------

    async def create(
        self,
        customer_id: str,
        plan_id: str | None = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        period_start: datetime | None = None,
        custom_limits: CustomLimits | None = None,
        custom_price_cents: int | None = None,
        custom_billing_interval: BillingInterval | None = None,
        external_subscription_id: str | None = None,
        external_customer_id: str | None = None,
        trial_days: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Subscription:
        """Create a subscription, enforcing one live subscription per customer."""
        status = SubscriptionStatus(status)
        plan = await self._catalog.get_plan(plan_id) if plan_id is not None else None
        if plan is None and custom_price_cents is None and custom_limits is None:
            msg = "A subscription needs a plan or custom terms"
            raise ValueError(msg)

        if status in LIVE_STATUSES and await self.get_live_for_customer(customer_id) is not None:
            msg = f"Customer {customer_id} already has a live subscription"
            raise ConflictError(msg)

        start = period_start or _utc_now()
        interval = custom_billing_interval or (
            plan.billing_interval if plan is not None else BillingInterval.MONTH
        )
        subscription = Subscription(
            customer_id=customer_id,
            plan_id=plan.id if plan is not None else None,
            status=status.value,
            current_period_start=start,
            current_period_end=add_months(start, interval_months(interval)),
            custom_limits_json=custom_limits.model_dump_json() if custom_limits else None,
            custom_price_cents=custom_price_cents,
            custom_billing_interval=(
                BillingInterval(custom_billing_interval).value if custom_billing_interval else None
            ),
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
            metadata_json=json.dumps(metadata) if metadata else None,
            created_at=start,
            updated_at=start,
        )
        if status == SubscriptionStatus.TRIAL:
            days = self._trial_days(plan, trial_days)
            subscription.trial_start = start
            subscription.trial_end = start + timedelta(days=days)
            subscription.current_period_end = subscription.trial_end
        elif status == SubscriptionStatus.SUSPENDED:
            subscription.suspended_at = start

        async with AsyncSession(self._engine) as session:
            await self._commit(session, subscription)

        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            customer_id=customer_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
        )
        return subscription

    async def start_trial(
        self,
        customer_id: str,
        plan_id: str,
        now: datetime | None = None,
        trial_days: int | None = None,
    ) -> Subscription:
        """Open a trial on ``plan_id``; length is the plan's trial or the configured default."""
        return await self.create(
            customer_id,
            plan_id=plan_id,
            status=SubscriptionStatus.TRIAL,
            period_start=now,
            trial_days=trial_days,
        )

    def _trial_days(self, plan: Plan | None, trial_days: int | None) -> int:
        if trial_days is not None:
            return trial_days
        if plan is not None and plan.trial_days > 0:
            return plan.trial_days
        return self._settings.default_trial_days

    # -- lifecycle -----------------------------------------------------------

    async def convert_trial(
        self, subscription_id: str, now: datetime | None = None
    ) -> Subscription:
        """Move a trial to active and start its first paid period."""
        now = now or _utc_now()
        async with self._locks.hold(subscription_id):
            interval = await self.billing_interval(await self.get(subscription_id))
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                if subscription.status != SubscriptionStatus.TRIAL:
                    raise InvalidTransitionError(
                        "subscription", subscription.status, "converted trial"
                    )
                subscription.status = SubscriptionStatus.ACTIVE.value
                subscription.converted_at = now
                subscription.current_period_start = now
                subscription.current_period_end = add_months(now, interval_months(interval))
                subscription.updated_at = now
                await self._commit(session, subscription)
        logger.info("trial_converted", subscription_id=subscription_id)
        return subscription

    async def extend_trial(self, subscription_id: str, days: int) -> Subscription:
        if days <= 0:
            msg = "Trial extension must be a positive number of days"
            raise ValueError(msg)
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                if (
                    subscription.status != SubscriptionStatus.TRIAL
                    or subscription.trial_end is None
                ):
                    raise InvalidTransitionError(
                        "subscription", subscription.status, "extended trial"
                    )
                subscription.trial_end = subscription.trial_end + timedelta(days=days)
                subscription.current_period_end = subscription.trial_end
                subscription.updated_at = _utc_now()
                await self._commit(session, subscription)
        logger.info("trial_extended", subscription_id=subscription_id, days=days)
        return subscription

    async def cancel(
        self,
        subscription_id: str,
        at_period_end: bool = False,
        now: datetime | None = None,
    ) -> Subscription:
        """Cancel now, or flag the subscription to lapse when its period ends."""
        now = now or _utc_now()
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                if at_period_end:
                    if subscription.status == SubscriptionStatus.CANCELLED:
                        raise InvalidTransitionError(
                            "subscription", subscription.status, "cancel at period end"
                        )
                    subscription.cancel_at_period_end = True
                else:
                    check_transition(subscription.status, SubscriptionStatus.CANCELLED)
                    subscription.status = SubscriptionStatus.CANCELLED.value
                    subscription.cancelled_at = now
                subscription.updated_at = now
                await self._commit(session, subscription)
        logger.info(
            "subscription_cancelled",
            subscription_id=subscription_id,
            at_period_end=at_period_end,
        )
        return subscription

    async def update_status(
        self,
        subscription_id: str,
        status: SubscriptionStatus,
        now: datetime | None = None,
    ) -> Subscription:
        """Explicit status change; same-status requests are no-ops."""
        now = now or _utc_now()
        target = SubscriptionStatus(status)
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                if subscription.status == target:
                    return subscription
                check_transition(subscription.status, target)
                for field, value in transition_timestamps(
                    subscription.status, target, now
                ).items():
                    setattr(subscription, field, value)
                subscription.status = target.value
                subscription.updated_at = now
                await self._commit(session, subscription)
        logger.info("subscription_status_changed", subscription_id=subscription_id, status=target)
        return subscription

    async def change_plan(self, subscription_id: str, plan_id: str) -> Subscription:
        plan = await self._catalog.get_plan(plan_id)
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                if subscription.status == SubscriptionStatus.CANCELLED:
                    raise InvalidTransitionError("subscription", subscription.status, "plan change")
                previous = subscription.plan_id
                subscription.plan_id = plan.id
                subscription.updated_at = _utc_now()
                await self._commit(session, subscription)
        logger.info(
            "subscription_plan_changed",
            subscription_id=subscription_id,
            from_plan=previous,
            to_plan=plan.id,
        )
        return subscription

    async def set_custom_limits(
        self, subscription_id: str, limits: CustomLimits | None
    ) -> Subscription:
        """Replace (or with ``None`` clear) the per-subscription limit override."""
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                subscription.custom_limits_json = limits.model_dump_json() if limits else None
                subscription.updated_at = _utc_now()
                await self._commit(session, subscription)
        logger.info(
            "subscription_limits_overridden",
            subscription_id=subscription_id,
            limits=limits.model_dump() if limits else None,
        )
        return subscription

    async def set_custom_pricing(
        self,
        subscription_id: str,
        price_cents: int | None,
        billing_interval: BillingInterval | None = None,
    ) -> Subscription:
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                subscription.custom_price_cents = price_cents
                subscription.custom_billing_interval = (
                    BillingInterval(billing_interval).value if billing_interval else None
                )
                subscription.updated_at = _utc_now()
                await self._commit(session, subscription)
        return subscription

    async def advance_period(
        self, subscription_id: str, cycle_end: datetime | None = None
    ) -> Subscription:
        """Roll to the next billing period after a successful cycle.

        A subscription flagged ``cancel_at_period_end`` is cancelled at the
        boundary instead of being renewed. With ``cycle_end`` (the period
        boundary a cycle invoice was issued for) the roll only happens while
        the current period ends at or before it, so a period a provider update
        already moved, or a duplicate payment of the same invoice, leaves the
        subscription unchanged.
        """
        async with self._locks.hold(subscription_id):
            interval = await self.billing_interval(await self.get(subscription_id))
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                boundary = subscription.current_period_end
                if cycle_end is not None and boundary > cycle_end:
                    logger.info(
                        "subscription_period_already_advanced",
                        subscription_id=subscription_id,
                        period_end=boundary.isoformat(),
                        cycle_end=cycle_end.isoformat(),
                    )
                    return subscription
                if subscription.cancel_at_period_end:
                    check_transition(subscription.status, SubscriptionStatus.CANCELLED)
                    subscription.status = SubscriptionStatus.CANCELLED.value
                    subscription.cancelled_at = boundary
                else:
                    if subscription.status == SubscriptionStatus.CANCELLED:
                        raise InvalidTransitionError("subscription", subscription.status, "renewal")
                    subscription.current_period_start = boundary
                    subscription.current_period_end = add_months(
                        boundary, interval_months(interval)
                    )
                subscription.updated_at = _utc_now()
                await self._commit(session, subscription)
        logger.info(
            "subscription_period_advanced",
            subscription_id=subscription_id,
            status=subscription.status,
            period_end=subscription.current_period_end.isoformat(),
        )
        return subscription

    async def apply_provider_event(
        self,
        subscription_id: str,
        occurred_at: datetime,
        status: SubscriptionStatus | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        cancel_at_period_end: bool | None = None,
        plan_id: str | None = None,
    ) -> bool:
        """Apply a payment-provider state change if it is newer than the last one seen.

        Returns False when the event is stale (an equal or newer event was
        already applied). Raises InvalidTransitionError for a status change
        the state machine forbids.
        """
        async with self._locks.hold(subscription_id):
            current = await self.get(subscription_id)
            values: dict[str, Any] = {"last_event_at": occurred_at, "updated_at": _utc_now()}
            if status is not None and current.status != status:
                if current.last_event_at is not None and current.last_event_at >= occurred_at:
                    logger.info(
                        "subscription_event_stale",
                        subscription_id=subscription_id,
                        occurred_at=occurred_at.isoformat(),
                    )
                    return False
                check_transition(current.status, status)
                values["status"] = SubscriptionStatus(status).value
                values.update(transition_timestamps(current.status, status, occurred_at))
            if period_start is not None:
                values["current_period_start"] = period_start
            if period_end is not None:
                values["current_period_end"] = period_end
            if cancel_at_period_end is not None:
                values["cancel_at_period_end"] = cancel_at_period_end
            if plan_id is not None:
                values["plan_id"] = plan_id

            statement = (
                update(Subscription)
                .where(
                    col(Subscription.id) == subscription_id,
                    or_(
                        col(Subscription.last_event_at).is_(None),
                        col(Subscription.last_event_at) < occurred_at,
                    ),
                )
                .values(**values)
            )
            async with AsyncSession(self._engine) as session:
                try:
                    result = await session.execute(statement)
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    msg = f"Customer {current.customer_id} already has a live subscription"
                    raise ConflictError(msg) from exc

        if result.rowcount == 0:
            logger.info(
                "subscription_event_stale",
                subscription_id=subscription_id,
                occurred_at=occurred_at.isoformat(),
            )
            return False
        logger.info(
            "subscription_event_applied",
            subscription_id=subscription_id,
            status=values.get("status", current.status),
        )
        return True

    async def process_expired_trials(self, now: datetime | None = None) -> TrialSweepResult:
        """Downgrade lapsed trials to the free plan, or cancel them if there is none."""
        now = now or _utc_now()
        free_plan = await self._catalog.find_by_slug(self._settings.free_plan_slug)
        async with AsyncSession(self._engine) as session:
            statement = select(Subscription.id).where(
                col(Subscription.status) == SubscriptionStatus.TRIAL.value,
                col(Subscription.trial_end) <= now,
            )
            results = await session.execute(statement)
            expired = list(results.scalars().all())

        sweep = TrialSweepResult()
        for subscription_id in expired:
            if free_plan is not None:
                await self._downgrade_to_free(subscription_id, free_plan, now)
                sweep.downgraded.append(subscription_id)
            else:
                await self.update_status(subscription_id, SubscriptionStatus.CANCELLED, now=now)
                sweep.cancelled.append(subscription_id)
        if expired:
            logger.info(
                "expired_trials_processed",
                downgraded=len(sweep.downgraded),
                cancelled=len(sweep.cancelled),
            )
        return sweep

    async def _downgrade_to_free(
        self, subscription_id: str, free_plan: Plan, now: datetime
    ) -> None:
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                subscription = await self._load(session, subscription_id)
                if subscription.status != SubscriptionStatus.TRIAL:
                    return
                subscription.status = SubscriptionStatus.ACTIVE.value
                subscription.plan_id = free_plan.id
                subscription.current_period_start = now
                subscription.current_period_end = add_months(
                    now, interval_months(free_plan.billing_interval)
                )
                subscription.updated_at = now
                await self._commit(session, subscription)

    async def purge(self, subscription_id: str) -> None:
        """Hard-delete a subscription with its ledger, usage caches and billing records."""
        async with self._locks.hold(subscription_id):
            async with AsyncSession(self._engine) as session:
                await self._load(session, subscription_id)
                for model in (UsageEvent, UsageSummary, UsageBalance, BillingRecord):
                    await session.execute(
                        delete(model).where(col(model.subscription_id) == subscription_id)
                    )
                await session.execute(
                    delete(Subscription).where(col(Subscription.id) == subscription_id)
                )
                await session.commit()
        logger.warning("subscription_purged", subscription_id=subscription_id)

    # -- helpers -------------------------------------------------------------

    @staticmethod
    async def _load(session: AsyncSession, subscription_id: str) -> Subscription:
        subscription = await session.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    @staticmethod
    async def _commit(session: AsyncSession, subscription: Subscription) -> None:
        customer_id = subscription.customer_id
        session.add(subscription)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            msg = f"Customer {customer_id} already has a live subscription"
            raise ConflictError(msg) from exc
        await session.refresh(subscription)
