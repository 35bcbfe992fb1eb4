"""Usage aggregation: per-period summaries and per-subscription balances.

Counting is ticket-level. For every ticket, its usage events are folded in
``(action_timestamp, id)`` order and the last action decides which bucket
the ticket falls in:

========== ======= ========= ========
last action active completed archived
========== ======= ========= ========
created     1       0         0
completed   0       1         0
archived    0       0         1
deleted     0       0         0
========== ======= ========= ========

``total = active + completed``. Archived tickets are reported but do not
count towards the total.

Two caches are kept. A ``usage_summaries`` row folds only the events inside
one calendar month and is the reporting view. The ``usage_balances`` row
folds every event the subscription ever recorded, so a ticket opened in one
month is still active in the next until it is completed, archived or
deleted. Enforcement reads active and archived counts from the balance and
the completed count from the period summary.

Both caches are only ever changed by adding the difference between a
ticket's state before and after a new event, through atomic upserts in the
transaction that inserted the event, so concurrent writers never lose
increments and late (out-of-order) events land correctly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import DateTime, Integer, String, bindparam, text
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ticketmeter.billing.periods import period_bounds, period_key, validate_period
from ticketmeter.models.database import UsageBalance, UsageEvent, UsageSummary, _utc_now
from ticketmeter.models.domain import (
    UNLIMITED,
    ReconcileResult,
    UsageCounts,
    UsagePercentages,
)
from ticketmeter.types import UsageAction

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.billing.subscriptions import SubscriptionManager
    from ticketmeter.config.settings import Settings
    from ticketmeter.models.domain import TicketLimits

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class _Contribution:
    active: int = 0
    completed: int = 0
    archived: int = 0

    def __sub__(self, other: _Contribution) -> _Contribution:
        return _Contribution(
            self.active - other.active,
            self.completed - other.completed,
            self.archived - other.archived,
        )

    @property
    def total(self) -> int:
        return self.active + self.completed

    @property
    def is_zero(self) -> bool:
        return not (self.active or self.completed or self.archived)


_NONE = _Contribution()

_CONTRIBUTIONS: dict[str, _Contribution] = {
    UsageAction.CREATED: _Contribution(active=1),
    UsageAction.COMPLETED: _Contribution(completed=1),
    UsageAction.ARCHIVED: _Contribution(archived=1),
    UsageAction.DELETED: _NONE,
}

_UPSERT_DELTA = text(
    "INSERT INTO usage_summaries "
    "(subscription_id, period, active_count, completed_count, total_count, "
    "archived_count, last_updated, created_at) "
    "VALUES (:subscription_id, :period, :active, :completed, :total, :archived, :now, :now) "
    "ON CONFLICT (subscription_id, period) DO UPDATE SET "
    "active_count = usage_summaries.active_count + excluded.active_count, "
    "completed_count = usage_summaries.completed_count + excluded.completed_count, "
    "total_count = usage_summaries.total_count + excluded.total_count, "
    "archived_count = usage_summaries.archived_count + excluded.archived_count, "
    "last_updated = excluded.last_updated"
).bindparams(
    bindparam("subscription_id", type_=String()),
    bindparam("period", type_=String()),
    bindparam("active", type_=Integer()),
    bindparam("completed", type_=Integer()),
    bindparam("total", type_=Integer()),
    bindparam("archived", type_=Integer()),
    bindparam("now", type_=DateTime()),
)

_UPSERT_OVERWRITE = text(
    "INSERT INTO usage_summaries "
    "(subscription_id, period, active_count, completed_count, total_count, "
    "archived_count, last_updated, created_at) "
    "VALUES (:subscription_id, :period, :active, :completed, :total, :archived, :now, :now) "
    "ON CONFLICT (subscription_id, period) DO UPDATE SET "
    "active_count = excluded.active_count, "
    "completed_count = excluded.completed_count, "
    "total_count = excluded.total_count, "
    "archived_count = excluded.archived_count, "
    "last_updated = excluded.last_updated"
).bindparams(
    bindparam("subscription_id", type_=String()),
    bindparam("period", type_=String()),
    bindparam("active", type_=Integer()),
    bindparam("completed", type_=Integer()),
    bindparam("total", type_=Integer()),
    bindparam("archived", type_=Integer()),
    bindparam("now", type_=DateTime()),
)

_BALANCE_PARAMS = (
    bindparam("subscription_id", type_=String()),
    bindparam("active", type_=Integer()),
    bindparam("completed", type_=Integer()),
    bindparam("total", type_=Integer()),
    bindparam("archived", type_=Integer()),
    bindparam("now", type_=DateTime()),
)

_BALANCE_DELTA = text(
    "INSERT INTO usage_balances "
    "(subscription_id, active_count, completed_count, total_count, archived_count, last_updated) "
    "VALUES (:subscription_id, :active, :completed, :total, :archived, :now) "
    "ON CONFLICT (subscription_id) DO UPDATE SET "
    "active_count = usage_balances.active_count + excluded.active_count, "
    "completed_count = usage_balances.completed_count + excluded.completed_count, "
    "total_count = usage_balances.total_count + excluded.total_count, "
    "archived_count = usage_balances.archived_count + excluded.archived_count, "
    "last_updated = excluded.last_updated"
).bindparams(*_BALANCE_PARAMS)

_BALANCE_OVERWRITE = text(
    "INSERT INTO usage_balances "
    "(subscription_id, active_count, completed_count, total_count, archived_count, last_updated) "
    "VALUES (:subscription_id, :active, :completed, :total, :archived, :now) "
    "ON CONFLICT (subscription_id) DO UPDATE SET "
    "active_count = excluded.active_count, "
    "completed_count = excluded.completed_count, "
    "total_count = excluded.total_count, "
    "archived_count = excluded.archived_count, "
    "last_updated = excluded.last_updated"
).bindparams(*_BALANCE_PARAMS)


def _ordered(events: Iterable[UsageEvent]) -> list[UsageEvent]:
    return sorted(events, key=lambda e: (e.action_timestamp, e.id or 0))


def ticket_state(events: Iterable[UsageEvent]) -> str | None:
    """Last action of a ticket's events, or None if it has none."""
    ordered = _ordered(events)
    return ordered[-1].action if ordered else None


def fold_counts(events: Iterable[UsageEvent]) -> UsageCounts:
    """Compute period counts from raw ledger events."""
    by_ticket: dict[str, list[UsageEvent]] = {}
    for event in events:
        by_ticket.setdefault(event.ticket_id, []).append(event)

    active = completed = archived = 0
    for ticket_events in by_ticket.values():
        state = ticket_state(ticket_events)
        contribution = _CONTRIBUTIONS.get(state or "", _NONE)
        active += contribution.active
        completed += contribution.completed
        archived += contribution.archived
    return UsageCounts(
        active_tickets=active,
        completed_tickets=completed,
        total_tickets=active + completed,
        archived_tickets=archived,
    )


def _state_delta(ticket_events: list[UsageEvent], event_id: int | None) -> _Contribution:
    """Change in one ticket's contribution caused by the event ``event_id``."""
    before = _CONTRIBUTIONS.get(
        ticket_state(e for e in ticket_events if e.id != event_id) or "", _NONE
    )
    after = _CONTRIBUTIONS.get(ticket_state(ticket_events) or "", _NONE)
    return after - before


def _delta_params(subscription_id: str, delta: _Contribution) -> dict[str, object]:
    return {
        "subscription_id": subscription_id,
        "active": delta.active,
        "completed": delta.completed,
        "total": delta.total,
        "archived": delta.archived,
        "now": _utc_now(),
    }


def _counts_params(subscription_id: str, counts: UsageCounts) -> dict[str, object]:
    return {
        "subscription_id": subscription_id,
        "active": counts.active_tickets,
        "completed": counts.completed_tickets,
        "total": counts.total_tickets,
        "archived": counts.archived_tickets,
        "now": _utc_now(),
    }


def _summary_counts(summary: UsageSummary | UsageBalance | None) -> UsageCounts:
    if summary is None:
        return UsageCounts()
    return UsageCounts(
        active_tickets=summary.active_count,
        completed_tickets=summary.completed_count,
        total_tickets=summary.total_count,
        archived_tickets=summary.archived_count,
    )


def enforced_counts(balance: UsageCounts, period: UsageCounts) -> UsageCounts:
    """Counts the gate enforces: carried-over open tickets plus this period's completions."""
    return UsageCounts(
        active_tickets=balance.active_tickets,
        completed_tickets=period.completed_tickets,
        total_tickets=balance.active_tickets + period.completed_tickets,
        archived_tickets=balance.archived_tickets,
    )


def _drift(a: UsageCounts, b: UsageCounts) -> int:
    return (
        abs(a.active_tickets - b.active_tickets)
        + abs(a.completed_tickets - b.completed_tickets)
        + abs(a.total_tickets - b.total_tickets)
        + abs(a.archived_tickets - b.archived_tickets)
    )


def usage_percentage(current: int, limit: int) -> float:
    """Percent of ``limit`` used, capped at 100; unlimited reports 0."""
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0
    return round(min(100.0, current / limit * 100), 2)


class UsageAggregator:
    """Maintains and serves ``usage_summaries`` rows."""

    def __init__(
        self,
        engine: AsyncEngine,
        subscriptions: SubscriptionManager,
        settings: Settings,
    ) -> None:
        self._engine = engine
        self._subscriptions = subscriptions
        self._settings = settings

    # -- write path ------------------------------------------------------------

    async def apply_event(self, session: AsyncSession, event: UsageEvent) -> UsageCounts:
        """Fold a just-inserted event into its period summary and the balance.

        Must run inside the transaction that inserted ``event`` (already
        flushed, so it has an id). Returns the period delta that was applied.
        """
        period = period_key(event.action_timestamp)
        start, end = period_bounds(period)
        statement = select(UsageEvent).where(
            col(UsageEvent.subscription_id) == event.subscription_id,
            col(UsageEvent.ticket_id) == event.ticket_id,
        )
        results = await session.execute(statement)
        ticket_events = list(results.scalars().all())
        in_period = [e for e in ticket_events if start <= e.action_timestamp < end]

        delta = _state_delta(in_period, event.id)
        balance_delta = _state_delta(ticket_events, event.id)

        await session.execute(
            _UPSERT_DELTA, {**_delta_params(event.subscription_id, delta), "period": period}
        )
        await session.execute(
            _BALANCE_DELTA, _delta_params(event.subscription_id, balance_delta)
        )
        if not balance_delta.is_zero:
            logger.debug(
                "usage_balance_incremented",
                subscription_id=event.subscription_id,
                active=balance_delta.active,
                completed=balance_delta.completed,
                archived=balance_delta.archived,
            )
        if not delta.is_zero:
            logger.debug(
                "usage_summary_incremented",
                subscription_id=event.subscription_id,
                period=period,
                active=delta.active,
                completed=delta.completed,
                archived=delta.archived,
            )
        return UsageCounts(
            active_tickets=delta.active,
            completed_tickets=delta.completed,
            total_tickets=delta.total,
            archived_tickets=delta.archived,
        )

    # -- read path -------------------------------------------------------------

    async def get_summary(self, subscription_id: str, period: str) -> UsageSummary | None:
        validate_period(period)
        async with AsyncSession(self._engine) as session:
            statement = select(UsageSummary).where(
                col(UsageSummary.subscription_id) == subscription_id,
                col(UsageSummary.period) == period,
            )
            results = await session.execute(statement)
            return results.scalars().first()

    async def get_usage(self, subscription_id: str, period: str) -> UsageCounts:
        """Cached counts for the period; zeros when nothing was recorded."""
        return _summary_counts(await self.get_summary(subscription_id, period))

    async def recompute(self, subscription_id: str, period: str) -> UsageCounts:
        """Authoritative counts, scanned from the ledger."""
        start, end = period_bounds(period)
        async with AsyncSession(self._engine) as session:
            statement = select(UsageEvent).where(
                col(UsageEvent.subscription_id) == subscription_id,
                col(UsageEvent.action_timestamp) >= start,
                col(UsageEvent.action_timestamp) < end,
            )
            results = await session.execute(statement)
            events = list(results.scalars().all())
        return fold_counts(events)

    async def get_balance(self, subscription_id: str) -> UsageCounts:
        """Cached counts over every period; zeros when nothing was recorded."""
        async with AsyncSession(self._engine) as session:
            balance = await session.get(UsageBalance, subscription_id)
            return _summary_counts(balance)

    async def recompute_balance(self, subscription_id: str) -> UsageCounts:
        """Authoritative balance, scanned from the subscription's whole ledger."""
        async with AsyncSession(self._engine) as session:
            statement = select(UsageEvent).where(
                col(UsageEvent.subscription_id) == subscription_id
            )
            results = await session.execute(statement)
            events = list(results.scalars().all())
        return fold_counts(events)

    async def get_enforced_usage(self, subscription_id: str, period: str) -> UsageCounts:
        """Counts checked against limits when admitting work in ``period``.

        Open tickets carry over between months, so active and archived come
        from the balance; completions are counted per period.
        """
        balance = await self.get_balance(subscription_id)
        usage = await self.get_usage(subscription_id, period)
        return enforced_counts(balance, usage)

    async def get_usage_percentages(
        self,
        subscription_id: str,
        period: str,
        limits: TicketLimits | None = None,
    ) -> UsagePercentages:
        if limits is None:
            subscription = await self._subscriptions.get(subscription_id)
            limits = await self._subscriptions.effective_limits(subscription)
        usage = await self.get_enforced_usage(subscription_id, period)
        return UsagePercentages(
            active_tickets=usage_percentage(usage.active_tickets, limits.active_tickets),
            completed_tickets=usage_percentage(usage.completed_tickets, limits.completed_tickets),
            total_tickets=usage_percentage(usage.total_tickets, limits.total_tickets),
        )

    async def summaries_for_subscription(
        self, subscription_id: str, limit: int = 12
    ) -> list[UsageSummary]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(UsageSummary)
                .where(col(UsageSummary.subscription_id) == subscription_id)
                .order_by(col(UsageSummary.period).desc())
                .limit(limit)
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    # -- reconciliation --------------------------------------------------------

    async def reconcile(
        self,
        subscription_id: str,
        period: str,
        tolerance: int | None = None,
    ) -> ReconcileResult:
        """Compare the cached summary with a ledger recompute and repair drift.

        Drift larger than ``tolerance`` (default: configured drift tolerance)
        is logged and the summary is overwritten with the recomputed counts.
        """
        tolerance = self._settings.drift_tolerance if tolerance is None else tolerance
        cached = await self.get_usage(subscription_id, period)
        recomputed = await self.recompute(subscription_id, period)
        drift = _drift(cached, recomputed)
        corrected = drift > tolerance
        if corrected:
            logger.warning(
                "usage_summary_drift",
                subscription_id=subscription_id,
                period=period,
                drift=drift,
                cached=cached.model_dump(),
                recomputed=recomputed.model_dump(),
            )
            async with AsyncSession(self._engine) as session:
                await session.execute(
                    _UPSERT_OVERWRITE,
                    {**_counts_params(subscription_id, recomputed), "period": period},
                )
                await session.commit()
        return ReconcileResult(
            subscription_id=subscription_id,
            period=period,
            cached=cached,
            recomputed=recomputed,
            drift=drift,
            corrected=corrected,
        )

    async def reconcile_period(self, period: str) -> list[ReconcileResult]:
        """Reconcile every subscription with events or a summary in ``period``."""
        start, end = period_bounds(period)
        async with AsyncSession(self._engine) as session:
            with_events = await session.execute(
                select(UsageEvent.subscription_id)
                .where(
                    col(UsageEvent.action_timestamp) >= start,
                    col(UsageEvent.action_timestamp) < end,
                )
                .distinct()
            )
            with_summary = await session.execute(
                select(UsageSummary.subscription_id).where(col(UsageSummary.period) == period)
            )
            subscription_ids = set(with_events.scalars().all()) | set(with_summary.scalars().all())

        results = [await self.reconcile(sid, period) for sid in sorted(subscription_ids)]
        drifted = sum(1 for r in results if r.corrected)
        logger.info(
            "usage_period_reconciled",
            period=period,
            subscriptions=len(results),
            corrected=drifted,
        )
        return results

    async def reconcile_balance(
        self, subscription_id: str, tolerance: int | None = None
    ) -> ReconcileResult:
        """Compare the cached balance with a whole-ledger recompute and repair drift."""
        tolerance = self._settings.drift_tolerance if tolerance is None else tolerance
        cached = await self.get_balance(subscription_id)
        recomputed = await self.recompute_balance(subscription_id)
        drift = _drift(cached, recomputed)
        corrected = drift > tolerance
        if corrected:
            logger.warning(
                "usage_balance_drift",
                subscription_id=subscription_id,
                drift=drift,
                cached=cached.model_dump(),
                recomputed=recomputed.model_dump(),
            )
            async with AsyncSession(self._engine) as session:
                await session.execute(
                    _BALANCE_OVERWRITE, _counts_params(subscription_id, recomputed)
                )
                await session.commit()
        return ReconcileResult(
            subscription_id=subscription_id,
            period=None,
            cached=cached,
            recomputed=recomputed,
            drift=drift,
            corrected=corrected,
        )
