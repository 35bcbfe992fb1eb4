"""Usage ledger: append-only ticket lifecycle events."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ticketmeter.billing.locks import KeyedLocks
from ticketmeter.billing.periods import period_bounds
from ticketmeter.exceptions import DuplicateEventError, NotFoundError, TicketMeterError
from ticketmeter.models.database import Subscription, UsageEvent, _utc_now
from ticketmeter.models.domain import EventMetadata
from ticketmeter.types import UsageAction

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.billing.aggregator import UsageAggregator
    from ticketmeter.config.settings import Settings

logger = structlog.get_logger(__name__)

_COMPLETED_STATUSES = frozenset({"completed", "resolved", "closed"})


def action_for_status(new_status: str) -> UsageAction:
    """Map a ticket's new status to the usage action it represents."""
    status = new_status.lower()
    if status in _COMPLETED_STATUSES:
        return UsageAction.COMPLETED
    if status == "archived":
        return UsageAction.ARCHIVED
    if status == "deleted":
        return UsageAction.DELETED
    return UsageAction.CREATED


def _epoch_seconds(moment: datetime) -> int:
    return int((moment - datetime(1970, 1, 1)).total_seconds())


def _matches(column: Any, value: str | None) -> Any:
    return column.is_(None) if value is None else column == value


class UsageLedger:
    """Records lifecycle events and folds each one into its period summary.

    The ledger never rejects an event because of plan limits; admission is
    the gate's job. An event that repeats an earlier one (same ticket,
    action and status transition within the dedupe window, or the same
    caller-supplied idempotency key) is a no-op that returns the stored
    event.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        aggregator: UsageAggregator,
        settings: Settings,
    ) -> None:
        self._engine = engine
        self._aggregator = aggregator
        self._settings = settings
        self._ticket_locks = KeyedLocks()

    def dedupe_key(
        self,
        subscription_id: str,
        ticket_id: str,
        action: UsageAction,
        occurred_at: datetime,
        previous_status: str | None = None,
        new_status: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        if idempotency_key:
            return f"idem:{subscription_id}:{idempotency_key}"
        bucket = _epoch_seconds(occurred_at) // self._settings.dedupe_window_seconds
        return (
            f"{subscription_id}:{ticket_id}:{action}:"
            f"{previous_status or ''}>{new_status or ''}:{bucket}"
        )

    async def record(
        self,
        subscription_id: str,
        ticket_id: str,
        action: UsageAction,
        previous_status: str | None = None,
        new_status: str | None = None,
        metadata: EventMetadata | None = None,
        occurred_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> UsageEvent:
        """Append an event and update the summary in the same transaction.

        Raises NotFoundError if the subscription does not exist.
        """
        action = UsageAction(action)
        occurred_at = occurred_at or _utc_now()
        key = self.dedupe_key(
            subscription_id,
            ticket_id,
            action,
            occurred_at,
            previous_status=previous_status,
            new_status=new_status,
            idempotency_key=idempotency_key,
        )

        # One writer per ticket; apply_event folds against the ticket's earlier events
        async with self._ticket_locks.hold(f"{subscription_id}:{ticket_id}"):
            try:
                event = await self._insert(
                    key,
                    UsageEvent(
                        subscription_id=subscription_id,
                        ticket_id=ticket_id,
                        action=action.value,
                        previous_status=previous_status,
                        new_status=new_status,
                        action_timestamp=occurred_at,
                        dedupe_key=key,
                        metadata_json=metadata.model_dump_json() if metadata else None,
                    ),
                    idempotent=idempotency_key is not None,
                )
            except DuplicateEventError as dup:
                existing = await self._find_duplicate(dup.dedupe_key)
                logger.info(
                    "usage_event_duplicate",
                    subscription_id=subscription_id,
                    ticket_id=ticket_id,
                    action=action,
                    dedupe_key=dup.dedupe_key,
                )
                return existing

        logger.info(
            "usage_event_recorded",
            subscription_id=subscription_id,
            ticket_id=ticket_id,
            action=action,
            event_id=event.id,
        )
        return event

    async def record_status_change(
        self,
        subscription_id: str,
        ticket_id: str,
        previous_status: str | None,
        new_status: str,
        metadata: EventMetadata | None = None,
        occurred_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> UsageEvent:
        return await self.record(
            subscription_id,
            ticket_id,
            action_for_status(new_status),
            previous_status=previous_status,
            new_status=new_status,
            metadata=metadata,
            occurred_at=occurred_at,
            idempotency_key=idempotency_key,
        )

    async def record_restoration(
        self,
        subscription_id: str,
        ticket_id: str,
        restored_status: str = "open",
        metadata: EventMetadata | None = None,
        occurred_at: datetime | None = None,
    ) -> UsageEvent:
        """Record an archived ticket coming back; it counts as active again."""
        metadata = (metadata or EventMetadata()).model_copy(update={"is_restoration": True})
        return await self.record(
            subscription_id,
            ticket_id,
            UsageAction.CREATED,
            previous_status="archived",
            new_status=restored_status,
            metadata=metadata,
            occurred_at=occurred_at,
        )

    async def _insert(self, key: str, event: UsageEvent, idempotent: bool) -> UsageEvent:
        async with AsyncSession(self._engine) as session:
            if await session.get(Subscription, event.subscription_id) is None:
                raise NotFoundError("subscription", event.subscription_id)

            duplicate = await self._window_duplicate(session, event, idempotent)
            if duplicate is not None:
                raise DuplicateEventError(duplicate)

            session.add(event)
            try:
                await session.flush()
                await self._aggregator.apply_event(session, event)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateEventError(key) from exc
            await session.refresh(event)
        return event

    async def _window_duplicate(
        self, session: AsyncSession, event: UsageEvent, idempotent: bool
    ) -> str | None:
        """Dedupe key of an equivalent event inside the window, if one exists."""
        if idempotent:
            statement = select(UsageEvent.dedupe_key).where(
                col(UsageEvent.dedupe_key) == event.dedupe_key
            )
        else:
            window = timedelta(seconds=self._settings.dedupe_window_seconds)
            statement = select(UsageEvent.dedupe_key).where(
                col(UsageEvent.subscription_id) == event.subscription_id,
                col(UsageEvent.ticket_id) == event.ticket_id,
                col(UsageEvent.action) == event.action,
                _matches(col(UsageEvent.previous_status), event.previous_status),
                _matches(col(UsageEvent.new_status), event.new_status),
                col(UsageEvent.action_timestamp) > event.action_timestamp - window,
                col(UsageEvent.action_timestamp) < event.action_timestamp + window,
            )
        results = await session.execute(statement.limit(1))
        return results.scalars().first()

    async def _find_duplicate(self, dedupe_key: str) -> UsageEvent:
        async with AsyncSession(self._engine) as session:
            statement = select(UsageEvent).where(col(UsageEvent.dedupe_key) == dedupe_key)
            results = await session.execute(statement)
            existing = results.scalars().first()
        if existing is None:
            raise NotFoundError("usage_event", dedupe_key)
        return existing

    # -- queries ---------------------------------------------------------------

    async def events_for_period(self, subscription_id: str, period: str) -> list[UsageEvent]:
        start, end = period_bounds(period)
        async with AsyncSession(self._engine) as session:
            statement = (
                select(UsageEvent)
                .where(
                    col(UsageEvent.subscription_id) == subscription_id,
                    col(UsageEvent.action_timestamp) >= start,
                    col(UsageEvent.action_timestamp) < end,
                )
                .order_by(col(UsageEvent.action_timestamp), col(UsageEvent.id))
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def ticket_history(self, subscription_id: str, ticket_id: str) -> list[UsageEvent]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(UsageEvent)
                .where(
                    col(UsageEvent.subscription_id) == subscription_id,
                    col(UsageEvent.ticket_id) == ticket_id,
                )
                .order_by(col(UsageEvent.action_timestamp), col(UsageEvent.id))
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def recent_activity(self, subscription_id: str, limit: int = 50) -> list[UsageEvent]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(UsageEvent)
                .where(col(UsageEvent.subscription_id) == subscription_id)
                .order_by(col(UsageEvent.action_timestamp).desc(), col(UsageEvent.id).desc())
                .limit(limit)
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def track_safely(
        self,
        subscription_id: str,
        ticket_id: str,
        previous_status: str | None,
        new_status: str,
        metadata: EventMetadata | None = None,
        occurred_at: datetime | None = None,
        idempotency_key: str | None = None,
    ) -> UsageEvent | None:
        """Record a status change after the ticket action has committed.

        Tracking must never undo the caller's committed work, so failures are
        logged and swallowed; reconciliation repairs any gap left behind.
        """
        try:
            return await self.record_status_change(
                subscription_id,
                ticket_id,
                previous_status,
                new_status,
                metadata=metadata,
                occurred_at=occurred_at,
                idempotency_key=idempotency_key,
            )
        except (TicketMeterError, SQLAlchemyError):
            logger.exception(
                "usage_tracking_failed",
                subscription_id=subscription_id,
                ticket_id=ticket_id,
                new_status=new_status,
            )
            return None
