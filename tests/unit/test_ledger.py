"""Unit tests for the usage ledger (DB-backed with SQLite)."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from ticketmeter.billing.ledger import action_for_status
from ticketmeter.exceptions import NotFoundError
from ticketmeter.models.domain import EventMetadata
from ticketmeter.types import UsageAction

if TYPE_CHECKING:
    from ticketmeter.billing.services import BillingServices
    from ticketmeter.models.database import Plan, Subscription

T0 = datetime(2025, 3, 10, 8, 0, 0)
PERIOD = "2025-03"


@pytest.fixture()
async def subscription(services: BillingServices, plans: dict[str, Plan]) -> Subscription:
    return await services.subscriptions.create(
        "cust-1", plan_id=plans["starter"].id, period_start=datetime(2025, 1, 1)
    )


@pytest.mark.unit
class TestActionForStatus:
    @pytest.mark.parametrize(
        ("status", "action"),
        [
            ("open", UsageAction.CREATED),
            ("in_progress", UsageAction.CREATED),
            ("resolved", UsageAction.COMPLETED),
            ("Closed", UsageAction.COMPLETED),
            ("completed", UsageAction.COMPLETED),
            ("archived", UsageAction.ARCHIVED),
            ("deleted", UsageAction.DELETED),
        ],
    )
    def test_status_mapping(self, status: str, action: UsageAction) -> None:
        assert action_for_status(status) == action


@pytest.mark.unit
class TestDedupeKey:
    def test_idempotency_key_wins(self, services: BillingServices) -> None:
        key = services.ledger.dedupe_key(
            "sub-1", "t-1", UsageAction.CREATED, T0, idempotency_key="req-42"
        )
        assert key == "idem:sub-1:req-42"

    def test_same_bucket_same_key(self, services: BillingServices) -> None:
        a = services.ledger.dedupe_key("sub-1", "t-1", UsageAction.CREATED, T0, new_status="open")
        b = services.ledger.dedupe_key(
            "sub-1", "t-1", UsageAction.CREATED, T0 + timedelta(seconds=30), new_status="open"
        )
        assert a == b

    def test_transition_is_part_of_key(self, services: BillingServices) -> None:
        a = services.ledger.dedupe_key(
            "sub-1", "t-1", UsageAction.CREATED, T0, previous_status=None, new_status="open"
        )
        b = services.ledger.dedupe_key(
            "sub-1", "t-1", UsageAction.CREATED, T0, previous_status="resolved", new_status="open"
        )
        assert a != b


@pytest.mark.unit
class TestRecord:
    async def test_record_updates_summary(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        event = await services.ledger.record(
            subscription.id, "t-1", UsageAction.CREATED, new_status="open", occurred_at=T0
        )
        assert event.id is not None
        usage = await services.aggregator.get_usage(subscription.id, PERIOD)
        assert usage.active_tickets == 1
        assert usage.total_tickets == 1

    async def test_ticket_locks_released_after_recording(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        for i in range(50):
            await services.ledger.record(
                subscription.id, f"t-{i}", UsageAction.CREATED, occurred_at=T0
            )
        assert len(services.ledger._ticket_locks) == 0
        assert (await services.aggregator.get_balance(subscription.id)).active_tickets == 50

    async def test_unknown_subscription_raises(self, services: BillingServices) -> None:
        with pytest.raises(NotFoundError):
            await services.ledger.record("missing", "t-1", UsageAction.CREATED, occurred_at=T0)

    async def test_duplicate_within_window_is_noop(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        first = await services.ledger.record(
            subscription.id,
            "t-1",
            UsageAction.CREATED,
            new_status="open",
            occurred_at=T0 + timedelta(seconds=30),
        )
        # Straddles a bucket boundary but stays inside the window
        second = await services.ledger.record(
            subscription.id,
            "t-1",
            UsageAction.CREATED,
            new_status="open",
            occurred_at=T0 + timedelta(seconds=80),
        )
        assert second.id == first.id
        assert len(await services.ledger.ticket_history(subscription.id, "t-1")) == 1
        usage = await services.aggregator.get_usage(subscription.id, PERIOD)
        assert usage.active_tickets == 1

    async def test_repeat_outside_window_is_recorded(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        await services.ledger.record(
            subscription.id, "t-1", UsageAction.CREATED, new_status="open", occurred_at=T0
        )
        await services.ledger.record(
            subscription.id,
            "t-1",
            UsageAction.CREATED,
            new_status="open",
            occurred_at=T0 + timedelta(minutes=5),
        )
        assert len(await services.ledger.ticket_history(subscription.id, "t-1")) == 2
        # Still one ticket
        usage = await services.aggregator.get_usage(subscription.id, PERIOD)
        assert usage.active_tickets == 1

    async def test_idempotency_key_replay(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        first = await services.ledger.record(
            subscription.id,
            "t-1",
            UsageAction.CREATED,
            occurred_at=T0,
            idempotency_key="req-1",
        )
        replay = await services.ledger.record(
            subscription.id,
            "t-1",
            UsageAction.CREATED,
            occurred_at=T0 + timedelta(hours=3),
            idempotency_key="req-1",
        )
        assert replay.id == first.id

    async def test_reopen_cycle_is_not_collapsed(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        sid = subscription.id
        await services.ledger.record_status_change(sid, "t-1", None, "open", occurred_at=T0)
        await services.ledger.record_status_change(
            sid, "t-1", "open", "resolved", occurred_at=T0 + timedelta(seconds=10)
        )
        await services.ledger.record_status_change(
            sid, "t-1", "resolved", "open", occurred_at=T0 + timedelta(seconds=20)
        )
        history = await services.ledger.ticket_history(sid, "t-1")
        assert [e.action for e in history] == ["created", "completed", "created"]
        usage = await services.aggregator.get_usage(sid, PERIOD)
        assert usage.active_tickets == 1
        assert usage.completed_tickets == 0

    async def test_metadata_is_stored(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        event = await services.ledger.record(
            subscription.id,
            "t-1",
            UsageAction.CREATED,
            occurred_at=T0,
            metadata=EventMetadata(source="api", actor_id="agent-7"),
        )
        assert event.metadata_json is not None
        stored = EventMetadata.model_validate_json(event.metadata_json)
        assert stored.actor_id == "agent-7"


@pytest.mark.unit
class TestRestoration:
    async def test_restored_ticket_counts_as_active(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        sid = subscription.id
        await services.ledger.record_status_change(sid, "t-1", None, "open", occurred_at=T0)
        await services.ledger.record_status_change(
            sid, "t-1", "open", "archived", occurred_at=T0 + timedelta(minutes=1)
        )
        usage = await services.aggregator.get_usage(sid, PERIOD)
        assert usage.active_tickets == 0
        assert usage.archived_tickets == 1

        event = await services.ledger.record_restoration(
            sid, "t-1", occurred_at=T0 + timedelta(minutes=2)
        )
        assert event.previous_status == "archived"
        assert EventMetadata.model_validate_json(event.metadata_json or "{}").is_restoration

        usage = await services.aggregator.get_usage(sid, PERIOD)
        assert usage.active_tickets == 1
        assert usage.archived_tickets == 0
        assert usage.total_tickets == 1


@pytest.mark.unit
class TestQueries:
    async def test_events_for_period_excludes_other_months(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        sid = subscription.id
        await services.ledger.record(sid, "t-1", UsageAction.CREATED, occurred_at=T0)
        await services.ledger.record(
            sid, "t-2", UsageAction.CREATED, occurred_at=datetime(2025, 4, 1, 0, 0, 0)
        )
        events = await services.ledger.events_for_period(sid, PERIOD)
        assert [e.ticket_id for e in events] == ["t-1"]

    async def test_recent_activity_newest_first(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        sid = subscription.id
        for i in range(3):
            await services.ledger.record(
                sid, f"t-{i}", UsageAction.CREATED, occurred_at=T0 + timedelta(minutes=i)
            )
        recent = await services.ledger.recent_activity(sid, limit=2)
        assert [e.ticket_id for e in recent] == ["t-2", "t-1"]


@pytest.mark.unit
class TestTrackSafely:
    async def test_failure_is_swallowed(self, services: BillingServices) -> None:
        result = await services.ledger.track_safely("missing", "t-1", None, "open")
        assert result is None

    async def test_success_returns_event(
        self, services: BillingServices, subscription: Subscription
    ) -> None:
        event = await services.ledger.track_safely(
            subscription.id, "t-1", "open", "resolved", occurred_at=T0
        )
        assert event is not None
        assert event.action == UsageAction.COMPLETED
