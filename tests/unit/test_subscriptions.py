"""Unit tests for the subscription lifecycle (DB-backed with SQLite)."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from ticketmeter.billing.subscriptions import (
    ALLOWED_TRANSITIONS,
    check_transition,
    transition_timestamps,
)
from ticketmeter.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from ticketmeter.models.domain import UNLIMITED, CustomLimits, TicketLimits, UsageCounts
from ticketmeter.types import BillingInterval, SubscriptionStatus

if TYPE_CHECKING:
    from ticketmeter.billing.services import BillingServices
    from ticketmeter.models.database import Plan

START = datetime(2025, 3, 1, 9, 0, 0)


@pytest.mark.unit
class TestTransitionTable:
    def test_cancelled_is_terminal(self) -> None:
        assert ALLOWED_TRANSITIONS[SubscriptionStatus.CANCELLED] == frozenset()
        with pytest.raises(InvalidTransitionError):
            check_transition("cancelled", "active")

    def test_active_cannot_return_to_trial(self) -> None:
        with pytest.raises(InvalidTransitionError):
            check_transition("active", "trial")

    def test_past_due_can_recover(self) -> None:
        check_transition("past_due", "active")

    def test_transition_timestamps(self) -> None:
        assert transition_timestamps("trial", "active", START) == {"converted_at": START}
        assert transition_timestamps("active", "suspended", START) == {
            "suspended_at": START,
            "resumed_at": None,
        }
        assert transition_timestamps("suspended", "active", START) == {"resumed_at": START}
        assert transition_timestamps("suspended", "cancelled", START) == {"cancelled_at": START}
        assert transition_timestamps("active", "past_due", START) == {}


@pytest.mark.unit
class TestCreate:
    async def test_create_active_sets_monthly_period(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1", plan_id=plans["starter"].id, period_start=START
        )
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_start == START
        assert sub.current_period_end == datetime(2025, 4, 1, 9, 0, 0)

    async def test_yearly_custom_interval(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1",
            plan_id=plans["starter"].id,
            period_start=START,
            custom_billing_interval=BillingInterval.YEAR,
        )
        assert sub.current_period_end == datetime(2026, 3, 1, 9, 0, 0)

    async def test_second_live_subscription_conflicts(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        with pytest.raises(ConflictError):
            await services.subscriptions.create("cust-1", plan_id=plans["business"].id)

    async def test_new_subscription_allowed_after_cancel(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        first = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        await services.subscriptions.cancel(first.id)
        second = await services.subscriptions.create("cust-1", plan_id=plans["business"].id)
        assert second.id != first.id
        live = await services.subscriptions.get_live_for_customer("cust-1")
        assert live is not None
        assert live.id == second.id

    async def test_requires_plan_or_custom_terms(self, services: BillingServices) -> None:
        with pytest.raises(ValueError):
            await services.subscriptions.create("cust-1")

    async def test_unknown_plan_raises(self, services: BillingServices) -> None:
        with pytest.raises(NotFoundError):
            await services.subscriptions.create("cust-1", plan_id="missing")

    async def test_get_missing_subscription_raises(self, services: BillingServices) -> None:
        with pytest.raises(NotFoundError):
            await services.subscriptions.get("missing")


@pytest.mark.unit
class TestEffectiveLimits:
    async def test_plan_limits_without_override(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["free"].id)
        limits = await services.subscriptions.effective_limits(sub)
        assert limits == TicketLimits(active_tickets=10, completed_tickets=50, total_tickets=60)

    async def test_override_replaces_only_set_fields(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1",
            plan_id=plans["free"].id,
            custom_limits=CustomLimits(active_tickets=25),
        )
        limits = await services.subscriptions.effective_limits(sub)
        assert limits.active_tickets == 25
        assert limits.completed_tickets == 50
        assert limits.total_tickets == 60

    async def test_custom_terms_without_plan_start_unlimited(
        self, services: BillingServices
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1",
            custom_price_cents=50000,
            custom_limits=CustomLimits(total_tickets=10000),
        )
        limits = await services.subscriptions.effective_limits(sub)
        assert limits.total_tickets == 10000
        assert limits.active_tickets == UNLIMITED

    async def test_clearing_override(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1", plan_id=plans["free"].id, custom_limits=CustomLimits(active_tickets=25)
        )
        sub = await services.subscriptions.set_custom_limits(sub.id, None)
        limits = await services.subscriptions.effective_limits(sub)
        assert limits.active_tickets == 10

    async def test_plan_edit_applies_to_next_lookup(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["free"].id)
        await services.catalog.update_limits(
            plans["free"].id,
            TicketLimits(active_tickets=12, completed_tickets=50, total_tickets=62),
        )
        limits = await services.subscriptions.effective_limits(sub)
        assert limits.active_tickets == 12


@pytest.mark.unit
class TestTrials:
    async def test_trial_uses_plan_trial_length(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.start_trial("cust-1", plans["enterprise"].id, now=START)
        assert sub.status == SubscriptionStatus.TRIAL
        assert sub.trial_start == START
        assert sub.trial_end == START + timedelta(days=30)
        assert sub.current_period_end == sub.trial_end

    async def test_trial_falls_back_to_default_length(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        # The free tier has no trial of its own
        sub = await services.subscriptions.start_trial("cust-1", plans["free"].id, now=START)
        assert sub.trial_end == START + timedelta(days=services.settings.default_trial_days)

    async def test_trial_status_days_remaining(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.start_trial("cust-1", plans["starter"].id, now=START)
        status = await services.subscriptions.trial_status(sub.id, now=START + timedelta(days=4))
        assert status.is_trial is True
        assert status.days_remaining == 10
        assert status.expired is False

    async def test_convert_trial(self, services: BillingServices, plans: dict[str, Plan]) -> None:
        sub = await services.subscriptions.start_trial("cust-1", plans["starter"].id, now=START)
        converted_at = START + timedelta(days=10)
        sub = await services.subscriptions.convert_trial(sub.id, now=converted_at)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.converted_at == converted_at
        assert sub.current_period_start == converted_at

    async def test_convert_non_trial_rejected(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.convert_trial(sub.id)

    async def test_extend_trial(self, services: BillingServices, plans: dict[str, Plan]) -> None:
        sub = await services.subscriptions.start_trial("cust-1", plans["starter"].id, now=START)
        extended = await services.subscriptions.extend_trial(sub.id, 7)
        assert extended.trial_end == START + timedelta(days=21)

    async def test_expired_trial_downgrades_to_free(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.start_trial("cust-1", plans["starter"].id, now=START)
        sweep = await services.subscriptions.process_expired_trials(now=START + timedelta(days=15))
        assert sweep.downgraded == [sub.id]
        reloaded = await services.subscriptions.get(sub.id)
        assert reloaded.status == SubscriptionStatus.ACTIVE
        assert reloaded.plan_id == plans["free"].id
        assert reloaded.converted_at is None

    async def test_running_trial_untouched_by_sweep(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        await services.subscriptions.start_trial("cust-1", plans["starter"].id, now=START)
        sweep = await services.subscriptions.process_expired_trials(now=START + timedelta(days=3))
        assert sweep.downgraded == []
        assert sweep.cancelled == []


@pytest.mark.unit
class TestLifecycle:
    async def test_cancel_now(self, services: BillingServices, plans: dict[str, Plan]) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        cancelled = await services.subscriptions.cancel(sub.id, now=START)
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == START

    async def test_cancel_twice_rejected(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        await services.subscriptions.cancel(sub.id)
        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.cancel(sub.id)

    async def test_cancel_at_period_end_lapses_on_advance(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1", plan_id=plans["starter"].id, period_start=START
        )
        flagged = await services.subscriptions.cancel(sub.id, at_period_end=True)
        assert flagged.status == SubscriptionStatus.ACTIVE
        assert flagged.cancel_at_period_end is True

        lapsed = await services.subscriptions.advance_period(sub.id)
        assert lapsed.status == SubscriptionStatus.CANCELLED
        assert lapsed.cancelled_at == datetime(2025, 4, 1, 9, 0, 0)

    async def test_advance_period_renews(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1", plan_id=plans["starter"].id, period_start=START
        )
        renewed = await services.subscriptions.advance_period(sub.id)
        assert renewed.current_period_start == datetime(2025, 4, 1, 9, 0, 0)
        assert renewed.current_period_end == datetime(2025, 5, 1, 9, 0, 0)

    async def test_advance_is_skipped_once_past_cycle_end(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create(
            "cust-1", plan_id=plans["starter"].id, period_start=START
        )
        boundary = datetime(2025, 4, 1, 9, 0, 0)
        await services.subscriptions.advance_period(sub.id, cycle_end=boundary)
        again = await services.subscriptions.advance_period(sub.id, cycle_end=boundary)
        assert again.current_period_start == boundary
        assert again.current_period_end == datetime(2025, 5, 1, 9, 0, 0)

    async def test_status_update_records_conversion_and_suspension(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.start_trial("cust-1", plans["starter"].id, now=START)
        converted_on = START + timedelta(days=3)
        suspended_on = START + timedelta(days=20)
        await services.subscriptions.update_status(
            sub.id, SubscriptionStatus.ACTIVE, now=converted_on
        )
        suspended = await services.subscriptions.update_status(
            sub.id, SubscriptionStatus.SUSPENDED, now=suspended_on
        )
        assert suspended.converted_at == converted_on
        assert suspended.suspended_at == suspended_on
        assert suspended.resumed_at is None
        resumed = await services.subscriptions.update_status(
            sub.id, SubscriptionStatus.ACTIVE, now=suspended_on + timedelta(days=2)
        )
        assert resumed.suspended_at == suspended_on
        assert resumed.resumed_at == suspended_on + timedelta(days=2)
        assert resumed.converted_at == converted_on

    async def test_same_status_update_is_noop(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        again = await services.subscriptions.update_status(sub.id, SubscriptionStatus.ACTIVE)
        assert again.updated_at == sub.updated_at

    async def test_past_due_round_trip(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        await services.subscriptions.update_status(sub.id, SubscriptionStatus.PAST_DUE)
        recovered = await services.subscriptions.update_status(sub.id, SubscriptionStatus.ACTIVE)
        assert recovered.status == SubscriptionStatus.ACTIVE

    async def test_change_plan(self, services: BillingServices, plans: dict[str, Plan]) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        upgraded = await services.subscriptions.change_plan(sub.id, plans["business"].id)
        assert upgraded.plan_id == plans["business"].id

    async def test_purge_removes_children(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        await services.ledger.record(sub.id, "t-1", "created", new_status="open")
        await services.records.create(sub.id, amount_due=2900, external_invoice_id="in_1")
        await services.subscriptions.purge(sub.id)
        with pytest.raises(NotFoundError):
            await services.subscriptions.get(sub.id)
        assert await services.records.get_by_invoice("in_1") is None
        assert await services.aggregator.get_balance(sub.id) == UsageCounts()


@pytest.mark.unit
class TestProviderEvents:
    async def test_newer_event_applies(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        applied = await services.subscriptions.apply_provider_event(
            sub.id, occurred_at=START, status=SubscriptionStatus.PAST_DUE
        )
        assert applied is True
        assert (await services.subscriptions.get(sub.id)).status == SubscriptionStatus.PAST_DUE

    async def test_older_event_is_discarded(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        await services.subscriptions.apply_provider_event(
            sub.id, occurred_at=START + timedelta(hours=1), status=SubscriptionStatus.PAST_DUE
        )
        # A delayed "active" from before the past_due must not win
        applied = await services.subscriptions.apply_provider_event(
            sub.id, occurred_at=START, status=SubscriptionStatus.ACTIVE
        )
        assert applied is False
        assert (await services.subscriptions.get(sub.id)).status == SubscriptionStatus.PAST_DUE

    async def test_replayed_event_is_stale(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        assert await services.subscriptions.apply_provider_event(
            sub.id, occurred_at=START, cancel_at_period_end=True
        )
        assert not await services.subscriptions.apply_provider_event(
            sub.id, occurred_at=START, cancel_at_period_end=True
        )

    async def test_trial_activation_records_conversion(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.start_trial("cust-1", plans["starter"].id, now=START)
        moment = START + timedelta(days=14)
        await services.subscriptions.apply_provider_event(
            sub.id, occurred_at=moment, status=SubscriptionStatus.ACTIVE
        )
        reloaded = await services.subscriptions.get(sub.id)
        assert reloaded.status == SubscriptionStatus.ACTIVE
        assert reloaded.converted_at == moment

    async def test_forbidden_transition_raises(
        self, services: BillingServices, plans: dict[str, Plan]
    ) -> None:
        sub = await services.subscriptions.create("cust-1", plan_id=plans["starter"].id)
        await services.subscriptions.cancel(sub.id)
        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.apply_provider_event(
                sub.id, occurred_at=START, status=SubscriptionStatus.ACTIVE
            )
