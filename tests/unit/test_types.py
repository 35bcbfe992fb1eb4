import pytest

from ticketmeter.exceptions import (
    ConfigError,
    ConflictError,
    DuplicateEventError,
    InvalidTransitionError,
    NotFoundError,
    TicketMeterError,
)
from ticketmeter.types import (
    BLOCKED_STATUSES,
    LIVE_STATUSES,
    BillingStatus,
    GateAction,
    SubscriptionStatus,
    UsageAction,
)


@pytest.mark.unit
class TestEnums:
    def test_subscription_status_values(self) -> None:
        assert SubscriptionStatus.TRIAL.value == "trial"
        assert SubscriptionStatus.ACTIVE.value == "active"
        assert SubscriptionStatus.PAST_DUE.value == "past_due"
        assert SubscriptionStatus.CANCELLED.value == "cancelled"
        assert SubscriptionStatus.SUSPENDED.value == "suspended"

    def test_usage_action_values(self) -> None:
        assert [a.value for a in UsageAction] == ["created", "completed", "archived", "deleted"]

    def test_gate_action_values(self) -> None:
        assert GateAction("create") == GateAction.CREATE
        assert GateAction.COMPLETE.value == "complete"

    def test_billing_status_values(self) -> None:
        assert BillingStatus.UNCOLLECTIBLE.value == "uncollectible"

    def test_str_enum_compares_with_column_value(self) -> None:
        assert SubscriptionStatus.ACTIVE == "active"

    def test_live_and_blocked_are_disjoint(self) -> None:
        assert not LIVE_STATUSES & BLOCKED_STATUSES
        assert SubscriptionStatus.PAST_DUE not in LIVE_STATUSES | BLOCKED_STATUSES


@pytest.mark.unit
class TestExceptions:
    def test_base_exception_hierarchy(self) -> None:
        assert issubclass(NotFoundError, TicketMeterError)
        assert issubclass(ConflictError, TicketMeterError)
        assert issubclass(InvalidTransitionError, TicketMeterError)
        assert issubclass(DuplicateEventError, TicketMeterError)
        assert issubclass(ConfigError, TicketMeterError)

    def test_not_found_message(self) -> None:
        err = NotFoundError("plan", "gold")
        assert str(err) == "plan not found: gold"
        assert err.entity == "plan"

    def test_invalid_transition_message(self) -> None:
        err = InvalidTransitionError("billing_record", "paid", "open")
        assert str(err) == "billing_record cannot transition from paid to open"

    def test_exceptions_catchable_as_base(self) -> None:
        with pytest.raises(TicketMeterError):
            raise ConflictError("second live subscription")
