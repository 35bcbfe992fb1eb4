"""Payment-provider event processing.

Provider deliveries are at-least-once and may arrive out of order. Every
handler here is therefore idempotent: records are keyed by provider ids,
status replays are no-ops, and subscription updates older than the last
applied event are discarded.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, field_validator

from ticketmeter.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from ticketmeter.models.domain import LineItem
from ticketmeter.types import BillingStatus, SubscriptionStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ticketmeter.billing.plans import PlanCatalog
    from ticketmeter.billing.records import BillingRecordManager
    from ticketmeter.billing.subscriptions import SubscriptionManager
    from ticketmeter.models.database import BillingRecord

logger = structlog.get_logger(__name__)

PROVIDER_SUBSCRIPTION_STATUS: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIAL,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "paused": SubscriptionStatus.SUSPENDED,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def from_epoch(value: int | float | None) -> datetime | None:
    """Provider epoch seconds to naive UTC."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC).replace(tzinfo=None)


class ProviderEvent(BaseModel):
    id: str
    type: str
    created: datetime
    data: dict[str, Any] = {}

    @field_validator("created", mode="before")
    @classmethod
    def _epoch(cls, value: Any) -> Any:
        if isinstance(value, int | float):
            return from_epoch(value)
        return value


class SubscriptionPayload(BaseModel):
    id: str
    customer: str | None = None
    customer_id: str | None = None  # our customer reference, carried in provider metadata
    plan: str | None = None  # plan slug
    status: str = "active"
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool | None = None
    trial_start: int | None = None
    trial_end: int | None = None


class InvoicePayload(BaseModel):
    id: str
    subscription: str  # provider subscription id
    number: str | None = None
    status: str = BillingStatus.DRAFT.value
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "usd"
    created: int | None = None
    due_date: int | None = None
    paid_at: int | None = None
    payment_intent: str | None = None
    attempt_count: int | None = None
    failure_reason: str | None = None
    billing_reason: str | None = None
    # Billing cycle the invoice covers; period_end is the renewal boundary
    period_start: int | None = None
    period_end: int | None = None
    lines: list[LineItem] = []


class ProviderEventProcessor:
    """Maps provider webhook events onto subscriptions and billing records."""

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        records: BillingRecordManager,
        catalog: PlanCatalog,
    ) -> None:
        self._subscriptions = subscriptions
        self._records = records
        self._catalog = catalog
        self._handlers: dict[str, Callable[[ProviderEvent], Awaitable[str]]] = {
            "customer.subscription.created": self._subscription_upserted,
            "customer.subscription.updated": self._subscription_upserted,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.created": self._invoice_upserted,
            "invoice.finalized": self._invoice_upserted,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_failed": self._invoice_payment_failed,
            "invoice.voided": self._invoice_voided,
            "invoice.marked_uncollectible": self._invoice_uncollectible,
        }

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def process(self, event: ProviderEvent) -> str:
        """Apply one event and return its outcome.

        Outcomes: ``applied``, ``stale``, ``ignored`` (unknown type or
        unknown subscription) and ``rejected`` (a transition the state
        machines forbid). None of them should make the provider retry.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug("provider_event_unhandled", event_id=event.id, event_type=event.type)
            return "ignored"
        log = logger.bind(event_id=event.id, event_type=event.type)
        try:
            outcome = await handler(event)
        except (InvalidTransitionError, ConflictError) as exc:
            log.warning("provider_event_rejected", error=str(exc))
            return "rejected"
        except NotFoundError as exc:
            log.warning("provider_event_unmatched", error=str(exc))
            return "ignored"
        except ValueError as exc:
            log.warning("provider_event_invalid", error=str(exc))
            return "rejected"
        log.info("provider_event_processed", outcome=outcome)
        return outcome

    # -- subscriptions -----------------------------------------------------------

    async def _subscription_upserted(self, event: ProviderEvent) -> str:
        payload = SubscriptionPayload.model_validate(event.data)
        status = PROVIDER_SUBSCRIPTION_STATUS.get(payload.status)
        if status is None:
            logger.warning("provider_status_unknown", status=payload.status)
            return "ignored"
        plan_id = None
        if payload.plan:
            plan_id = (await self._catalog.get_by_slug(payload.plan)).id

        existing = await self._subscriptions.get_by_external_id(payload.id)
        if existing is None:
            customer_id = payload.customer_id or payload.customer
            if customer_id is None:
                raise NotFoundError("customer", payload.id)
            existing = await self._subscriptions.create(
                customer_id,
                plan_id=plan_id,
                status=status,
                period_start=from_epoch(payload.current_period_start) or event.created,
                external_subscription_id=payload.id,
                external_customer_id=payload.customer,
            )

        applied = await self._subscriptions.apply_provider_event(
            existing.id,
            occurred_at=event.created,
            status=status,
            period_start=from_epoch(payload.current_period_start),
            period_end=from_epoch(payload.current_period_end),
            cancel_at_period_end=payload.cancel_at_period_end,
            plan_id=plan_id,
        )
        return "applied" if applied else "stale"

    async def _subscription_deleted(self, event: ProviderEvent) -> str:
        payload = SubscriptionPayload.model_validate(event.data)
        existing = await self._subscriptions.get_by_external_id(payload.id)
        if existing is None:
            raise NotFoundError("subscription", payload.id)
        if existing.status == SubscriptionStatus.CANCELLED:
            return "applied"
        applied = await self._subscriptions.apply_provider_event(
            existing.id, occurred_at=event.created, status=SubscriptionStatus.CANCELLED
        )
        return "applied" if applied else "stale"

    # -- invoices ----------------------------------------------------------------

    async def _ensure_record(self, payload: InvoicePayload, status: BillingStatus) -> BillingRecord:
        subscription = await self._subscriptions.get_by_external_id(payload.subscription)
        if subscription is None:
            raise NotFoundError("subscription", payload.subscription)
        return await self._records.create(
            subscription.id,
            amount_due=payload.amount_due,
            external_invoice_id=payload.id,
            status=status,
            currency=payload.currency,
            billing_date=from_epoch(payload.created),
            due_date=from_epoch(payload.due_date),
            invoice_number=payload.number,
            external_payment_intent_id=payload.payment_intent,
            line_items=payload.lines,
        )

    async def _invoice_upserted(self, event: ProviderEvent) -> str:
        payload = InvoicePayload.model_validate(event.data)
        status = BillingStatus(payload.status)
        record = await self._ensure_record(payload, status)
        if record.status != status:
            await self._records.update_status(record.id, status)
        return "applied"

    async def _invoice_paid(self, event: ProviderEvent) -> str:
        payload = InvoicePayload.model_validate(event.data)
        record = await self._ensure_record(payload, BillingStatus.OPEN)
        if record.status != BillingStatus.PAID:
            await self._records.update_status(
                record.id,
                BillingStatus.PAID,
                amount_paid=payload.amount_paid or payload.amount_due,
                paid_at=from_epoch(payload.paid_at) or event.created,
            )
        if payload.billing_reason == "subscription_cycle":
            # Renews only if the period still ends at this invoice's boundary
            cycle_end = from_epoch(payload.period_end) or from_epoch(payload.created)
            await self._subscriptions.advance_period(
                record.subscription_id, cycle_end=cycle_end or event.created
            )
        return "applied"

    async def _invoice_payment_failed(self, event: ProviderEvent) -> str:
        payload = InvoicePayload.model_validate(event.data)
        if payload.attempt_count is None:
            # Without the provider's counter a replay cannot be told from a new attempt
            msg = f"payment_failed for invoice {payload.id} carries no attempt_count"
            raise ValueError(msg)
        record = await self._ensure_record(payload, BillingStatus.OPEN)
        if record.status == BillingStatus.DRAFT:
            record = await self._records.update_status(record.id, BillingStatus.OPEN)
        await self._records.record_attempt(
            record.id,
            failure_reason=payload.failure_reason,
            attempt_number=payload.attempt_count,
        )
        return "applied"

    async def _invoice_voided(self, event: ProviderEvent) -> str:
        payload = InvoicePayload.model_validate(event.data)
        record = await self._ensure_record(payload, BillingStatus.VOID)
        await self._records.update_status(record.id, BillingStatus.VOID, voided_at=event.created)
        return "applied"

    async def _invoice_uncollectible(self, event: ProviderEvent) -> str:
        payload = InvoicePayload.model_validate(event.data)
        record = await self._ensure_record(payload, BillingStatus.UNCOLLECTIBLE)
        await self._records.update_status(record.id, BillingStatus.UNCOLLECTIBLE)
        return "applied"
