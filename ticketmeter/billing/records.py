"""Billing record manager: mirrors invoice and payment state from the payment provider."""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, true, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ticketmeter.billing.periods import period_bounds, period_key, previous_period
from ticketmeter.exceptions import InvalidTransitionError, NotFoundError
from ticketmeter.models.database import BillingRecord, Subscription, _utc_now
from ticketmeter.models.domain import BillingSummary, MonthlyRevenue, RevenueStats
from ticketmeter.types import BillingStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.models.domain import LineItem

logger = structlog.get_logger(__name__)

_B = BillingStatus

ALLOWED_TRANSITIONS: dict[BillingStatus, frozenset[BillingStatus]] = {
    _B.DRAFT: frozenset({_B.OPEN, _B.PAID, _B.VOID, _B.UNCOLLECTIBLE}),
    _B.OPEN: frozenset({_B.PAID, _B.VOID, _B.UNCOLLECTIBLE}),
    _B.UNCOLLECTIBLE: frozenset({_B.PAID, _B.VOID}),
    _B.PAID: frozenset(),
    _B.VOID: frozenset(),
}

_PENDING = (_B.DRAFT.value, _B.OPEN.value)


class BillingRecordManager:
    """Owns the billing_records table.

    Provider webhooks are delivered at least once and out of order, so every
    write here is idempotent: creation is keyed by the provider invoice id,
    a repeated status is a no-op, and attempt counts only move forward.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(
        self,
        subscription_id: str,
        amount_due: int,
        external_invoice_id: str | None = None,
        status: BillingStatus = BillingStatus.DRAFT,
        amount_paid: int | None = None,
        currency: str = "usd",
        billing_date: datetime | None = None,
        due_date: datetime | None = None,
        invoice_number: str | None = None,
        external_payment_intent_id: str | None = None,
        line_items: list[LineItem] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BillingRecord:
        """Insert a record, or return the existing one for the same provider invoice.

        A record created as paid without ``amount_paid`` is paid in full.
        """
        status = BillingStatus(status)
        if amount_paid is None:
            amount_paid = amount_due if status == BillingStatus.PAID else 0
        if amount_due < 0 or amount_paid < 0:
            msg = "Billing amounts cannot be negative"
            raise ValueError(msg)
        if external_invoice_id is not None:
            existing = await self.get_by_invoice(external_invoice_id)
            if existing is not None:
                logger.info(
                    "billing_record_exists",
                    record_id=existing.id,
                    external_invoice_id=external_invoice_id,
                )
                return existing

        now = _utc_now()
        record = BillingRecord(
            subscription_id=subscription_id,
            external_invoice_id=external_invoice_id,
            external_payment_intent_id=external_payment_intent_id,
            invoice_number=invoice_number,
            status=status.value,
            amount_due=amount_due,
            amount_paid=amount_paid,
            amount_remaining=max(0, amount_due - amount_paid),
            currency=currency,
            billing_date=billing_date or now,
            due_date=due_date,
            line_items_json=(
                json.dumps([item.model_dump() for item in line_items]) if line_items else None
            ),
            metadata_json=json.dumps(metadata) if metadata else None,
        )
        if status == BillingStatus.PAID:
            record.paid_at = billing_date or now
        elif status in (BillingStatus.VOID, BillingStatus.UNCOLLECTIBLE):
            record.amount_remaining = 0
            if status == BillingStatus.VOID:
                record.voided_at = now

        async with AsyncSession(self._engine) as session:
            if await session.get(Subscription, subscription_id) is None:
                raise NotFoundError("subscription", subscription_id)
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if external_invoice_id is None:
                    raise
                # Lost a race with a concurrent delivery of the same invoice
                existing = await self.get_by_invoice(external_invoice_id)
                if existing is None:
                    raise
                return existing
            await session.refresh(record)
        logger.info(
            "billing_record_created",
            record_id=record.id,
            subscription_id=subscription_id,
            status=record.status,
            amount_due=amount_due,
        )
        return record

    async def get(self, record_id: str) -> BillingRecord:
        async with AsyncSession(self._engine) as session:
            record = await session.get(BillingRecord, record_id)
        if record is None:
            raise NotFoundError("billing_record", record_id)
        return record

    async def get_by_invoice(self, external_invoice_id: str) -> BillingRecord | None:
        async with AsyncSession(self._engine) as session:
            statement = select(BillingRecord).where(
                col(BillingRecord.external_invoice_id) == external_invoice_id
            )
            results = await session.execute(statement)
            return results.scalars().first()

    async def update_status(
        self,
        record_id: str,
        status: BillingStatus,
        amount_paid: int | None = None,
        paid_at: datetime | None = None,
        voided_at: datetime | None = None,
    ) -> BillingRecord:
        """Move a record to ``status``.

        Replaying the current status changes nothing. A transition out of a
        terminal status (paid, void) raises InvalidTransitionError.
        """
        target = BillingStatus(status)
        async with AsyncSession(self._engine) as session:
            record = await session.get(BillingRecord, record_id)
            if record is None:
                raise NotFoundError("billing_record", record_id)
            if record.status == target:
                return record
            if target not in ALLOWED_TRANSITIONS[BillingStatus(record.status)]:
                logger.warning(
                    "billing_transition_rejected",
                    record_id=record_id,
                    current=record.status,
                    target=target,
                )
                raise InvalidTransitionError("billing_record", record.status, target)

            now = _utc_now()
            previous = record.status
            record.status = target.value
            if target == BillingStatus.PAID:
                record.amount_paid = record.amount_due if amount_paid is None else amount_paid
                record.amount_remaining = max(0, record.amount_due - record.amount_paid)
                record.paid_at = paid_at or now
            elif target in (BillingStatus.VOID, BillingStatus.UNCOLLECTIBLE):
                record.amount_remaining = 0
                if target == BillingStatus.VOID:
                    record.voided_at = voided_at or now
            record.updated_at = now
            session.add(record)
            await session.commit()
            await session.refresh(record)
        logger.info(
            "billing_status_updated",
            record_id=record_id,
            previous=previous,
            status=target,
            amount_paid=record.amount_paid,
        )
        return record

    async def update_status_by_invoice(
        self,
        external_invoice_id: str,
        status: BillingStatus,
        amount_paid: int | None = None,
        paid_at: datetime | None = None,
    ) -> BillingRecord:
        record = await self.get_by_invoice(external_invoice_id)
        if record is None:
            raise NotFoundError("billing_record", external_invoice_id)
        return await self.update_status(record.id, status, amount_paid=amount_paid, paid_at=paid_at)

    async def record_attempt(
        self,
        record_id: str,
        failure_reason: str | None = None,
        attempt_number: int | None = None,
    ) -> BillingRecord:
        """Count a failed collection attempt.

        With ``attempt_number`` (the provider's own counter) the stored count
        is raised to that number only if it is higher, so a replayed webhook
        is a no-op. Without it the count is incremented atomically.
        """
        if attempt_number is not None:
            values: dict[str, Any] = {"attempt_count": attempt_number}
            condition = col(BillingRecord.attempt_count) < attempt_number
        else:
            values = {"attempt_count": col(BillingRecord.attempt_count) + 1}
            condition = true()
        values["updated_at"] = _utc_now()
        if failure_reason is not None:
            values["failure_reason"] = failure_reason

        statement = (
            update(BillingRecord)
            .where(col(BillingRecord.id) == record_id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with AsyncSession(self._engine) as session:
            result = await session.execute(statement)
            await session.commit()
        record = await self.get(record_id)
        if result.rowcount == 0:
            logger.info(
                "billing_attempt_duplicate",
                record_id=record_id,
                attempt_number=attempt_number,
                attempt_count=record.attempt_count,
            )
        else:
            logger.info(
                "billing_attempt_recorded",
                record_id=record_id,
                attempt_count=record.attempt_count,
                failure_reason=failure_reason,
            )
        return record

    # -- queries ---------------------------------------------------------------

    async def history(self, subscription_id: str, limit: int = 50) -> list[BillingRecord]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(BillingRecord)
                .where(col(BillingRecord.subscription_id) == subscription_id)
                .order_by(col(BillingRecord.billing_date).desc())
                .limit(limit)
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def find_pending(self, as_of: datetime | None = None) -> list[BillingRecord]:
        """Draft or open records, optionally only those already past due at ``as_of``."""
        statement = select(BillingRecord).where(col(BillingRecord.status).in_(_PENDING))
        if as_of is not None:
            statement = statement.where(
                col(BillingRecord.due_date).is_not(None), col(BillingRecord.due_date) <= as_of
            )
        async with AsyncSession(self._engine) as session:
            results = await session.execute(statement.order_by(col(BillingRecord.due_date)))
            return list(results.scalars().all())

    async def find_failed(self) -> list[BillingRecord]:
        """Open records with at least one failed collection attempt."""
        async with AsyncSession(self._engine) as session:
            statement = (
                select(BillingRecord)
                .where(
                    col(BillingRecord.status) == BillingStatus.OPEN.value,
                    col(BillingRecord.attempt_count) > 0,
                )
                .order_by(col(BillingRecord.attempt_count).desc())
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def get_revenue_stats(self, start: datetime, end: datetime) -> RevenueStats:
        """Revenue paid in ``[start, end)`` plus pending and failed records billed in it.

        Only paid records earn revenue, recognized at their paid date.
        """
        in_range = (
            col(BillingRecord.billing_date) >= start,
            col(BillingRecord.billing_date) < end,
        )
        async with AsyncSession(self._engine) as session:
            paid = await session.execute(
                select(
                    func.coalesce(func.sum(BillingRecord.amount_paid), 0),
                    func.count(col(BillingRecord.id)),
                ).where(
                    col(BillingRecord.status) == BillingStatus.PAID.value,
                    col(BillingRecord.paid_at) >= start,
                    col(BillingRecord.paid_at) < end,
                )
            )
            total_revenue, paid_invoices = paid.one()
            pending = await session.execute(
                select(func.coalesce(func.sum(BillingRecord.amount_remaining), 0)).where(
                    *in_range, col(BillingRecord.status).in_(_PENDING)
                )
            )
            failed = await session.execute(
                select(func.count(col(BillingRecord.id))).where(
                    *in_range,
                    col(BillingRecord.status) == BillingStatus.OPEN.value,
                    col(BillingRecord.attempt_count) > 0,
                )
            )
            return RevenueStats(
                start=start,
                end=end,
                total_revenue=int(total_revenue),
                paid_invoices=int(paid_invoices),
                pending_revenue=int(pending.scalar_one()),
                failed_payments=int(failed.scalar_one()),
            )

    async def get_monthly_revenue(self, year: int) -> list[MonthlyRevenue]:
        """Paid revenue for each month of ``year``, by paid date; months with none report zero."""
        start, end = datetime(year, 1, 1), datetime(year + 1, 1, 1)
        async with AsyncSession(self._engine) as session:
            statement = select(BillingRecord.paid_at, BillingRecord.amount_paid).where(
                col(BillingRecord.status) == BillingStatus.PAID.value,
                col(BillingRecord.paid_at) >= start,
                col(BillingRecord.paid_at) < end,
            )
            results = await session.execute(statement)
            rows = results.all()

        months = {m: MonthlyRevenue(month=m) for m in range(1, 13)}
        for paid_at, amount in rows:
            bucket = months[paid_at.month]
            bucket.revenue += amount
            bucket.invoice_count += 1
        return list(months.values())

    async def paid_revenue_by_subscription(self, as_of: datetime) -> dict[str, int]:
        """Total paid cents per subscription up to ``as_of`` (exclusive)."""
        async with AsyncSession(self._engine) as session:
            statement = (
                select(BillingRecord.subscription_id, func.sum(BillingRecord.amount_paid))
                .where(
                    col(BillingRecord.status) == BillingStatus.PAID.value,
                    col(BillingRecord.paid_at) < as_of,
                )
                .group_by(col(BillingRecord.subscription_id))
            )
            results = await session.execute(statement)
            return {sid: int(total or 0) for sid, total in results.all()}

    async def billing_summary(self, as_of: datetime | None = None) -> BillingSummary:
        """Dashboard rollup for the month containing ``as_of`` and the one before it."""
        as_of = as_of or _utc_now()
        period = period_key(as_of)
        current = await self.get_revenue_stats(*period_bounds(period))
        previous = await self.get_revenue_stats(*period_bounds(previous_period(period)))
        return BillingSummary(
            as_of=as_of,
            current_month=current,
            previous_month=previous,
            pending_payments=len(await self.find_pending()),
            failed_payments=len(await self.find_failed()),
            monthly_trend=await self.get_monthly_revenue(as_of.year),
        )
