"""Plan catalog: tier definitions and the queryable plan table."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from ticketmeter.exceptions import ConflictError, NotFoundError
from ticketmeter.models.database import Plan, _utc_now
from ticketmeter.models.domain import UNLIMITED, TicketLimits
from ticketmeter.types import BillingInterval

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = structlog.get_logger(__name__)

_CENT = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class PlanTier:
    """Seed definition for a catalog plan."""

    slug: str
    name: str
    price_cents: int
    active_ticket_limit: int
    completed_ticket_limit: int
    total_ticket_limit: int
    trial_days: int
    sort_order: int
    description: str
    billing_interval: BillingInterval = BillingInterval.MONTH


DEFAULT_TIERS: tuple[PlanTier, ...] = (
    PlanTier(
        slug="free",
        name="Free",
        price_cents=0,
        active_ticket_limit=10,
        completed_ticket_limit=50,
        total_ticket_limit=60,
        trial_days=0,
        sort_order=1,
        description="Perfect for small teams getting started",
    ),
    PlanTier(
        slug="starter",
        name="Starter",
        price_cents=2900,
        active_ticket_limit=50,
        completed_ticket_limit=500,
        total_ticket_limit=550,
        trial_days=14,
        sort_order=2,
        description="Great for growing teams",
    ),
    PlanTier(
        slug="professional",
        name="Professional",
        price_cents=7900,
        active_ticket_limit=200,
        completed_ticket_limit=2000,
        total_ticket_limit=2200,
        trial_days=14,
        sort_order=3,
        description="Perfect for professional teams",
    ),
    PlanTier(
        slug="business",
        name="Business",
        price_cents=14900,
        active_ticket_limit=500,
        completed_ticket_limit=5000,
        total_ticket_limit=5500,
        trial_days=14,
        sort_order=4,
        description="Ideal for larger organizations",
    ),
    PlanTier(
        slug="enterprise",
        name="Enterprise",
        price_cents=29900,
        active_ticket_limit=UNLIMITED,
        completed_ticket_limit=UNLIMITED,
        total_ticket_limit=UNLIMITED,
        trial_days=30,
        sort_order=5,
        description="Complete solution for enterprises",
    ),
)


def plan_limits(plan: Plan) -> TicketLimits:
    """Return a plan's three ticket limits."""
    return TicketLimits(
        active_tickets=plan.active_ticket_limit,
        completed_tickets=plan.completed_ticket_limit,
        total_tickets=plan.total_ticket_limit,
    )


def monthly_amount(price_cents: int, billing_interval: str) -> Decimal:
    """Monthly-normalized price in major units, rounded to cents (annual / 12)."""
    amount = Decimal(price_cents) / 100
    if billing_interval == BillingInterval.YEAR:
        amount = amount / 12
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def _check_limit(name: str, value: int) -> None:
    if value < UNLIMITED:
        msg = f"{name} must be -1 (unlimited) or a non-negative count, got {value}"
        raise ValueError(msg)


class PlanCatalog:
    """Reads and administers the plan table.

    Plans are never deleted, only deactivated, so historical subscriptions
    keep resolving to the plan they were sold on.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get_plan(self, plan_id: str) -> Plan:
        async with AsyncSession(self._engine) as session:
            plan = await session.get(Plan, plan_id)
        if plan is None:
            raise NotFoundError("plan", plan_id)
        return plan

    async def get_by_slug(self, slug: str) -> Plan:
        async with AsyncSession(self._engine) as session:
            statement = select(Plan).where(col(Plan.slug) == slug)
            results = await session.execute(statement)
            plan = results.scalars().first()
        if plan is None:
            raise NotFoundError("plan", slug)
        return plan

    async def find_by_slug(self, slug: str) -> Plan | None:
        try:
            return await self.get_by_slug(slug)
        except NotFoundError:
            return None

    async def list_active(self) -> list[Plan]:
        """Active plans, cheapest tier first."""
        async with AsyncSession(self._engine) as session:
            statement = (
                select(Plan)
                .where(col(Plan.is_active).is_(True))
                .order_by(col(Plan.sort_order), col(Plan.price_cents))
            )
            results = await session.execute(statement)
            return list(results.scalars().all())

    async def create_plan(
        self,
        slug: str,
        name: str,
        price_cents: int,
        limits: TicketLimits,
        billing_interval: BillingInterval = BillingInterval.MONTH,
        trial_days: int = 0,
        currency: str = "usd",
        sort_order: int = 0,
        description: str | None = None,
    ) -> Plan:
        if price_cents < 0:
            msg = "price_cents cannot be negative"
            raise ValueError(msg)
        _check_limit("active_tickets", limits.active_tickets)
        _check_limit("completed_tickets", limits.completed_tickets)
        _check_limit("total_tickets", limits.total_tickets)

        if await self.find_by_slug(slug) is not None:
            msg = f"Plan slug already exists: {slug}"
            raise ConflictError(msg)

        plan = Plan(
            slug=slug,
            name=name,
            price_cents=price_cents,
            currency=currency,
            billing_interval=BillingInterval(billing_interval).value,
            active_ticket_limit=limits.active_tickets,
            completed_ticket_limit=limits.completed_tickets,
            total_ticket_limit=limits.total_tickets,
            trial_days=trial_days,
            sort_order=sort_order,
            description=description,
        )
        async with AsyncSession(self._engine) as session:
            session.add(plan)
            await session.commit()
            await session.refresh(plan)
        logger.info("plan_created", plan_id=plan.id, slug=slug, price_cents=price_cents)
        return plan

    async def update_limits(self, plan_id: str, limits: TicketLimits) -> Plan:
        """Change a plan's limits; takes effect on the next gate decision."""
        _check_limit("active_tickets", limits.active_tickets)
        _check_limit("completed_tickets", limits.completed_tickets)
        _check_limit("total_tickets", limits.total_tickets)
        async with AsyncSession(self._engine) as session:
            plan = await session.get(Plan, plan_id)
            if plan is None:
                raise NotFoundError("plan", plan_id)
            plan.active_ticket_limit = limits.active_tickets
            plan.completed_ticket_limit = limits.completed_tickets
            plan.total_ticket_limit = limits.total_tickets
            plan.updated_at = _utc_now()
            session.add(plan)
            await session.commit()
            await session.refresh(plan)
        logger.info("plan_limits_updated", plan_id=plan_id, **limits.model_dump())
        return plan

    async def deactivate(self, plan_id: str) -> Plan:
        async with AsyncSession(self._engine) as session:
            plan = await session.get(Plan, plan_id)
            if plan is None:
                raise NotFoundError("plan", plan_id)
            plan.is_active = False
            plan.updated_at = _utc_now()
            session.add(plan)
            await session.commit()
            await session.refresh(plan)
        logger.info("plan_deactivated", plan_id=plan_id)
        return plan

    async def seed_defaults(self) -> list[Plan]:
        """Insert any default tier missing from the table. Safe to re-run."""
        async with AsyncSession(self._engine) as session:
            results = await session.execute(select(Plan.slug))
            existing = set(results.scalars().all())
            for tier in DEFAULT_TIERS:
                if tier.slug in existing:
                    continue
                session.add(
                    Plan(
                        slug=tier.slug,
                        name=tier.name,
                        price_cents=tier.price_cents,
                        billing_interval=tier.billing_interval.value,
                        active_ticket_limit=tier.active_ticket_limit,
                        completed_ticket_limit=tier.completed_ticket_limit,
                        total_ticket_limit=tier.total_ticket_limit,
                        trial_days=tier.trial_days,
                        sort_order=tier.sort_order,
                        description=tier.description,
                    )
                )
            await session.commit()
        logger.info("plans_seeded", added=len({t.slug for t in DEFAULT_TIERS} - existing))
        return await self.list_active()

    async def suggest_upgrades(self, current: Plan | None) -> list[Plan]:
        """Active plans priced above ``current`` per month, cheapest first."""
        plans = await self.list_active()
        if current is None:
            floor = Decimal(-1)
        else:
            floor = monthly_amount(current.price_cents, current.billing_interval)
        upgrades = [
            p
            for p in plans
            if (current is None or p.id != current.id)
            and monthly_amount(p.price_cents, p.billing_interval) > floor
        ]
        return sorted(
            upgrades,
            key=lambda p: (monthly_amount(p.price_cents, p.billing_interval), p.sort_order),
        )
