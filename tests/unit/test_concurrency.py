"""Concurrent admission and recording against a file-backed SQLite database."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from ticketmeter.billing.services import build_services
from ticketmeter.models.domain import CustomLimits
from ticketmeter.types import GateAction, UsageAction

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.billing.services import BillingServices
    from ticketmeter.config.settings import Settings

T0 = datetime(2025, 3, 10, 8, 0, 0)
PERIOD = "2025-03"
LIMIT = 5
REQUESTS = 20


async def _limited_subscription(services: BillingServices) -> str:
    plans = {plan.slug: plan for plan in await services.catalog.seed_defaults()}
    sub = await services.subscriptions.create(
        "cust-1",
        plan_id=plans["starter"].id,
        custom_limits=CustomLimits(active_tickets=LIMIT),
    )
    return sub.id


async def _admit_all(services: BillingServices, subscription_id: str) -> list[bool]:
    results = await asyncio.gather(
        *(
            services.gate.admit(
                subscription_id,
                GateAction.CREATE,
                f"t-{i}",
                new_status="open",
                occurred_at=T0 + timedelta(seconds=i),
            )
            for i in range(REQUESTS)
        )
    )
    return [decision.allowed for decision, _ in results]


@pytest.mark.unit
class TestStrictMode:
    async def test_exactly_limit_admitted(
        self, file_engine: AsyncEngine, settings_factory: Callable[..., Settings]
    ) -> None:
        services = build_services(file_engine, settings_factory(enforcement_mode="strict"))
        sid = await _limited_subscription(services)

        allowed = await _admit_all(services, sid)

        assert sum(allowed) == LIMIT
        usage = await services.aggregator.get_usage(sid, PERIOD)
        assert usage.active_tickets == LIMIT
        assert usage == await services.aggregator.recompute(sid, PERIOD)
        balance = await services.aggregator.get_balance(sid)
        assert balance == await services.aggregator.recompute_balance(sid)
        assert balance.active_tickets == LIMIT
        assert len(services.gate._locks) == 0
        assert len(services.ledger._ticket_locks) == 0


@pytest.mark.unit
class TestBestEffortMode:
    async def test_summary_stays_consistent(
        self, file_engine: AsyncEngine, settings_factory: Callable[..., Settings]
    ) -> None:
        services = build_services(file_engine, settings_factory())
        sid = await _limited_subscription(services)

        allowed = await _admit_all(services, sid)

        # May overshoot by the in-flight requests, never undershoot
        assert sum(allowed) >= LIMIT
        usage = await services.aggregator.get_usage(sid, PERIOD)
        assert usage.active_tickets == sum(allowed)
        assert usage == await services.aggregator.recompute(sid, PERIOD)
        balance = await services.aggregator.get_balance(sid)
        assert balance == await services.aggregator.recompute_balance(sid)

    async def test_concurrent_duplicates_collapse(
        self, file_engine: AsyncEngine, settings_factory: Callable[..., Settings]
    ) -> None:
        services = build_services(file_engine, settings_factory())
        sid = await _limited_subscription(services)

        events = await asyncio.gather(
            *(
                services.ledger.record(
                    sid, "t-1", UsageAction.CREATED, new_status="open", occurred_at=T0
                )
                for _ in range(10)
            )
        )

        assert len({event.id for event in events}) == 1
        usage = await services.aggregator.get_usage(sid, PERIOD)
        assert usage.active_tickets == 1
        assert (await services.aggregator.get_balance(sid)).active_tickets == 1
        assert len(services.ledger._ticket_locks) == 0
