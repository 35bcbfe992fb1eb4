"""Wires the billing components together over one async engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ticketmeter.billing.aggregator import UsageAggregator
from ticketmeter.billing.analytics import RevenueAnalytics
from ticketmeter.billing.events import ProviderEventProcessor
from ticketmeter.billing.gate import EntitlementGate
from ticketmeter.billing.ledger import UsageLedger
from ticketmeter.billing.plans import PlanCatalog
from ticketmeter.billing.records import BillingRecordManager
from ticketmeter.billing.subscriptions import SubscriptionManager
from ticketmeter.billing.warnings import UsageWarningService
from ticketmeter.config.settings import get_settings

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from ticketmeter.config.settings import Settings


@dataclass(slots=True)
class BillingServices:
    engine: AsyncEngine
    settings: Settings
    catalog: PlanCatalog
    subscriptions: SubscriptionManager
    aggregator: UsageAggregator
    ledger: UsageLedger
    gate: EntitlementGate
    warnings: UsageWarningService
    records: BillingRecordManager
    analytics: RevenueAnalytics
    events: ProviderEventProcessor


def build_services(engine: AsyncEngine, settings: Settings | None = None) -> BillingServices:
    """Build one instance of every component sharing ``engine`` and ``settings``.

    Per-subscription locks live on these instances, so a process should
    build the container once and share it.
    """
    settings = settings or get_settings()
    catalog = PlanCatalog(engine)
    subscriptions = SubscriptionManager(engine, catalog, settings)
    aggregator = UsageAggregator(engine, subscriptions, settings)
    ledger = UsageLedger(engine, aggregator, settings)
    records = BillingRecordManager(engine)
    return BillingServices(
        engine=engine,
        settings=settings,
        catalog=catalog,
        subscriptions=subscriptions,
        aggregator=aggregator,
        ledger=ledger,
        gate=EntitlementGate(subscriptions, aggregator, ledger, catalog, settings),
        warnings=UsageWarningService(subscriptions, aggregator, settings),
        records=records,
        analytics=RevenueAnalytics(engine, records, settings),
        events=ProviderEventProcessor(subscriptions, records, catalog),
    )
