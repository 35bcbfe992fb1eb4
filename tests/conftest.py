"""Shared test fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from ticketmeter.billing.services import build_services
from ticketmeter.config.settings import Settings
from ticketmeter.storage.database import build_engine, init_db
from ticketmeter.web.app import create_app

if TYPE_CHECKING:
    from pathlib import Path

    from ticketmeter.billing.services import BillingServices
    from ticketmeter.models.database import Plan

WEBHOOK_SECRET = "whsec_test_0123456789abcdef"


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "billing_webhook_secret": WEBHOOK_SECRET,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
async def file_engine(tmp_path: Path):
    """File-backed SQLite engine; separate connections let coroutines really interleave."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ticketmeter.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def services(async_engine, settings: Settings) -> BillingServices:
    return build_services(async_engine, settings)


@pytest.fixture()
async def plans(services: BillingServices) -> dict[str, Plan]:
    """The default tiers, keyed by slug."""
    seeded = await services.catalog.seed_defaults()
    return {plan.slug: plan for plan in seeded}


@pytest.fixture()
def app(async_engine, settings: Settings):
    return create_app(engine=async_engine, settings=settings)


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture()
def settings_factory():
    """Build settings with overrides, e.g. ``settings_factory(enforcement_mode="strict")``."""
    return make_settings
