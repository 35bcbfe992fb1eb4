from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from ticketmeter.web.app import create_app
from ticketmeter.web.routes.webhooks import SIGNATURE_HEADER, sign_payload, verify_signature

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastapi import FastAPI

    from ticketmeter.billing.services import BillingServices
    from ticketmeter.config.settings import Settings

URL = "/api/webhooks/billing"


def _subscription_event(event_id: str = "evt_1", created: int = 1740787200) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "customer.subscription.created",
        "created": created,
        "data": {
            "id": "sub_ext_1",
            "customer": "cus_ext_1",
            "customer_id": "cust-1",
            "plan": "starter",
            "status": "active",
        },
    }


@pytest.fixture()
async def api_services(app: FastAPI) -> BillingServices:
    services: BillingServices = app.state.services
    await services.catalog.seed_defaults()
    return services


@pytest.mark.unit
class TestSignature:
    def test_roundtrip(self) -> None:
        header = sign_payload(b"{}", "secret-value-1", 1_000)
        assert verify_signature(b"{}", header, "secret-value-1", now=1_000)

    def test_tampered_payload(self) -> None:
        header = sign_payload(b"{}", "secret-value-1", 1_000)
        assert not verify_signature(b'{"x":1}', header, "secret-value-1", now=1_000)

    def test_expired_timestamp(self) -> None:
        header = sign_payload(b"{}", "secret-value-1", 1_000)
        assert not verify_signature(b"{}", header, "secret-value-1", now=1_000 + 301)

    def test_rotated_secret_accepted(self) -> None:
        old = sign_payload(b"{}", "old-secret-value", 1_000).split("v1=")[1]
        header = sign_payload(b"{}", "new-secret-value", 1_000) + f",v1={old}"
        assert verify_signature(b"{}", header, "old-secret-value", now=1_000)

    @pytest.mark.parametrize("header", ["", "t=abc,v1=00", "v1=00", "t=1000"])
    def test_malformed_header(self, header: str) -> None:
        assert not verify_signature(b"{}", header, "secret-value-1", now=1_000)


@pytest.mark.integration
class TestBillingWebhook:
    @pytest.mark.asyncio
    async def test_valid_event_applied(
        self, client: AsyncClient, settings: Settings, api_services: BillingServices
    ) -> None:
        payload = json.dumps(_subscription_event()).encode()
        header = sign_payload(payload, settings.billing_webhook_secret or "", int(time.time()))
        resp = await client.post(URL, content=payload, headers={SIGNATURE_HEADER: header})
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "outcome": "applied"}
        assert await api_services.subscriptions.get_by_external_id("sub_ext_1") is not None

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client: AsyncClient) -> None:
        payload = json.dumps(_subscription_event()).encode()
        header = sign_payload(payload, "wrong-secret-value", int(time.time()))
        resp = await client.post(URL, content=payload, headers={SIGNATURE_HEADER: header})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_signature(self, client: AsyncClient) -> None:
        resp = await client.post(URL, content=b"{}")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_signature(self, client: AsyncClient, settings: Settings) -> None:
        payload = json.dumps(_subscription_event()).encode()
        stale = int(time.time()) - settings.webhook_tolerance_seconds - 60
        header = sign_payload(payload, settings.billing_webhook_secret or "", stale)
        resp = await client.post(URL, content=payload, headers={SIGNATURE_HEADER: header})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client: AsyncClient, settings: Settings) -> None:
        payload = b'{"type": "invoice.paid"}'
        header = sign_payload(payload, settings.billing_webhook_secret or "", int(time.time()))
        resp = await client.post(URL, content=payload, headers={SIGNATURE_HEADER: header})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(
        self, client: AsyncClient, settings: Settings
    ) -> None:
        payload = json.dumps({"id": "evt_9", "type": "charge.refunded", "created": 0}).encode()
        header = sign_payload(payload, settings.billing_webhook_secret or "", int(time.time()))
        resp = await client.post(URL, content=payload, headers={SIGNATURE_HEADER: header})
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "ignored"

    @pytest.mark.asyncio
    async def test_missing_secret_is_server_error(
        self, async_engine, settings_factory: Callable[..., Settings]
    ) -> None:
        app = create_app(
            engine=async_engine, settings=settings_factory(billing_webhook_secret=None)
        )
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.post(URL, content=b"{}")
            assert resp.status_code == 500
