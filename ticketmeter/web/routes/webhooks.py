"""Payment-provider webhook receiver."""

from __future__ import annotations

import hashlib
import hmac
import time

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from ticketmeter.billing.events import ProviderEvent
from ticketmeter.billing.services import BillingServices
from ticketmeter.web.dependencies import get_services

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Billing-Signature"


def sign_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Build a signature header value for ``payload`` signed at ``timestamp``."""
    digest = hmac.new(
        secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    payload: bytes,
    header: str,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Verify a ``t=<unix ts>,v1=<hex hmac-sha256>`` signature header.

    The signed message is ``"<ts>." + payload``. Several ``v1`` entries may
    be present during secret rotation; any match is accepted.
    """
    timestamp = ""
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)

    if not timestamp or not signatures:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False

    now = time.time() if now is None else now
    if abs(now - ts) > tolerance_seconds:
        logger.warning("webhook_timestamp_expired", delta=abs(now - ts))
        return False

    expected = sign_payload(payload, secret, ts).split("v1=", 1)[1]
    return any(hmac.compare_digest(sig, expected) for sig in signatures)


@router.post("/billing")
async def billing_webhook(
    request: Request,
    services: BillingServices = Depends(get_services),
) -> dict[str, str]:
    """Handle payment-provider subscription and invoice events."""
    settings = services.settings
    webhook_secret = settings.billing_webhook_secret
    if not webhook_secret or len(webhook_secret.strip()) < 10:
        logger.error("webhook_secret_missing_or_short")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await request.body()
    header = request.headers.get(SIGNATURE_HEADER, "")
    if not verify_signature(
        payload, header, webhook_secret.strip(), settings.webhook_tolerance_seconds
    ):
        logger.warning("webhook_signature_invalid")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = ProviderEvent.model_validate_json(payload)
    except ValidationError as exc:
        logger.warning("webhook_payload_invalid", errors=exc.error_count())
        raise HTTPException(status_code=400, detail="Malformed event payload") from exc

    logger.info("webhook_received", event_id=event.id, event_type=event.type)
    outcome = await services.events.process(event)
    return {"status": "ok", "outcome": outcome}
