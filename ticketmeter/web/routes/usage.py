"""Usage, admission and reconciliation API routes for one subscription."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ticketmeter.billing.periods import current_period
from ticketmeter.billing.services import BillingServices
from ticketmeter.billing.warnings import warning_headers
from ticketmeter.models.database import UsageEvent
from ticketmeter.models.domain import (
    AdmissionDecision,
    EventMetadata,
    ReconcileResult,
    TicketLimits,
    UsageCounts,
    UsagePercentages,
    UsageWarning,
)
from ticketmeter.types import GateAction, UsageAction
from ticketmeter.web.dependencies import get_period, get_services, naive_utc

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["usage"])


class AdmissionRequest(BaseModel):
    action: GateAction
    count: int = Field(default=1, ge=1)
    # With a ticket_id the allowed action is recorded in the same admission
    ticket_id: str | None = None
    previous_status: str | None = None
    new_status: str | None = None
    idempotency_key: str | None = None


class AdmissionResponse(BaseModel):
    decision: AdmissionDecision
    warnings: list[UsageWarning] = []
    event_id: int | None = None


class UsageEventRequest(BaseModel):
    ticket_id: str = Field(min_length=1)
    new_status: str = Field(min_length=1)
    previous_status: str | None = None
    action: UsageAction | None = None  # derived from new_status when omitted
    occurred_at: datetime | None = None
    idempotency_key: str | None = None
    restoration: bool = False
    metadata: EventMetadata | None = None


class UsageEventResponse(BaseModel):
    id: int
    subscription_id: str
    ticket_id: str
    action: UsageAction
    previous_status: str | None = None
    new_status: str | None = None
    action_timestamp: datetime
    dedupe_key: str


class UsageResponse(BaseModel):
    subscription_id: str
    period: str
    usage: UsageCounts
    # What admission checks: open tickets from earlier months plus this month's completions
    enforced: UsageCounts
    limits: TicketLimits


def _event_response(event: UsageEvent) -> UsageEventResponse:
    return UsageEventResponse(
        id=event.id or 0,
        subscription_id=event.subscription_id,
        ticket_id=event.ticket_id,
        action=UsageAction(event.action),
        previous_status=event.previous_status,
        new_status=event.new_status,
        action_timestamp=event.action_timestamp,
        dedupe_key=event.dedupe_key,
    )


@router.post("/{subscription_id}/admission", response_model=AdmissionResponse)
async def check_admission(
    subscription_id: str,
    body: AdmissionRequest,
    services: BillingServices = Depends(get_services),
) -> JSONResponse:
    """Decide whether an action fits the plan; denials answer 429 with upgrade hints."""
    period = current_period()
    event = None
    if body.ticket_id is not None:
        if body.count != 1:
            msg = "count must be 1 when a ticket_id is recorded"
            raise ValueError(msg)
        decision, event = await services.gate.admit(
            subscription_id,
            body.action,
            body.ticket_id,
            previous_status=body.previous_status,
            new_status=body.new_status,
            metadata=EventMetadata(source="api"),
            idempotency_key=body.idempotency_key,
        )
    elif body.count > 1:
        decision = await services.gate.validate_bulk(
            subscription_id, body.action, body.count, period
        )
    else:
        decision = await services.gate.can_perform(subscription_id, body.action, period)

    warnings = await services.warnings.usage_warnings(subscription_id, period)
    payload = AdmissionResponse(
        decision=decision,
        warnings=warnings,
        event_id=event.id if event is not None else None,
    )
    return JSONResponse(
        status_code=200 if decision.allowed else 429,
        content=payload.model_dump(mode="json"),
        headers=warning_headers(warnings),
    )


@router.post(
    "/{subscription_id}/usage/events", status_code=201, response_model=UsageEventResponse
)
async def record_usage_event(
    subscription_id: str,
    body: UsageEventRequest,
    services: BillingServices = Depends(get_services),
) -> UsageEventResponse:
    metadata = body.metadata or EventMetadata(source="api")
    occurred_at = naive_utc(body.occurred_at)
    if body.restoration:
        event = await services.ledger.record_restoration(
            subscription_id,
            body.ticket_id,
            restored_status=body.new_status,
            metadata=metadata,
            occurred_at=occurred_at,
        )
    elif body.action is not None:
        event = await services.ledger.record(
            subscription_id,
            body.ticket_id,
            body.action,
            previous_status=body.previous_status,
            new_status=body.new_status,
            metadata=metadata,
            occurred_at=occurred_at,
            idempotency_key=body.idempotency_key,
        )
    else:
        event = await services.ledger.record_status_change(
            subscription_id,
            body.ticket_id,
            body.previous_status,
            body.new_status,
            metadata=metadata,
            occurred_at=occurred_at,
            idempotency_key=body.idempotency_key,
        )
    return _event_response(event)


@router.get("/{subscription_id}/usage/events", response_model=list[UsageEventResponse])
async def list_usage_events(
    subscription_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    services: BillingServices = Depends(get_services),
) -> list[UsageEventResponse]:
    await services.subscriptions.get(subscription_id)
    events = await services.ledger.recent_activity(subscription_id, limit=limit)
    return [_event_response(e) for e in events]


@router.get("/{subscription_id}/usage", response_model=UsageResponse)
async def get_usage(
    subscription_id: str,
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> UsageResponse:
    subscription = await services.subscriptions.get(subscription_id)
    return UsageResponse(
        subscription_id=subscription_id,
        period=period,
        usage=await services.aggregator.get_usage(subscription_id, period),
        enforced=await services.aggregator.get_enforced_usage(subscription_id, period),
        limits=await services.subscriptions.effective_limits(subscription),
    )


@router.get("/{subscription_id}/usage/percentages", response_model=UsagePercentages)
async def get_usage_percentages(
    subscription_id: str,
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> UsagePercentages:
    return await services.aggregator.get_usage_percentages(subscription_id, period)


@router.get("/{subscription_id}/usage/warnings", response_model=list[UsageWarning])
async def get_usage_warnings(
    subscription_id: str,
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> JSONResponse:
    warnings = await services.warnings.usage_warnings(subscription_id, period)
    content: list[dict[str, Any]] = [w.model_dump(mode="json") for w in warnings]
    return JSONResponse(content=content, headers=warning_headers(warnings))


@router.post("/{subscription_id}/usage/reconcile", response_model=ReconcileResult)
async def reconcile_usage(
    subscription_id: str,
    period: str = Depends(get_period),
    services: BillingServices = Depends(get_services),
) -> ReconcileResult:
    await services.subscriptions.get(subscription_id)
    result = await services.aggregator.reconcile(subscription_id, period)
    logger.info(
        "usage_reconciled",
        subscription_id=subscription_id,
        period=period,
        drift=result.drift,
        corrected=result.corrected,
    )
    return result
