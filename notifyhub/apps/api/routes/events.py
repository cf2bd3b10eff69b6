from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field

from notifyhub.apps.api.deps import ServiceCaller, ensure_origin, get_runtime, require_service, require_tenant
from notifyhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyhub.apps.api.response import SuccessEnvelope, success_response
from notifyhub.apps.api.routes.notifications import AdmissionResponse
from notifyhub.domain.events import EventEnvelope
from notifyhub.services.idempotency import REPLAY_HEADER
from notifyhub.services.runtime import Runtime


router = APIRouter(prefix="/events", tags=["events"], responses=DEFAULT_ERROR_RESPONSES)


class EventBody(BaseModel):
    event_id: str = Field(min_length=1, max_length=128)
    occurred_at: datetime | None = None
    message_type: str = Field(min_length=1)
    service_origin: str | None = None
    user_id: str | None = None
    correlation_id: str | None = None
    idempotency_key: str | None = None
    priority: str = "normal"
    channels: list[str] = Field(min_length=1)
    template_key: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    contacts: dict[str, str] = Field(default_factory=dict)


@router.post(
    "",
    response_model=SuccessEnvelope[AdmissionResponse],
    status_code=status.HTTP_202_ACCEPTED,
    response_model_exclude_none=True,
)
async def ingest_event(
    body: EventBody,
    request: Request,
    response: Response,
    caller: ServiceCaller = Depends(require_service),
    tenant_id: str = Depends(require_tenant),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    # Bus events are always queued; the event id doubles as the idempotency key.
    envelope = EventEnvelope(
        event_id=body.event_id,
        occurred_at=body.occurred_at,
        message_type=body.message_type,
        service_origin=ensure_origin(caller, body.service_origin),
        channels=tuple(body.channels),
        user_id=body.user_id,
        correlation_id=body.correlation_id,
        idempotency_key=body.idempotency_key,
        priority=body.priority,
        template_key=body.template_key,
        data=body.data,
        metadata=body.metadata,
        contacts=body.contacts,
    )
    result = await runtime.gateway.ingest_event(envelope, tenant_id)
    if result.replayed:
        response.headers[REPLAY_HEADER] = "true"
    return success_response(request=request, data=result.outcome)
