from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field

from notifyhub.apps.api.deps import (
    ServiceCaller,
    ensure_origin,
    get_runtime,
    idempotency_key_header,
    require_service,
    require_tenant,
)
from notifyhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyhub.apps.api.response import SuccessEnvelope, get_request_id, success_response
from notifyhub.domain.notifications import AdmissionResult, NotificationRequest
from notifyhub.services.idempotency import REPLAY_HEADER
from notifyhub.services.runtime import Runtime


router = APIRouter(prefix="/notifications", tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


class NotificationFields(BaseModel):
    service_origin: str | None = None
    user_id: str | None = None
    channels: list[str] = Field(min_length=1)
    template_key: str = Field(min_length=1)
    priority: str = "normal"
    correlation_id: str | None = None
    idempotency_key: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_at: datetime | None = None
    locale: str | None = None
    contacts: dict[str, str] = Field(default_factory=dict)
    override_id: str | None = None

    # Reject unknown fields so typos do not silently drop delivery options.
    model_config = {"extra": "forbid"}


class NotificationBody(NotificationFields):
    tenant_id: str = Field(min_length=1, max_length=128)


class AdmissionResponse(BaseModel):
    notification_id: str
    status: str
    channels: dict[str, dict[str, Any]] | None = None
    processing_ms: int | None = None
    warnings: list[str] | None = None
    error_code: str | None = None


class NotificationStatusResponse(BaseModel):
    notification_id: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: str | None
    last_error_kind: str | None
    last_error_detail: str | None
    channels: dict[str, dict[str, Any]]
    created_at: str
    updated_at: str
    terminal_at: str | None


def build_request(
    body: NotificationFields,
    *,
    tenant_id: str,
    request: Request,
    caller: ServiceCaller,
    idempotency_key: str | None,
    synchronous: bool,
) -> NotificationRequest:
    return NotificationRequest(
        tenant_id=tenant_id,
        service_origin=ensure_origin(caller, body.service_origin),
        channels=tuple(body.channels),
        template_key=body.template_key,
        idempotency_key=body.idempotency_key or idempotency_key or "",
        # Fall back to the request id so every attempt stays traceable.
        correlation_id=body.correlation_id or request.headers.get("X-Correlation-Id") or get_request_id(request),
        user_id=body.user_id,
        priority=body.priority,
        synchronous=synchronous,
        payload=body.payload,
        scheduled_at=body.scheduled_at,
        locale=body.locale,
        contacts=body.contacts,
        override_id=body.override_id,
    )


def _admission_payload(request: Request, response: Response, result: AdmissionResult) -> dict[str, Any]:
    if result.replayed:
        response.headers[REPLAY_HEADER] = "true"
    return success_response(request=request, data=result.outcome)


@router.post("/send", response_model=SuccessEnvelope[AdmissionResponse], response_model_exclude_none=True)
async def send_notification(
    body: NotificationBody,
    request: Request,
    response: Response,
    caller: ServiceCaller = Depends(require_service),
    idempotency_key: str | None = Depends(idempotency_key_header),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    # Deliver within the synchronous deadline; unfinished channels report timeout.
    notification = build_request(
        body,
        tenant_id=body.tenant_id,
        request=request,
        caller=caller,
        idempotency_key=idempotency_key,
        synchronous=True,
    )
    result = await runtime.gateway.admit(notification)
    return _admission_payload(request, response, result)


@router.post(
    "",
    response_model=SuccessEnvelope[AdmissionResponse],
    status_code=status.HTTP_202_ACCEPTED,
    response_model_exclude_none=True,
)
async def enqueue_notification(
    body: NotificationBody,
    request: Request,
    response: Response,
    caller: ServiceCaller = Depends(require_service),
    idempotency_key: str | None = Depends(idempotency_key_header),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    notification = build_request(
        body,
        tenant_id=body.tenant_id,
        request=request,
        caller=caller,
        idempotency_key=idempotency_key,
        synchronous=False,
    )
    result = await runtime.gateway.admit(notification)
    return _admission_payload(request, response, result)


@router.get("/{notification_id}", response_model=SuccessEnvelope[NotificationStatusResponse])
async def get_notification(
    notification_id: str,
    request: Request,
    caller: ServiceCaller = Depends(require_service),
    tenant_id: str = Depends(require_tenant),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    item = await runtime.gateway.status(notification_id, tenant_id=tenant_id)
    return success_response(request=request, data=item.to_payload())


class BatchBody(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=128)
    notifications: list[NotificationFields] = Field(min_length=1)
    continue_on_error: bool = True
    # Applies to every item that does not carry its own scheduled_at.
    scheduled_at: datetime | None = None

    model_config = {"extra": "forbid"}


class BatchItemResponse(BaseModel):
    index: int
    status: str
    notification_id: str | None = None
    correlation_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    replayed: bool = False


class BatchAdmissionResponse(BaseModel):
    batch_id: str
    total: int
    accepted: int
    rejected: int
    processed_at: str
    results: list[BatchItemResponse]


class BatchStatusResponse(BaseModel):
    batch_id: str
    status: str
    total: int
    rejected: int
    created_at: str
    by_status: dict[str, int]
    notifications: list[dict[str, str]]


@router.post(
    "/batch",
    response_model=SuccessEnvelope[BatchAdmissionResponse],
    status_code=status.HTTP_202_ACCEPTED,
    response_model_exclude_none=True,
)
async def enqueue_batch(
    body: BatchBody,
    request: Request,
    caller: ServiceCaller = Depends(require_service),
    idempotency_key: str | None = Depends(idempotency_key_header),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    # A batch-level Idempotency-Key gives every item a stable key derived from its position.
    notifications: list[NotificationRequest] = []
    for index, item in enumerate(body.notifications):
        if item.scheduled_at is None and body.scheduled_at is not None:
            item = item.model_copy(update={"scheduled_at": body.scheduled_at})
        notifications.append(
            build_request(
                item,
                tenant_id=body.tenant_id,
                request=request,
                caller=caller,
                idempotency_key=f"{idempotency_key}:{index}" if idempotency_key else None,
                synchronous=False,
            )
        )
    result = await runtime.batches.admit_batch(notifications, continue_on_error=body.continue_on_error)
    return success_response(request=request, data=result.to_payload())


@router.get("/batch/{batch_id}", response_model=SuccessEnvelope[BatchStatusResponse])
async def get_batch(
    batch_id: str,
    request: Request,
    caller: ServiceCaller = Depends(require_service),
    tenant_id: str = Depends(require_tenant),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    data = await runtime.batches.status(batch_id, tenant_id=tenant_id)
    return success_response(request=request, data=data)
