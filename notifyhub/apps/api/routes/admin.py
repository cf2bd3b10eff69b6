from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from notifyhub.apps.api.deps import admin_credential, get_runtime
from notifyhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyhub.apps.api.response import SuccessEnvelope, success_response
from notifyhub.services.overrides import AdminOverrideCommand
from notifyhub.services.runtime import Runtime


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class OverrideRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=128)
    actor_id: str = Field(min_length=1, max_length=128)
    reason: str
    ttl_s: int
    service_origin: str | None = None
    channel: str | None = None

    model_config = {"extra": "forbid"}


class OverrideResponse(BaseModel):
    override_id: str
    tenant_id: str
    actor_id: str
    reason: str
    granted_at: str
    expires_at: str
    service_origin: str | None
    channel: str | None


@router.post(
    "/overrides",
    response_model=SuccessEnvelope[OverrideResponse],
    status_code=status.HTTP_201_CREATED,
)
async def grant_override(
    body: OverrideRequest,
    request: Request,
    credential: str = Depends(admin_credential),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    # Capability, reason and ttl checks live in the override service so rejections are audited.
    grant = await runtime.overrides.grant(
        AdminOverrideCommand(
            tenant_id=body.tenant_id,
            actor_id=body.actor_id,
            credential=credential,
            reason=body.reason,
            ttl_s=body.ttl_s,
            service_origin=body.service_origin,
            channel=body.channel,
        )
    )
    return success_response(request=request, data=grant.to_payload())
