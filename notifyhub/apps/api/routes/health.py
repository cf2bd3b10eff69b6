from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from notifyhub.apps.api.deps import get_runtime
from notifyhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyhub.apps.api.response import success_response
from notifyhub.services.runtime import Runtime

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    shared_state: str
    providers: dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Report degraded rather than failing when shared state is unreachable.
    reachable = await runtime.state.ping()
    payload = HealthResponse(
        status="ok" if reachable else "degraded",
        shared_state=("redis" if runtime.state.redis is not None else "local") if reachable else "unreachable",
        providers=await runtime.failover.states(),
    )
    return success_response(request=request, data=payload.model_dump())
