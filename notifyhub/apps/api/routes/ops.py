from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from notifyhub.apps.api.deps import get_runtime, require_admin
from notifyhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyhub.apps.api.response import SuccessEnvelope, success_response
from notifyhub.persistence.db import pool_stats
from notifyhub.services.runtime import Runtime
from notifyhub.services.telemetry import (
    counters_snapshot,
    delivery_latency_by_channel,
    external_latency_by_integration,
    gauges_snapshot,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    _: str = Depends(require_admin),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    # JSON metrics for dashboards when Prometheus scraping is unavailable.
    gauges: dict[str, Any] = dict(gauges_snapshot())
    gauges["due_queue_depth"] = await runtime.due_queue.size()
    payload: dict[str, Any] = {
        "counters": counters_snapshot(),
        "gauges": gauges,
        "delivery_latency_ms": {
            "sync": delivery_latency_by_channel(window_s, path="sync"),
            "queued": delivery_latency_by_channel(window_s, path="queued"),
        },
        "external_latency_ms": external_latency_by_integration(window_s),
        "providers": await runtime.failover.states(),
    }
    if runtime.engine is not None:
        payload["db_pool"] = pool_stats(runtime.engine)
    return success_response(request=request, data=payload)
