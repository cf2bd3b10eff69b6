from __future__ import annotations

from dataclasses import replace
import json
import logging
from typing import Any, Sequence
from uuid import uuid4

from notifyhub.core.clock import Clock
from notifyhub.core.errors import NotFoundError, NotifyError, ValidationError
from notifyhub.domain.notifications import (
    BATCH_ITEM_ACCEPTED,
    BATCH_ITEM_REJECTED,
    BATCH_ITEM_SKIPPED,
    BatchAdmissionResult,
    BatchItemResult,
    TERMINAL_STATUSES,
    NotificationRequest,
)
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.services.admission import AdmissionGateway
from notifyhub.services.shared_state import SharedState
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_ARENA = "batch"
_PURGED = "purged"


class BatchAdmissions:
    """Admits a list of notifications one by one and reports a result per item.

    Every item goes through the regular gateway, so rate buckets and budgets are
    charged per item and a denial only rejects the item that hit it.
    """

    def __init__(
        self,
        *,
        gateway: AdmissionGateway,
        store: NotificationStore,
        state: SharedState,
        max_size: int = 1000,
        ttl_s: int = 86400,
        clock: Clock | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._state = state
        self._max_size = max_size
        self._ttl_s = ttl_s
        self._clock = clock or Clock()

    async def admit_batch(
        self,
        requests: Sequence[NotificationRequest],
        *,
        continue_on_error: bool = True,
    ) -> BatchAdmissionResult:
        if not requests:
            raise ValidationError("At least one notification is required", details={"field": "notifications"})
        if len(requests) > self._max_size:
            raise ValidationError(
                f"Batch size cannot exceed {self._max_size} notifications",
                code="BATCH_TOO_LARGE",
                details={"max_size": self._max_size, "size": len(requests)},
            )
        tenants = {request.tenant_id for request in requests}
        if len(tenants) != 1:
            raise ValidationError("A batch must target a single tenant", details={"field": "tenant_id"})
        tenant_id = tenants.pop()

        batch_id = uuid4().hex
        results: list[BatchItemResult] = []
        aborted = False
        for index, request in enumerate(requests):
            if aborted:
                results.append(
                    BatchItemResult(index=index, status=BATCH_ITEM_SKIPPED, correlation_id=request.correlation_id)
                )
                continue
            # Batches are always delivered through the queue.
            request = replace(request, synchronous=False)
            try:
                admitted = await self._gateway.admit(request)
            except NotifyError as exc:
                results.append(
                    BatchItemResult(
                        index=index,
                        status=BATCH_ITEM_REJECTED,
                        correlation_id=request.correlation_id,
                        error_code=exc.code,
                        error_message=exc.message,
                    )
                )
                increment_counter(f"batch_items_rejected_total.{exc.code}")
                aborted = not continue_on_error
                continue
            results.append(
                BatchItemResult(
                    index=index,
                    status=BATCH_ITEM_ACCEPTED,
                    notification_id=admitted.notification_id,
                    correlation_id=request.correlation_id,
                    replayed=admitted.replayed,
                )
            )

        result = BatchAdmissionResult(batch_id=batch_id, results=tuple(results), processed_at=self._clock.now())
        record = {
            "tenant_id": tenant_id,
            "created_at": result.processed_at.isoformat(),
            "total": len(results),
            "rejected": result.rejected,
            "notification_ids": [item.notification_id for item in results if item.notification_id],
        }
        await self._state.put(_ARENA, batch_id, json.dumps(record), ttl_s=self._ttl_s)
        increment_counter("batches_total")
        logger.info(
            "batch_admitted batch_id=%s tenant_id=%s total=%s accepted=%s rejected=%s",
            batch_id,
            tenant_id,
            len(results),
            result.accepted,
            result.rejected,
        )
        return result

    async def status(self, batch_id: str, *, tenant_id: str) -> dict[str, Any]:
        raw = await self._state.get(_ARENA, batch_id)
        record = json.loads(raw) if raw is not None else None
        # Other tenants' batches are indistinguishable from missing ones.
        if record is None or record.get("tenant_id") != tenant_id:
            raise NotFoundError(f"Batch {batch_id} not found")

        notifications: list[dict[str, Any]] = []
        by_status: dict[str, int] = {}
        for notification_id in record["notification_ids"]:
            item = await self._store.get_item(notification_id)
            # Purged items count as gone rather than failing the whole lookup.
            status = item.status if item is not None else _PURGED
            by_status[status] = by_status.get(status, 0) + 1
            notifications.append({"notification_id": notification_id, "status": status})
        done = sum(count for status, count in by_status.items() if status in TERMINAL_STATUSES or status == _PURGED)
        return {
            "batch_id": batch_id,
            "status": "completed" if done == len(notifications) else "processing",
            "total": record["total"],
            "rejected": record["rejected"],
            "created_at": record["created_at"],
            "by_status": by_status,
            "notifications": notifications,
        }
