from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import TYPE_CHECKING

from notifyhub.core.errors import RETRYABLE_ERROR_CODES
from notifyhub.domain.policies import RetryPolicy
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.services.due_queue import DueQueue, Lease
from notifyhub.services.resilience import Bulkhead, BulkheadLease
from notifyhub.services.telemetry import increment_counter, set_gauge

if TYPE_CHECKING:
    from notifyhub.services.dispatcher import Dispatcher


logger = logging.getLogger(__name__)


def compute_retry_delay(policy: RetryPolicy, attempt_index: int, *, rng: random.Random | None = None) -> float:
    # min(base * factor^n, max) plus uniform jitter in [0, jitter_ms].
    n = max(0, int(attempt_index))
    try:
        backoff = policy.base_delay_s * (policy.backoff_factor ** n)
    except OverflowError:
        backoff = policy.max_delay_s
    bounded = min(backoff, policy.max_delay_s)
    jitter_s = (rng or random).uniform(0.0, policy.jitter_ms / 1000.0) if policy.jitter_ms > 0 else 0.0
    return bounded + jitter_s


def is_retryable(error_code: str | None) -> bool:
    return error_code in RETRYABLE_ERROR_CODES


class RetryScheduler:
    """Claims due items from the shared queue and re-attempts them on a bounded pool."""

    def __init__(
        self,
        *,
        store: NotificationStore,
        due_queue: DueQueue,
        dispatcher: "Dispatcher",
        bulkhead: Bulkhead,
        batch_size: int = 50,
        lease_s: float = 120.0,
    ) -> None:
        self._store = store
        self._due_queue = due_queue
        self._dispatcher = dispatcher
        self._bulkhead = bulkhead
        self._batch_size = max(1, batch_size)
        self._lease_s = lease_s

    async def run_once(self) -> int:
        capacity = min(self._batch_size, self._bulkhead.available)
        if capacity <= 0:
            return 0
        leases = await self._due_queue.claim(limit=capacity, lease_s=self._lease_s)
        if not leases:
            return 0
        tasks: list[asyncio.Task[None]] = []
        for lease in leases:
            slot = await self._bulkhead.acquire()
            if slot is None:
                # Saturated by a concurrent batch; hand the item straight back.
                await self._due_queue.release(lease)
                continue
            tasks.append(asyncio.create_task(self._process(lease, slot)))
        set_gauge("retry_worker_in_flight", float(self._bulkhead.limit - self._bulkhead.available))
        if tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    async def _heartbeat(self, lease: Lease) -> None:
        # Renew at a third of the lease so a slow attempt keeps exclusive ownership.
        interval = max(self._lease_s / 3.0, 0.05)
        while True:
            await asyncio.sleep(interval)
            if not await self._due_queue.renew(lease, lease_s=self._lease_s):
                return

    async def _process(self, lease: Lease, slot: BulkheadLease) -> None:
        notification_id = lease.notification_id
        try:
            item = await self._store.get_item(notification_id)
            request = await self._store.get_request(notification_id)
            if item is None or request is None:
                logger.warning("retry_item_missing notification_id=%s", notification_id)
                await self._due_queue.remove(notification_id)
                return
            if item.is_terminal:
                await self._due_queue.remove(notification_id)
                return
            if item.attempts >= item.max_attempts:
                await self._dispatcher.exhaust(item, request)
                return
            increment_counter("retry_attempts_total")
            heartbeat = asyncio.create_task(self._heartbeat(lease))
            try:
                await self._dispatcher.attempt(item, request)
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
        except Exception:  # noqa: BLE001 - keep the pool alive; the lease expiry re-queues the item.
            logger.exception("retry_item_failed notification_id=%s", notification_id)
            increment_counter("retry_item_failed_total")
        finally:
            slot.release()

    async def run_forever(self, *, poll_interval_s: float) -> None:
        # Poll on a bounded cadence; full batches loop immediately to drain backlogs.
        while True:
            try:
                processed = await self.run_once()
            except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
                logger.exception("retry scheduler iteration failed")
                processed = 0
            if processed < self._batch_size:
                await asyncio.sleep(poll_interval_s)
