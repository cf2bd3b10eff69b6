from __future__ import annotations

import asyncio
from datetime import datetime

from notifyhub.domain.notifications import (
    AuditRecord,
    LedgerEntry,
    NotificationRequest,
    QueuedItem,
)


class InMemoryNotificationStore:
    """Process-local store for development runs and tests."""

    def __init__(self) -> None:
        self._requests: dict[str, NotificationRequest] = {}
        self._items: dict[str, QueuedItem] = {}
        self._ledger: list[LedgerEntry] = []
        self._audit: list[AuditRecord] = []
        self._lock = asyncio.Lock()

    async def create(self, request: NotificationRequest, item: QueuedItem) -> None:
        async with self._lock:
            if item.id in self._items:
                raise KeyError(f"notification {item.id} already exists")
            self._requests[item.id] = request
            self._items[item.id] = item

    async def get_item(self, notification_id: str) -> QueuedItem | None:
        return self._items.get(notification_id)

    async def get_request(self, notification_id: str) -> NotificationRequest | None:
        return self._requests.get(notification_id)

    async def save_item(self, item: QueuedItem) -> None:
        async with self._lock:
            self._items[item.id] = item

    async def append_ledger(self, entry: LedgerEntry) -> None:
        async with self._lock:
            self._ledger.append(entry)

    async def sum_ledger(
        self,
        *,
        tenant_id: str,
        service_origin: str | None,
        channel: str | None,
        since: datetime,
        until: datetime,
    ) -> int:
        return sum(
            entry.total_cost_micros
            for entry in self._ledger
            if entry.tenant_id == tenant_id
            and (service_origin is None or entry.service_origin == service_origin)
            and (channel is None or entry.channel == channel)
            and since <= entry.occurred_at < until
        )

    async def add_audit(self, record: AuditRecord) -> None:
        async with self._lock:
            self._audit.append(record)

    async def list_audit(self, *, tenant_id: str, event_type: str | None = None) -> list[AuditRecord]:
        return [
            record
            for record in self._audit
            if record.tenant_id == tenant_id and (event_type is None or record.event_type == event_type)
        ]

    async def purge_terminal(self, *, before: datetime) -> int:
        async with self._lock:
            stale = [
                item_id
                for item_id, item in self._items.items()
                if item.is_terminal and item.terminal_at is not None and item.terminal_at < before
            ]
            for item_id in stale:
                self._items.pop(item_id, None)
                self._requests.pop(item_id, None)
            return len(stale)

    async def purge_ledger(self, *, before: datetime) -> int:
        async with self._lock:
            kept = [entry for entry in self._ledger if entry.occurred_at >= before]
            purged = len(self._ledger) - len(kept)
            self._ledger = kept
            return purged

    def ledger_entries(self) -> list[LedgerEntry]:
        return list(self._ledger)
