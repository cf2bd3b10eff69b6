from __future__ import annotations

from datetime import datetime
from typing import Protocol

from notifyhub.domain.notifications import AuditRecord, LedgerEntry, NotificationRequest, QueuedItem


class NotificationStore(Protocol):
    """Persistence seam for requests, delivery state, the cost ledger and audit rows."""

    async def create(self, request: NotificationRequest, item: QueuedItem) -> None:
        ...

    async def get_item(self, notification_id: str) -> QueuedItem | None:
        ...

    async def get_request(self, notification_id: str) -> NotificationRequest | None:
        ...

    async def save_item(self, item: QueuedItem) -> None:
        ...

    async def append_ledger(self, entry: LedgerEntry) -> None:
        ...

    async def sum_ledger(
        self,
        *,
        tenant_id: str,
        service_origin: str | None,
        channel: str | None,
        since: datetime,
        until: datetime,
    ) -> int:
        ...

    async def add_audit(self, record: AuditRecord) -> None:
        ...

    async def list_audit(self, *, tenant_id: str, event_type: str | None = None) -> list[AuditRecord]:
        ...

    async def purge_terminal(self, *, before: datetime) -> int:
        ...

    async def purge_ledger(self, *, before: datetime) -> int:
        ...
