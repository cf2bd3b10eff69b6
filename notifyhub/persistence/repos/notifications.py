from __future__ import annotations

from datetime import datetime
import logging

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyhub.domain.models import AuditEvent, BudgetLedgerEntry, NotificationRecord, QueuedNotification
from notifyhub.domain.notifications import (
    TERMINAL_STATUSES,
    AuditRecord,
    LedgerEntry,
    NotificationRequest,
    QueuedItem,
)
from notifyhub.persistence.db import session_scope


logger = logging.getLogger(__name__)


def _request_row(notification_id: str, request: NotificationRequest, created_at: datetime) -> NotificationRecord:
    return NotificationRecord(
        id=notification_id,
        tenant_id=request.tenant_id,
        service_origin=request.service_origin,
        user_id=request.user_id,
        channels=list(request.channels),
        template_key=request.template_key,
        priority=request.priority,
        synchronous=request.synchronous,
        correlation_id=request.correlation_id,
        idempotency_key=request.idempotency_key,
        payload_json=dict(request.payload),
        contacts_json=dict(request.contacts),
        locale=request.locale,
        scheduled_at=request.scheduled_at,
        override_id=request.override_id,
        created_at=created_at,
    )


def _request_from_row(row: NotificationRecord) -> NotificationRequest:
    return NotificationRequest(
        tenant_id=row.tenant_id,
        service_origin=row.service_origin,
        channels=tuple(row.channels or ()),
        template_key=row.template_key,
        idempotency_key=row.idempotency_key,
        correlation_id=row.correlation_id,
        user_id=row.user_id,
        priority=row.priority,
        synchronous=bool(row.synchronous),
        payload=dict(row.payload_json or {}),
        scheduled_at=row.scheduled_at,
        locale=row.locale,
        contacts=dict(row.contacts_json or {}),
        override_id=row.override_id,
    )


def _item_row(item: QueuedItem) -> QueuedNotification:
    return QueuedNotification(
        id=item.id,
        tenant_id=item.tenant_id,
        status=item.status,
        attempts=item.attempts,
        max_attempts=item.max_attempts,
        next_attempt_at=item.next_attempt_at,
        last_error_kind=item.last_error_kind,
        last_error_detail=item.last_error_detail,
        channel_state={k: dict(v) for k, v in item.channel_state.items()},
        created_at=item.created_at,
        updated_at=item.updated_at,
        terminal_at=item.terminal_at,
    )


def _item_from_row(row: QueuedNotification) -> QueuedItem:
    return QueuedItem(
        id=row.id,
        tenant_id=row.tenant_id,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        next_attempt_at=row.next_attempt_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_error_kind=row.last_error_kind,
        last_error_detail=row.last_error_detail,
        channel_state=dict(row.channel_state or {}),
        terminal_at=row.terminal_at,
    )


class SqlNotificationStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def create(self, request: NotificationRequest, item: QueuedItem) -> None:
        # Write the immutable request and its first delivery state in one transaction.
        async with session_scope(self._sessions) as session:
            session.add(_request_row(item.id, request, item.created_at))
            await session.flush()
            session.add(_item_row(item))

    async def get_item(self, notification_id: str) -> QueuedItem | None:
        async with self._sessions() as session:
            row = await session.get(QueuedNotification, notification_id)
            return _item_from_row(row) if row is not None else None

    async def get_request(self, notification_id: str) -> NotificationRequest | None:
        async with self._sessions() as session:
            row = await session.get(NotificationRecord, notification_id)
            return _request_from_row(row) if row is not None else None

    async def save_item(self, item: QueuedItem) -> None:
        async with session_scope(self._sessions) as session:
            await session.merge(_item_row(item))

    async def append_ledger(self, entry: LedgerEntry) -> None:
        async with session_scope(self._sessions) as session:
            session.add(
                BudgetLedgerEntry(
                    tenant_id=entry.tenant_id,
                    service_origin=entry.service_origin,
                    channel=entry.channel,
                    provider=entry.provider,
                    unit_cost_micros=entry.unit_cost_micros,
                    units=entry.units,
                    total_cost_micros=entry.total_cost_micros,
                    notification_id=entry.notification_id,
                    correlation_id=entry.correlation_id,
                    occurred_at=entry.occurred_at,
                )
            )

    async def sum_ledger(
        self,
        *,
        tenant_id: str,
        service_origin: str | None,
        channel: str | None,
        since: datetime,
        until: datetime,
    ) -> int:
        stmt = select(func.coalesce(func.sum(BudgetLedgerEntry.total_cost_micros), 0)).where(
            BudgetLedgerEntry.tenant_id == tenant_id,
            BudgetLedgerEntry.occurred_at >= since,
            BudgetLedgerEntry.occurred_at < until,
        )
        if service_origin is not None:
            stmt = stmt.where(BudgetLedgerEntry.service_origin == service_origin)
        if channel is not None:
            stmt = stmt.where(BudgetLedgerEntry.channel == channel)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one() or 0)

    async def add_audit(self, record: AuditRecord) -> None:
        async with session_scope(self._sessions) as session:
            session.add(
                AuditEvent(
                    occurred_at=record.occurred_at,
                    tenant_id=record.tenant_id,
                    actor_type=record.actor_type,
                    actor_id=record.actor_id,
                    event_type=record.event_type,
                    outcome=record.outcome,
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    correlation_id=record.correlation_id,
                    metadata_json=dict(record.metadata),
                    error_code=record.error_code,
                )
            )

    async def list_audit(self, *, tenant_id: str, event_type: str | None = None) -> list[AuditRecord]:
        # Scope audit reads to a tenant to prevent cross-tenant leakage.
        stmt = select(AuditEvent).where(AuditEvent.tenant_id == tenant_id)
        if event_type:
            stmt = stmt.where(AuditEvent.event_type == event_type)
        stmt = stmt.order_by(AuditEvent.occurred_at.asc(), AuditEvent.id.asc())
        async with self._sessions() as session:
            result = await session.execute(stmt)
            return [
                AuditRecord(
                    occurred_at=row.occurred_at,
                    tenant_id=row.tenant_id,
                    actor_type=row.actor_type,
                    actor_id=row.actor_id,
                    event_type=row.event_type,
                    outcome=row.outcome,
                    resource_type=row.resource_type,
                    resource_id=row.resource_id,
                    correlation_id=row.correlation_id,
                    metadata=dict(row.metadata_json or {}),
                    error_code=row.error_code,
                )
                for row in result.scalars().all()
            ]

    async def purge_terminal(self, *, before: datetime) -> int:
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                select(QueuedNotification.id).where(
                    QueuedNotification.status.in_(sorted(TERMINAL_STATUSES)),
                    QueuedNotification.terminal_at < before,
                )
            )
            ids = list(result.scalars().all())
            if not ids:
                return 0
            # Delete children first; sqlite does not enforce ON DELETE CASCADE by default.
            await session.execute(delete(QueuedNotification).where(QueuedNotification.id.in_(ids)))
            await session.execute(delete(NotificationRecord).where(NotificationRecord.id.in_(ids)))
        logger.info("notifications_purged count=%s before=%s", len(ids), before.isoformat())
        return len(ids)

    async def purge_ledger(self, *, before: datetime) -> int:
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                delete(BudgetLedgerEntry).where(BudgetLedgerEntry.occurred_at < before)
            )
            count = int(result.rowcount or 0)
        logger.info("ledger_purged count=%s before=%s", count, before.isoformat())
        return count
