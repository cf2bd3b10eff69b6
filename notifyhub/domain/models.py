from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    # Always hand back aware UTC datetimes, including from drivers that drop tzinfo.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class NotificationRecord(Base):
    __tablename__ = "notification_requests"
    __table_args__ = (
        Index("ix_notification_requests_tenant_idem", "tenant_id", "idempotency_key"),
    )

    # The request row shares the notification id; it is immutable after admission.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    service_origin: Mapped[str] = mapped_column(String)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    channels: Mapped[list[str]] = mapped_column(JSONType)
    template_key: Mapped[str] = mapped_column(String)
    priority: Mapped[str] = mapped_column(String)
    synchronous: Mapped[bool] = mapped_column(Boolean)
    correlation_id: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(128))
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    # Contacts are stored as received; encrypted values keep their enc: prefix.
    contacts_json: Mapped[dict[str, str]] = mapped_column(JSONType)
    locale: Mapped[str | None] = mapped_column(String, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    override_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class QueuedNotification(Base):
    __tablename__ = "queued_notifications"
    __table_args__ = (
        Index("ix_queued_notifications_status_next", "status", "next_attempt_at"),
        Index("ix_queued_notifications_terminal_at", "terminal_at"),
    )

    id: Mapped[str] = mapped_column(String, ForeignKey("notification_requests.id", ondelete="CASCADE"), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    attempts: Mapped[int] = mapped_column(Integer)
    max_attempts: Mapped[int] = mapped_column(Integer)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    # channel -> {status, provider, provider_message_id, error_code}
    channel_state: Mapped[dict[str, Any]] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    terminal_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class BudgetLedgerEntry(Base):
    __tablename__ = "budget_ledger_entries"
    __table_args__ = (
        Index("ix_budget_ledger_scope_time", "tenant_id", "service_origin", "channel", "occurred_at"),
    )

    # Append-only; rows are never updated.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    service_origin: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    provider: Mapped[str] = mapped_column(String)
    unit_cost_micros: Mapped[int] = mapped_column(BigInteger)
    units: Mapped[int] = mapped_column(Integer)
    total_cost_micros: Mapped[int] = mapped_column(BigInteger)
    notification_id: Mapped[str] = mapped_column(String, index=True)
    correlation_id: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Metadata is sanitized before it reaches this column.
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
