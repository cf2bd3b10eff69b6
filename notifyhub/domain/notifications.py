from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping


CHANNEL_PUSH = "push"
CHANNEL_SMS = "sms"
CHANNEL_EMAIL = "email"
CHANNEL_REALTIME = "realtime"
CHANNELS = (CHANNEL_PUSH, CHANNEL_SMS, CHANNEL_EMAIL, CHANNEL_REALTIME)
# Only these channels can meet the synchronous deadline.
SYNC_CHANNELS = frozenset({CHANNEL_PUSH, CHANNEL_REALTIME})

PRIORITY_HIGH = "high"
PRIORITY_NORMAL = "normal"
PRIORITY_LOW = "low"
PRIORITIES = (PRIORITY_HIGH, PRIORITY_NORMAL, PRIORITY_LOW)

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_IN_FLIGHT = "in_flight"
STATUS_RETRYING = "retrying"
STATUS_DELIVERED = "delivered"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_DELIVERED, STATUS_PARTIAL, STATUS_FAILED})

CHANNEL_DELIVERED = "delivered"
CHANNEL_FAILED = "failed"
CHANNEL_TIMEOUT = "timeout"
CHANNEL_PENDING = "pending"

WILDCARD = "*"


@dataclass(frozen=True)
class NotificationRequest:
    tenant_id: str
    service_origin: str
    channels: tuple[str, ...]
    template_key: str
    idempotency_key: str
    correlation_id: str
    user_id: str | None = None
    priority: str = PRIORITY_NORMAL
    synchronous: bool = False
    payload: Mapping[str, Any] = field(default_factory=dict)
    scheduled_at: datetime | None = None
    locale: str | None = None
    # Channel -> contact; values may be encrypted with the "enc:" prefix.
    contacts: Mapping[str, str] = field(default_factory=dict)
    override_id: str | None = None


@dataclass(frozen=True)
class RenderedMessage:
    body: str
    subject: str | None = None
    variables_used: tuple[str, ...] = ()
    locale: str | None = None


@dataclass(frozen=True)
class ProviderMessage:
    # Everything an adapter needs; correlation fields travel unchanged to the provider.
    notification_id: str
    tenant_id: str
    channel: str
    body: str
    subject: str | None
    correlation_id: str
    idempotency_key: str
    priority: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChannelOutcome:
    channel: str
    status: str
    provider: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_detail: str | None = None
    retryable: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "provider": self.provider,
            "provider_message_id": self.provider_message_id,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class AttemptOutcome:
    notification_id: str
    status: str
    channels: dict[str, ChannelOutcome]
    attempt_consumed: bool = True
    error_code: str | None = None


def overall_status(channel_statuses: Mapping[str, str]) -> str:
    # delivered only when every requested channel delivered; partial when some did.
    if not channel_statuses:
        return STATUS_FAILED
    delivered = sum(1 for status in channel_statuses.values() if status == CHANNEL_DELIVERED)
    if delivered == len(channel_statuses):
        return STATUS_DELIVERED
    if delivered:
        return STATUS_PARTIAL
    return STATUS_FAILED


@dataclass(frozen=True)
class AdmissionResult:
    notification_id: str
    status: str
    outcome: dict[str, Any]
    replayed: bool = False
    warnings: tuple[str, ...] = ()
    processing_ms: int | None = None

    @property
    def channels(self) -> dict[str, Any]:
        return dict(self.outcome.get("channels") or {})


@dataclass(frozen=True)
class QueuedItem:
    # Mutable delivery state travels as replaced copies; the store holds the latest.
    id: str
    tenant_id: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: datetime | None
    created_at: datetime
    updated_at: datetime
    last_error_kind: str | None = None
    last_error_detail: str | None = None
    channel_state: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    terminal_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def channel_status(self, channel: str) -> str:
        state = self.channel_state.get(channel) or {}
        return str(state.get("status") or CHANNEL_PENDING)

    def is_settled(self, channel: str) -> bool:
        # Delivered channels and permanent rejections are final for the item.
        state = self.channel_state.get(channel) or {}
        if state.get("status") == CHANNEL_DELIVERED:
            return True
        return state.get("status") == CHANNEL_FAILED and state.get("retryable") is False

    def pending_channels(self, channels: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(c for c in channels if not self.is_settled(c))

    def to_payload(self) -> dict[str, Any]:
        return {
            "notification_id": self.id,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "last_error_kind": self.last_error_kind,
            "last_error_detail": self.last_error_detail,
            "channels": {k: dict(v) for k, v in self.channel_state.items()},
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "terminal_at": self.terminal_at.isoformat() if self.terminal_at else None,
        }


@dataclass(frozen=True)
class LedgerEntry:
    tenant_id: str
    service_origin: str
    channel: str
    provider: str
    unit_cost_micros: int
    units: int
    notification_id: str
    correlation_id: str
    occurred_at: datetime

    @property
    def total_cost_micros(self) -> int:
        return self.unit_cost_micros * self.units


@dataclass(frozen=True)
class AuditRecord:
    occurred_at: datetime
    tenant_id: str | None
    actor_type: str
    actor_id: str | None
    event_type: str
    outcome: str
    resource_type: str | None = None
    resource_id: str | None = None
    correlation_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    error_code: str | None = None


BATCH_ITEM_ACCEPTED = "accepted"
BATCH_ITEM_REJECTED = "rejected"
BATCH_ITEM_SKIPPED = "skipped"


@dataclass(frozen=True)
class BatchItemResult:
    index: int
    status: str
    notification_id: str | None = None
    correlation_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    replayed: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status,
            "notification_id": self.notification_id,
            "correlation_id": self.correlation_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class BatchAdmissionResult:
    batch_id: str
    results: tuple[BatchItemResult, ...]
    processed_at: datetime

    @property
    def accepted(self) -> int:
        return sum(1 for result in self.results if result.status == BATCH_ITEM_ACCEPTED)

    @property
    def rejected(self) -> int:
        return len(self.results) - self.accepted

    def to_payload(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total": len(self.results),
            "accepted": self.accepted,
            "rejected": self.rejected,
            "processed_at": self.processed_at.isoformat(),
            "results": [result.to_payload() for result in self.results],
        }
