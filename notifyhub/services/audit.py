from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from notifyhub.domain.notifications import AuditRecord
from notifyhub.persistence.repos.base import NotificationStore


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "credential", "contact"]
_REDACTED_VALUE = "[REDACTED]"

EVENT_OVERRIDE_GRANTED = "budget.override.granted"
EVENT_OVERRIDE_REJECTED = "budget.override.rejected"
EVENT_OVERRIDE_USED = "budget.override.used"
EVENT_BUDGET_WARNING = "budget.warning"
EVENT_BUDGET_BLOCKED = "budget.blocked"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_event(
    store: NotificationStore,
    *,
    occurred_at: datetime,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    correlation_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    best_effort: bool = True,
) -> None:
    # Audit rows are immutable; only inserts happen here.
    record = AuditRecord(
        occurred_at=occurred_at,
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        correlation_id=correlation_id,
        metadata=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    try:
        await store.add_audit(record)
    except Exception as exc:
        if not best_effort:
            raise
        logger.warning("audit_event_write_failed event_type=%s tenant_id=%s", event_type, tenant_id, exc_info=exc)
