from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
from typing import Any

from notifyhub.core.errors import ValidationError
from notifyhub.domain.notifications import STATUS_PROCESSING
from notifyhub.services.shared_state import REPLACE_CONFLICT, REPLACE_MISSING, SharedState


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotency-Replayed"
MAX_KEY_LENGTH = 128

_ARENA = "idem"


@dataclass(frozen=True)
class IdempotencyReservation:
    # created=False means an unexpired record already exists and outcome holds it.
    created: bool
    notification_id: str
    outcome: dict[str, Any]


def canonical_json(payload: Any) -> str:
    # Stable serialization so replays are byte-identical.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def normalize_key(value: str | None) -> str:
    # Enforce idempotency key size constraints for storage safety.
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError("idempotency_key is required", code="IDEMPOTENCY_KEY_INVALID")
    if len(cleaned) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"idempotency_key exceeds {MAX_KEY_LENGTH} characters", code="IDEMPOTENCY_KEY_INVALID"
        )
    return cleaned


def _scope_key(tenant_id: str, idempotency_key: str) -> str:
    # Hash the caller key so arbitrary characters never reach the key namespace.
    digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()
    return f"{tenant_id}:{digest}"


class IdempotencyStore:
    def __init__(self, state: SharedState, *, ttl_s: float) -> None:
        self._state = state
        self._ttl_s = ttl_s

    async def reserve(self, tenant_id: str, idempotency_key: str, notification_id: str) -> IdempotencyReservation:
        # Create-if-absent is the only way a record comes into existence.
        key = _scope_key(tenant_id, idempotency_key)
        placeholder = {"notification_id": notification_id, "status": STATUS_PROCESSING}
        created = await self._state.set_if_absent(_ARENA, key, canonical_json(placeholder), ttl_s=self._ttl_s)
        if created:
            return IdempotencyReservation(created=True, notification_id=notification_id, outcome=placeholder)
        existing = await self.get(tenant_id, idempotency_key)
        if existing is None:
            # Expired between the two calls; claim it again.
            return await self.reserve(tenant_id, idempotency_key, notification_id)
        logger.info("idempotency_replay tenant_id=%s notification_id=%s", tenant_id, existing.get("notification_id"))
        return IdempotencyReservation(
            created=False,
            notification_id=str(existing.get("notification_id")),
            outcome=existing,
        )

    async def get(self, tenant_id: str, idempotency_key: str) -> dict[str, Any] | None:
        raw = await self._state.get(_ARENA, _scope_key(tenant_id, idempotency_key))
        if raw is None:
            return None
        return json.loads(raw)

    async def record(self, tenant_id: str, idempotency_key: str, outcome: dict[str, Any]) -> bool:
        # Update the outcome of the same notification only; the original expiry is kept.
        notification_id = str(outcome.get("notification_id"))
        result = await self._state.replace_if_field(
            _ARENA,
            _scope_key(tenant_id, idempotency_key),
            canonical_json(outcome),
            field="notification_id",
            expected=notification_id,
        )
        if result == REPLACE_MISSING:
            logger.warning("idempotency_record_missing tenant_id=%s notification_id=%s", tenant_id, notification_id)
            return False
        if result == REPLACE_CONFLICT:
            logger.warning("idempotency_record_conflict tenant_id=%s incoming=%s", tenant_id, notification_id)
            return False
        return True

    async def release(self, tenant_id: str, idempotency_key: str, notification_id: str) -> bool:
        # Drop a reservation whose admission was denied so the caller can retry later.
        placeholder = {"notification_id": notification_id, "status": STATUS_PROCESSING}
        return await self._state.compare_and_delete(
            _ARENA, _scope_key(tenant_id, idempotency_key), canonical_json(placeholder)
        )
