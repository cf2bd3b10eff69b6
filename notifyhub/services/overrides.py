from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hmac
import json
import logging
from typing import Any
from uuid import uuid4

from notifyhub.core.clock import Clock
from notifyhub.core.errors import OverrideRejected
from notifyhub.core.secrets import ADMIN_OVERRIDE_TOKEN, SecretResolver
from notifyhub.domain.notifications import NotificationRequest
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.services.audit import (
    EVENT_OVERRIDE_GRANTED,
    EVENT_OVERRIDE_REJECTED,
    EVENT_OVERRIDE_USED,
    record_event,
)
from notifyhub.services.shared_state import SharedState
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_ARENA = "override"


@dataclass(frozen=True)
class AdminOverrideCommand:
    tenant_id: str
    actor_id: str
    credential: str
    reason: str
    ttl_s: int
    service_origin: str | None = None
    channel: str | None = None


@dataclass(frozen=True)
class AdminOverrideGrant:
    id: str
    tenant_id: str
    actor_id: str
    reason: str
    granted_at: datetime
    expires_at: datetime
    service_origin: str | None = None
    channel: str | None = None

    def covers(self, request: NotificationRequest) -> bool:
        if request.tenant_id != self.tenant_id:
            return False
        if self.service_origin is not None and self.service_origin != request.service_origin:
            return False
        if self.channel is not None and self.channel not in request.channels:
            return False
        return True

    def to_payload(self) -> dict[str, Any]:
        return {
            "override_id": self.id,
            "tenant_id": self.tenant_id,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "granted_at": self.granted_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "service_origin": self.service_origin,
            "channel": self.channel,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AdminOverrideGrant":
        return cls(
            id=payload["override_id"],
            tenant_id=payload["tenant_id"],
            actor_id=payload["actor_id"],
            reason=payload["reason"],
            granted_at=datetime.fromisoformat(payload["granted_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            service_origin=payload.get("service_origin"),
            channel=payload.get("channel"),
        )


class OverrideService:
    """Issues and resolves audited, time-boxed admin override grants."""

    def __init__(
        self,
        *,
        state: SharedState,
        store: NotificationStore,
        secrets: SecretResolver,
        max_ttl_s: int,
        clock: Clock | None = None,
    ) -> None:
        self._state = state
        self._store = store
        self._secrets = secrets
        self._max_ttl_s = max_ttl_s
        self._clock = clock or Clock()

    def _credential_valid(self, credential: str) -> bool:
        expected = self._secrets.get_secret(ADMIN_OVERRIDE_TOKEN)
        if not expected or not credential:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), credential.encode("utf-8"))

    async def _reject(self, command: AdminOverrideCommand, message: str) -> OverrideRejected:
        logger.warning("override_rejected tenant_id=%s actor_id=%s reason=%s", command.tenant_id, command.actor_id, message)
        increment_counter("override_rejected_total")
        await record_event(
            self._store,
            occurred_at=self._clock.now(),
            tenant_id=command.tenant_id,
            actor_type="admin",
            actor_id=command.actor_id,
            event_type=EVENT_OVERRIDE_REJECTED,
            outcome="failure",
            resource_type="override",
            metadata={"message": message, "ttl_s": command.ttl_s},
            error_code=OverrideRejected.code,
        )
        return OverrideRejected(message)

    async def grant(self, command: AdminOverrideCommand) -> AdminOverrideGrant:
        if not self._credential_valid(command.credential):
            raise await self._reject(command, "Admin credential is not valid for overrides")
        if not command.reason or not command.reason.strip():
            raise await self._reject(command, "Override reason is required")
        if command.ttl_s <= 0 or command.ttl_s > self._max_ttl_s:
            raise await self._reject(command, f"Override ttl_s must be between 1 and {self._max_ttl_s}")

        now = self._clock.now()
        grant = AdminOverrideGrant(
            id=uuid4().hex,
            tenant_id=command.tenant_id,
            actor_id=command.actor_id,
            reason=command.reason.strip(),
            granted_at=now,
            expires_at=now + timedelta(seconds=command.ttl_s),
            service_origin=command.service_origin,
            channel=command.channel,
        )
        await self._state.put(_ARENA, f"{grant.tenant_id}:{grant.id}", json.dumps(grant.to_payload()), ttl_s=command.ttl_s)
        await record_event(
            self._store,
            occurred_at=now,
            tenant_id=grant.tenant_id,
            actor_type="admin",
            actor_id=grant.actor_id,
            event_type=EVENT_OVERRIDE_GRANTED,
            outcome="success",
            resource_type="override",
            resource_id=grant.id,
            metadata={
                "reason": grant.reason,
                "ttl_s": command.ttl_s,
                "service_origin": grant.service_origin,
                "channel": grant.channel,
            },
            best_effort=False,
        )
        logger.info("override_granted tenant_id=%s override_id=%s ttl_s=%s", grant.tenant_id, grant.id, command.ttl_s)
        increment_counter("override_granted_total")
        return grant

    async def resolve(self, override_id: str | None, request: NotificationRequest) -> AdminOverrideGrant | None:
        if not override_id:
            return None
        raw = await self._state.get(_ARENA, f"{request.tenant_id}:{override_id}")
        if raw is None:
            return None
        grant = AdminOverrideGrant.from_payload(json.loads(raw))
        if grant.expires_at <= self._clock.now() or not grant.covers(request):
            return None
        return grant

    async def record_use(self, grant: AdminOverrideGrant, request: NotificationRequest, *, reason: str) -> None:
        await record_event(
            self._store,
            occurred_at=self._clock.now(),
            tenant_id=request.tenant_id,
            actor_type="service",
            actor_id=request.service_origin,
            event_type=EVENT_OVERRIDE_USED,
            outcome="success",
            resource_type="override",
            resource_id=grant.id,
            correlation_id=request.correlation_id,
            metadata={"applied_to": reason, "granted_by": grant.actor_id},
        )
