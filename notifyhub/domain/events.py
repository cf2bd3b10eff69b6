from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping


@dataclass(frozen=True)
class EventEnvelope:
    # Bus envelope published by upstream services; templateKey is optional and wins over messageType.
    event_id: str
    message_type: str
    service_origin: str
    channels: tuple[str, ...]
    occurred_at: datetime | None = None
    user_id: str | None = None
    correlation_id: str | None = None
    idempotency_key: str | None = None
    priority: str = "normal"
    template_key: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)
    contacts: Mapping[str, str] = field(default_factory=dict)

    @property
    def locale(self) -> str | None:
        value = self.metadata.get("locale")
        return str(value) if value else None
