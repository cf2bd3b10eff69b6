from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from notifyhub.domain.notifications import ProviderMessage


@dataclass(frozen=True)
class ProviderSendResult:
    delivered: bool
    provider_message_id: str | None = None
    error_code: str | None = None
    error_detail: str | None = None
    retryable: bool = True


class ProviderAdapter(Protocol):
    name: str
    channel: str

    # deadline is an absolute event-loop time; adapters must not run past it.
    async def send(self, message: ProviderMessage, destination: str, deadline: float) -> ProviderSendResult:
        ...
