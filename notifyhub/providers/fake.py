from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable
from uuid import uuid4

from notifyhub.core.errors import ProviderError
from notifyhub.domain.notifications import ProviderMessage
from notifyhub.providers.base import ProviderSendResult

OUTCOME_DELIVERED = "delivered"
OUTCOME_ERROR = "error"
OUTCOME_REJECTED = "rejected"
OUTCOME_HANG = "hang"
OUTCOME_RAISE = "raise"


@dataclass(frozen=True)
class SentMessage:
    message: ProviderMessage
    destination: str


class FakeProvider:
    """Deterministic provider for local runs and tests.

    Outcomes are consumed in order; once the script runs out every send uses
    ``default_outcome``. ``hang`` sleeps past any deadline so callers see a timeout.
    """

    def __init__(
        self,
        name: str,
        channel: str,
        *,
        latency_s: float = 0.0,
        outcomes: Iterable[str] = (),
        default_outcome: str = OUTCOME_DELIVERED,
    ) -> None:
        self.name = name
        self.channel = channel
        self.latency_s = latency_s
        self._outcomes = list(outcomes)
        self.default_outcome = default_outcome
        self.sent: list[SentMessage] = []
        self.calls = 0

    def script(self, *outcomes: str) -> None:
        self._outcomes.extend(outcomes)

    async def send(self, message: ProviderMessage, destination: str, deadline: float) -> ProviderSendResult:
        self.calls += 1
        outcome = self._outcomes.pop(0) if self._outcomes else self.default_outcome
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)
        if outcome == OUTCOME_HANG:
            remaining = deadline - asyncio.get_running_loop().time()
            await asyncio.sleep(max(remaining, 0.0) + 3600.0)
        if outcome == OUTCOME_RAISE:
            raise ProviderError(f"{self.name} connection reset")
        if outcome == OUTCOME_ERROR:
            return ProviderSendResult(delivered=False, error_code=ProviderError.code, error_detail="fake transient failure")
        if outcome == OUTCOME_REJECTED:
            return ProviderSendResult(
                delivered=False,
                error_code="PROVIDER_REJECTED",
                error_detail="fake permanent rejection",
                retryable=False,
            )
        self.sent.append(SentMessage(message=message, destination=destination))
        return ProviderSendResult(delivered=True, provider_message_id=f"{self.name}-{uuid4().hex[:12]}")
