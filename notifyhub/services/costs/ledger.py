from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import math

from notifyhub.core.clock import Clock, month_bounds
from notifyhub.domain.notifications import CHANNEL_SMS, WILDCARD, LedgerEntry
from notifyhub.domain.policies import BudgetConfig
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SMS_SEGMENT_CHARS = 160


def billable_units(channel: str, body: str) -> int:
    # SMS is billed per 160-character segment; every other channel per message.
    if channel == CHANNEL_SMS:
        return max(1, int(math.ceil(len(body) / SMS_SEGMENT_CHARS)))
    return 1


@dataclass(frozen=True)
class SpendSummary:
    budget: BudgetConfig
    spend_micros: int
    period_start: datetime
    period_end: datetime

    @property
    def ratio(self) -> float:
        if self.budget.monthly_budget_micros <= 0:
            return float("inf") if self.spend_micros > 0 else 0.0
        return self.spend_micros / float(self.budget.monthly_budget_micros)


class CostLedger:
    def __init__(self, store: NotificationStore, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or Clock()

    async def record(
        self,
        *,
        tenant_id: str,
        service_origin: str,
        channel: str,
        provider: str,
        unit_cost_micros: int,
        units: int,
        notification_id: str,
        correlation_id: str,
    ) -> LedgerEntry:
        # Only successful provider sends reach the ledger.
        entry = LedgerEntry(
            tenant_id=tenant_id,
            service_origin=service_origin,
            channel=channel,
            provider=provider,
            unit_cost_micros=unit_cost_micros,
            units=units,
            notification_id=notification_id,
            correlation_id=correlation_id,
            occurred_at=self._clock.now(),
        )
        await self._store.append_ledger(entry)
        increment_counter(f"ledger_cost_micros.{channel}", entry.total_cost_micros)
        logger.debug(
            "ledger_entry_appended tenant_id=%s channel=%s provider=%s total_micros=%s",
            tenant_id,
            channel,
            provider,
            entry.total_cost_micros,
        )
        return entry

    async def month_spend(self, budget: BudgetConfig, *, at: datetime | None = None) -> SpendSummary:
        start, end = month_bounds(at or self._clock.now())
        spend = await self._store.sum_ledger(
            tenant_id=budget.tenant_id,
            service_origin=None if budget.service_origin == WILDCARD else budget.service_origin,
            channel=None if budget.channel == WILDCARD else budget.channel,
            since=start,
            until=end,
        )
        return SpendSummary(budget=budget, spend_micros=spend, period_start=start, period_end=end)
