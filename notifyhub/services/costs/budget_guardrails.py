from __future__ import annotations

from dataclasses import dataclass, field
import logging

from notifyhub.core.clock import Clock, year_month
from notifyhub.core.errors import BudgetExceeded
from notifyhub.domain.notifications import NotificationRequest
from notifyhub.domain.policies import BudgetConfig, PolicyCatalog
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.services.audit import EVENT_BUDGET_BLOCKED, EVENT_BUDGET_WARNING, record_event
from notifyhub.services.costs.ledger import CostLedger, SpendSummary
from notifyhub.services.shared_state import SharedState
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

WARNING_BUDGET = "BUDGET_WARNING"

_WARN_ARENA = "budget-warn"
# Dedupe markers outlive the longest month.
_WARN_MARKER_TTL_S = 32 * 86400


@dataclass(frozen=True)
class BudgetDecision:
    # blocked lists budgets at or over 100%; warned lists those past the warn ratio.
    warned: tuple[SpendSummary, ...] = ()
    blocked: tuple[SpendSummary, ...] = ()
    warnings: tuple[str, ...] = field(default=())

    @property
    def allowed(self) -> bool:
        return not self.blocked


class BudgetGuardrail:
    def __init__(
        self,
        *,
        catalog: PolicyCatalog,
        ledger: CostLedger,
        store: NotificationStore,
        state: SharedState,
        default_warn_ratio: float = 0.8,
        clock: Clock | None = None,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._store = store
        self._state = state
        self._default_warn_ratio = default_warn_ratio
        self._clock = clock or Clock()

    def _warn_ratio(self, budget: BudgetConfig) -> float:
        return budget.warn_ratio if budget.warn_ratio is not None else self._default_warn_ratio

    def budgets_for(self, request: NotificationRequest) -> list[BudgetConfig]:
        # Deduplicate budgets that match more than one requested channel.
        seen: dict[str, BudgetConfig] = {}
        for channel in request.channels:
            for budget in self._catalog.budgets_for(request.tenant_id, request.service_origin, channel):
                seen.setdefault(budget.scope, budget)
        return list(seen.values())

    async def evaluate(self, request: NotificationRequest) -> BudgetDecision:
        # Evaluate budgets before any tokens are consumed.
        now = self._clock.now()
        warned: list[SpendSummary] = []
        blocked: list[SpendSummary] = []
        for budget in self.budgets_for(request):
            summary = await self._ledger.month_spend(budget, at=now)
            if summary.ratio >= 1.0:
                blocked.append(summary)
            elif summary.ratio >= self._warn_ratio(budget):
                warned.append(summary)
        warnings = tuple(f"{WARNING_BUDGET}:{summary.budget.scope}" for summary in warned)
        for summary in warned:
            await self._emit_warning(request, summary)
        return BudgetDecision(warned=tuple(warned), blocked=tuple(blocked), warnings=warnings)

    async def _emit_warning(self, request: NotificationRequest, summary: SpendSummary) -> None:
        logger.warning(
            "budget_warning tenant_id=%s scope=%s spend_micros=%s budget_micros=%s",
            request.tenant_id,
            summary.budget.scope,
            summary.spend_micros,
            summary.budget.monthly_budget_micros,
        )
        increment_counter("budget_warning_total")
        marker = f"{summary.budget.scope}:{year_month(summary.period_start)}"
        # One audit row per scope per month.
        first = await self._state.set_if_absent(_WARN_ARENA, marker, "1", ttl_s=_WARN_MARKER_TTL_S)
        if not first:
            return
        await record_event(
            self._store,
            occurred_at=self._clock.now(),
            tenant_id=request.tenant_id,
            actor_type="system",
            actor_id=None,
            event_type=EVENT_BUDGET_WARNING,
            outcome="success",
            resource_type="budget",
            resource_id=summary.budget.scope,
            correlation_id=request.correlation_id,
            metadata={
                "spend_micros": summary.spend_micros,
                "budget_micros": summary.budget.monthly_budget_micros,
                "ratio": round(summary.ratio, 4),
            },
        )

    async def block(self, request: NotificationRequest, decision: BudgetDecision) -> BudgetExceeded:
        # Record the block and build the caller-facing error.
        summary = decision.blocked[0]
        override_eligible = all(s.budget.override_allowed for s in decision.blocked)
        logger.warning(
            "budget_blocked tenant_id=%s scope=%s spend_micros=%s budget_micros=%s",
            request.tenant_id,
            summary.budget.scope,
            summary.spend_micros,
            summary.budget.monthly_budget_micros,
        )
        increment_counter("budget_blocked_total")
        await record_event(
            self._store,
            occurred_at=self._clock.now(),
            tenant_id=request.tenant_id,
            actor_type="service",
            actor_id=request.service_origin,
            event_type=EVENT_BUDGET_BLOCKED,
            outcome="failure",
            resource_type="budget",
            resource_id=summary.budget.scope,
            correlation_id=request.correlation_id,
            metadata={
                "spend_micros": summary.spend_micros,
                "budget_micros": summary.budget.monthly_budget_micros,
                "override_eligible": override_eligible,
            },
            error_code=BudgetExceeded.code,
        )
        return BudgetExceeded(
            f"Monthly budget reached for {summary.budget.scope}",
            override_eligible=override_eligible,
            budget_micros=summary.budget.monthly_budget_micros,
            spend_micros=summary.spend_micros,
            scope=summary.budget.scope,
        )
