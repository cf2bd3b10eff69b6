from __future__ import annotations

from dataclasses import dataclass
import logging

from notifyhub.core.errors import RateLimitExceeded
from notifyhub.domain.notifications import NotificationRequest
from notifyhub.domain.policies import PolicyCatalog
from notifyhub.services.costs.budget_guardrails import BudgetGuardrail
from notifyhub.services.overrides import AdminOverrideGrant, OverrideService
from notifyhub.services.rate_limit import (
    SCOPE_SERVICE,
    SCOPE_TENANT,
    SCOPE_USER,
    BucketSpec,
    TokenBucketLimiter,
    bucket_spec,
)
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GovernorDecision:
    warnings: tuple[str, ...] = ()
    override_id: str | None = None
    override_applied: tuple[str, ...] = ()


class RateBudgetGovernor:
    """Gates admissions on monthly budgets first, then on every applicable token bucket."""

    def __init__(
        self,
        *,
        catalog: PolicyCatalog,
        limiter: TokenBucketLimiter,
        budgets: BudgetGuardrail,
        overrides: OverrideService,
    ) -> None:
        self._catalog = catalog
        self._limiter = limiter
        self._budgets = budgets
        self._overrides = overrides

    def buckets_for(self, request: NotificationRequest, *, override: bool = False) -> list[BucketSpec]:
        buckets: list[BucketSpec] = []
        tenant = request.tenant_id
        for channel in request.channels:
            config = self._catalog.rate_limit(tenant, request.service_origin, channel)
            if config is None or not config.enabled:
                continue
            # Broadcasts have no user; only service and tenant scopes apply.
            if config.user is not None and request.user_id:
                buckets.append(
                    bucket_spec(
                        scope=SCOPE_USER,
                        key=f"{SCOPE_USER}:{tenant}:{request.user_id}:{channel}",
                        limit=config.user,
                        override=override,
                    )
                )
            if config.service is not None:
                buckets.append(
                    bucket_spec(
                        scope=SCOPE_SERVICE,
                        key=f"{SCOPE_SERVICE}:{tenant}:{request.service_origin}:{channel}",
                        limit=config.service,
                        override=override,
                    )
                )
            if config.tenant is not None:
                buckets.append(
                    bucket_spec(
                        scope=SCOPE_TENANT,
                        key=f"{SCOPE_TENANT}:{tenant}:{channel}",
                        limit=config.tenant,
                        override=override,
                    )
                )
        return buckets

    async def check(self, request: NotificationRequest) -> GovernorDecision:
        grant: AdminOverrideGrant | None = await self._overrides.resolve(request.override_id, request)
        if request.override_id and grant is None:
            logger.warning(
                "override_not_applicable tenant_id=%s override_id=%s", request.tenant_id, request.override_id
            )

        applied: list[str] = []
        budget = await self._budgets.evaluate(request)
        if not budget.allowed:
            eligible = all(summary.budget.override_allowed for summary in budget.blocked)
            if grant is None or not eligible:
                raise await self._budgets.block(request, budget)
            applied.append("budget")

        buckets = self.buckets_for(request, override=grant is not None)
        decision = await self._limiter.consume(buckets)
        if not decision.allowed:
            increment_counter(f"rate_limited_total.{decision.denied_scope}")
            logger.info(
                "rate_limited tenant_id=%s service_origin=%s scope=%s retry_after_ms=%s",
                request.tenant_id,
                request.service_origin,
                decision.denied_scope,
                decision.retry_after_ms,
            )
            raise RateLimitExceeded(
                f"Rate limit exceeded for {decision.denied_scope} scope",
                retry_after_ms=decision.retry_after_ms,
                scope=decision.denied_scope or "unknown",
            )
        if grant is not None and any(tokens < 0 for tokens in decision.remaining.values()):
            applied.append("rate")

        if grant is not None and applied:
            await self._overrides.record_use(grant, request, reason=",".join(applied))
        return GovernorDecision(
            warnings=budget.warnings,
            override_id=grant.id if grant is not None else None,
            override_applied=tuple(applied),
        )
