from __future__ import annotations

import json
from typing import Any, Iterable

from pydantic import BaseModel, Field, field_validator

from notifyhub.core.config import Settings
from notifyhub.domain.notifications import (
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    CHANNEL_REALTIME,
    CHANNEL_SMS,
    WILDCARD,
)


class RetryPolicy(BaseModel):
    service_origin: str = WILDCARD
    channel: str = WILDCARD
    max_attempts: int = Field(default=6, ge=1)
    base_delay_s: float = Field(default=5.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay_s: float = Field(default=3600.0, ge=0)
    jitter_ms: int = Field(default=1000, ge=0)
    timeout_s: float = Field(default=30.0, gt=0)


class BucketLimit(BaseModel):
    # capacity tokens refill over window_s; burst adds headroom; max_cap is the hard ceiling.
    capacity: int = Field(gt=0)
    window_s: int = Field(gt=0)
    burst: int = Field(default=0, ge=0)
    max_cap: int | None = Field(default=None, gt=0)

    @property
    def refill_rate(self) -> float:
        return self.capacity / float(self.window_s)

    @property
    def ceiling(self) -> int:
        limit = self.capacity + self.burst
        if self.max_cap is not None:
            return min(limit, self.max_cap)
        return limit

    @property
    def hard_cap(self) -> int:
        return self.max_cap if self.max_cap is not None else self.ceiling


class RateLimitConfig(BaseModel):
    tenant_id: str | None = None
    service_origin: str = WILDCARD
    channel: str = WILDCARD
    enabled: bool = True
    user: BucketLimit | None = None
    service: BucketLimit | None = None
    tenant: BucketLimit | None = None


class BudgetConfig(BaseModel):
    tenant_id: str
    service_origin: str = WILDCARD
    channel: str = WILDCARD
    monthly_budget_micros: int = Field(ge=0)
    warn_ratio: float | None = Field(default=None, gt=0, le=1)
    override_allowed: bool = True

    @property
    def scope(self) -> str:
        return f"{self.tenant_id}/{self.service_origin}/{self.channel}"


class ProviderConfig(BaseModel):
    name: str
    channel: str
    # fake providers deliver locally; webhook providers POST to endpoint.
    kind: str = "fake"
    role: str = "primary"
    unit_cost_micros: int = Field(default=0, ge=0)
    endpoint: str | None = None
    api_key_secret: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("role")
    @classmethod
    def _role(cls, value: str) -> str:
        if value not in {"primary", "secondary"}:
            raise ValueError("role must be primary or secondary")
        return value


DEFAULT_RATE_LIMIT = RateLimitConfig(
    user=BucketLimit(capacity=60, window_s=3600, burst=20, max_cap=100),
    service=BucketLimit(capacity=50000, window_s=86400, burst=20, max_cap=75000),
)

DEFAULT_PROVIDERS = [
    ProviderConfig(name="fcm", channel=CHANNEL_PUSH, unit_cost_micros=0),
    ProviderConfig(name="twilio", channel=CHANNEL_SMS, unit_cost_micros=7900),
    ProviderConfig(name="aws_sns", channel=CHANNEL_SMS, role="secondary", unit_cost_micros=6450),
    ProviderConfig(name="sendgrid", channel=CHANNEL_EMAIL, unit_cost_micros=1000),
    ProviderConfig(name="acs", channel=CHANNEL_EMAIL, role="secondary", unit_cost_micros=250),
    ProviderConfig(name="signalr", channel=CHANNEL_REALTIME, unit_cost_micros=0),
]

DEFAULT_MESSAGE_TYPES = {
    "auth.otp_requested": "auth_otp",
    "auth.password_reset_requested": "auth_password_reset",
    "auth.email_verification_requested": "auth_email_verification",
    "orders.order_confirmed": "order_confirmed",
    "orders.driver_assigned": "order_driver_assigned",
    "orders.order_delivered": "order_delivered",
    "ridesharing.ride_accepted": "ride_accepted",
    "ridesharing.driver_arriving": "ride_driver_arriving",
    "ridesharing.ride_completed": "ride_completed",
    "products.back_in_stock": "product_back_in_stock",
}


def _specificity(*pairs: tuple[str | None, str | None, int]) -> int | None:
    # Sum weights of exact matches; None when a non-wildcard field does not match.
    score = 0
    for configured, requested, weight in pairs:
        if configured is None or configured == WILDCARD:
            continue
        if configured != requested:
            return None
        score += weight
    return score


def _most_specific(candidates: Iterable[tuple[int | None, Any]]) -> Any | None:
    best = None
    best_score = -1
    for score, item in candidates:
        if score is not None and score > best_score:
            best, best_score = item, score
    return best


class PolicyCatalog:
    """Read-only policy lookups used at admission and dispatch time.

    Every lookup is most-specific-match-wins: tenant outranks service origin,
    which outranks channel; wildcard rows are the fallback.
    """

    def __init__(
        self,
        *,
        retry_policies: list[RetryPolicy] | None = None,
        rate_limits: list[RateLimitConfig] | None = None,
        budgets: list[BudgetConfig] | None = None,
        providers: list[ProviderConfig] | None = None,
        message_types: dict[str, str] | None = None,
    ) -> None:
        self.retry_policies = list(retry_policies or [])
        if not any(p.service_origin == WILDCARD and p.channel == WILDCARD for p in self.retry_policies):
            self.retry_policies.append(RetryPolicy())
        self.rate_limits = list(rate_limits) if rate_limits else [DEFAULT_RATE_LIMIT]
        self.budgets = list(budgets or [])
        self.providers = list(providers) if providers else list(DEFAULT_PROVIDERS)
        self.message_types = {**DEFAULT_MESSAGE_TYPES, **(message_types or {})}

    @classmethod
    def from_settings(cls, settings: Settings) -> "PolicyCatalog":
        return cls(
            retry_policies=[RetryPolicy.model_validate(row) for row in json.loads(settings.retry_policies_json or "[]")],
            rate_limits=[RateLimitConfig.model_validate(row) for row in json.loads(settings.rate_limits_json or "[]")],
            budgets=[BudgetConfig.model_validate(row) for row in json.loads(settings.budgets_json or "[]")],
            providers=[ProviderConfig.model_validate(row) for row in json.loads(settings.providers_json or "[]")],
            message_types={str(k): str(v) for k, v in json.loads(settings.message_types_json or "{}").items()},
        )

    def retry_policy(self, service_origin: str, channel: str) -> RetryPolicy:
        policy = _most_specific(
            (_specificity((p.service_origin, service_origin, 2), (p.channel, channel, 1)), p)
            for p in self.retry_policies
        )
        return policy or RetryPolicy()

    def rate_limit(self, tenant_id: str, service_origin: str, channel: str) -> RateLimitConfig | None:
        return _most_specific(
            (
                _specificity(
                    (c.tenant_id, tenant_id, 4),
                    (c.service_origin, service_origin, 2),
                    (c.channel, channel, 1),
                ),
                c,
            )
            for c in self.rate_limits
        )

    def budgets_for(self, tenant_id: str, service_origin: str, channel: str) -> list[BudgetConfig]:
        # Every matching budget applies; a request must fit all of them.
        return [
            b
            for b in self.budgets
            if _specificity(
                (b.tenant_id, tenant_id, 4),
                (b.service_origin, service_origin, 2),
                (b.channel, channel, 1),
            )
            is not None
        ]

    def providers_for(self, channel: str) -> list[ProviderConfig]:
        # Primary first, then secondaries in configuration order.
        rows = [p for p in self.providers if p.channel == channel]
        return sorted(rows, key=lambda p: 0 if p.role == "primary" else 1)

    def provider(self, name: str) -> ProviderConfig | None:
        return next((p for p in self.providers if p.name == name), None)

    def template_for_message_type(self, message_type: str) -> str | None:
        return self.message_types.get(message_type)
