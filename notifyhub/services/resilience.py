from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import math
from typing import Awaitable, Callable, Mapping

from redis.asyncio import Redis

from notifyhub.core.clock import Clock
from notifyhub.core.config import Settings
from notifyhub.core.errors import ProviderUnavailable
from notifyhub.domain.policies import PolicyCatalog, ProviderConfig
from notifyhub.providers.base import ProviderAdapter
from notifyhub.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"

_OUTCOME_FAILURE = "1"
_OUTCOME_SUCCESS = "0"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Open when failures among the window_size most recent calls reach failure_ratio * window_size.
    window_size: int
    failure_ratio: float
    open_seconds: float
    half_open_trials: int

    @property
    def failure_threshold(self) -> int:
        return max(1, int(math.ceil(self.window_size * self.failure_ratio - 1e-9)))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerConfig":
        return cls(
            window_size=settings.cb_window_size,
            failure_ratio=settings.cb_failure_ratio,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass
class CircuitBreakerState:
    # Newest outcome first in window.
    state: str
    opened_at: float | None
    half_open_trials: int
    window: list[str] = field(default_factory=list)


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig,
        clock: Clock | None = None,
        prefix: str = "notifyhub",
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self._redis = redis
        self._config = config
        self._clock = clock or Clock()
        self._prefix = prefix
        self._on_transition = on_transition
        self._local_state = CircuitBreakerState(STATE_CLOSED, None, 0, [])

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{self._prefix}:cb:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Read breaker state from Redis when available; otherwise fall back to local.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        window = await self._redis.lrange(f"{self._key()}:window", 0, self._config.window_size - 1)
        if not raw:
            return CircuitBreakerState(STATE_CLOSED, None, 0, list(window))
        return CircuitBreakerState(
            state=raw.get("state", STATE_CLOSED),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            half_open_trials=int(raw.get("half_open_trials", 0)),
            window=list(window),
        )

    async def _save(self, state: CircuitBreakerState, *, push: str | None = None, clear_window: bool = False) -> None:
        # Persist breaker state in Redis to share across instances.
        if clear_window:
            state.window = []
        if push is not None:
            state.window = ([push] + state.window)[: self._config.window_size]
        if self._redis is None:
            self._local_state = state
            return
        ttl = max(int(self._config.open_seconds * 4), 300)
        window_key = f"{self._key()}:window"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._key(),
                mapping={
                    "state": state.state,
                    "opened_at": str(state.opened_at or ""),
                    "half_open_trials": str(state.half_open_trials),
                },
            )
            pipe.expire(self._key(), ttl)
            if clear_window:
                pipe.delete(window_key)
            if push is not None:
                pipe.lpush(window_key, push)
                pipe.ltrim(window_key, 0, self._config.window_size - 1)
                pipe.expire(window_key, ttl)
            await pipe.execute()

    async def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        # Emit logs on state transitions for operator visibility.
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            if target == STATE_OPEN:
                increment_counter("circuit_breaker_open_total")
            state_value = {STATE_CLOSED: 0.0, STATE_HALF_OPEN: 0.5, STATE_OPEN: 1.0}.get(target, 0.0)
            set_gauge(f"circuit_breaker_state.{self._name}", state_value)
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        return CircuitBreakerState(
            target,
            self._clock.time() if target == STATE_OPEN else None,
            0,
            list(state.window),
        )

    async def state(self) -> str:
        current = await self._load()
        if current.state == STATE_OPEN and self._cooldown_elapsed(current):
            return STATE_HALF_OPEN
        return current.state

    def _cooldown_elapsed(self, state: CircuitBreakerState) -> bool:
        return state.opened_at is not None and (self._clock.time() - state.opened_at) >= self._config.open_seconds

    async def allow(self) -> bool:
        # Decide whether a call may proceed; half-open admits a bounded number of trials.
        state = await self._load()
        if state.state == STATE_OPEN:
            if not self._cooldown_elapsed(state):
                return False
            state = await self._transition(state, STATE_HALF_OPEN)
        if state.state == STATE_HALF_OPEN:
            if state.half_open_trials >= self._config.half_open_trials:
                # A trial that never settled within a cooldown is abandoned; hand out a new one.
                if state.opened_at is not None and not self._cooldown_elapsed(state):
                    return False
                state.half_open_trials = 0
            state.half_open_trials += 1
            # opened_at marks when the latest trial was handed out while half-open.
            state.opened_at = self._clock.time()
            await self._save(state)
            return True
        return True

    async def release_trial(self) -> None:
        # Return an unused half-open trial when the call never reached the provider.
        state = await self._load()
        if state.state != STATE_HALF_OPEN or state.half_open_trials <= 0:
            return
        state.half_open_trials -= 1
        await self._save(state)

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != STATE_CLOSED:
            state = await self._transition(state, STATE_CLOSED)
            await self._save(state, clear_window=True)
            return
        await self._save(state, push=_OUTCOME_SUCCESS)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == STATE_HALF_OPEN:
            # A failed trial re-opens with a fresh cooldown.
            state = await self._transition(state, STATE_OPEN)
            await self._save(state)
            return
        if state.state == STATE_OPEN:
            await self._save(state)
            return
        window = ([_OUTCOME_FAILURE] + state.window)[: self._config.window_size]
        failures = sum(1 for outcome in window if outcome == _OUTCOME_FAILURE)
        if failures >= self._config.failure_threshold:
            opened = await self._transition(state, STATE_OPEN)
            await self._save(opened, clear_window=True)
            return
        await self._save(state, push=_OUTCOME_FAILURE)


@dataclass(frozen=True)
class ProviderSelection:
    adapter: ProviderAdapter
    config: ProviderConfig
    breaker: CircuitBreaker
    failover: bool


class FailoverManager:
    """Picks the first provider of a channel whose breaker admits a call."""

    def __init__(
        self,
        *,
        catalog: PolicyCatalog,
        providers: Mapping[str, ProviderAdapter],
        redis: Redis | None,
        config: CircuitBreakerConfig,
        clock: Clock | None = None,
        prefix: str = "notifyhub",
    ) -> None:
        self._catalog = catalog
        self._providers = providers
        self._redis = redis
        self._config = config
        self._clock = clock or Clock()
        self._prefix = prefix
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, provider_name: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider_name)
        if breaker is None:
            breaker = CircuitBreaker(
                f"provider.{provider_name}",
                redis=self._redis,
                config=self._config,
                clock=self._clock,
                prefix=self._prefix,
            )
            self._breakers[provider_name] = breaker
        return breaker

    async def select(self, channel: str) -> ProviderSelection:
        configs = [c for c in self._catalog.providers_for(channel) if c.name in self._providers]
        for index, config in enumerate(configs):
            breaker = self.breaker(config.name)
            if await breaker.allow():
                if index > 0:
                    logger.warning("provider_failover channel=%s provider=%s", channel, config.name)
                    increment_counter(f"provider_failover_total.{channel}")
                return ProviderSelection(
                    adapter=self._providers[config.name],
                    config=config,
                    breaker=breaker,
                    failover=index > 0,
                )
        increment_counter(f"provider_unavailable_total.{channel}")
        raise ProviderUnavailable(
            f"No provider available for channel {channel}",
            details={"channel": channel, "providers": [c.name for c in configs]},
        )

    async def states(self) -> dict[str, str]:
        return {config.name: await self.breaker(config.name).state() for config in self._catalog.providers}


@dataclass
class BulkheadLease:
    # Track bulkhead ownership to avoid double-releasing.
    bulkhead: "Bulkhead"
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.bulkhead._release()
        self.released = True


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap concurrency for delivery attempts.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)
        self._in_use = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    async def acquire(self) -> BulkheadLease | None:
        # Attempt to acquire immediately; return None if saturated.
        if self._sem.locked():
            return None
        await self._sem.acquire()
        self._in_use += 1
        return BulkheadLease(self)

    def _release(self) -> None:
        self._in_use -= 1
        self._sem.release()
