from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math

from notifyhub.domain.policies import BucketLimit
from notifyhub.services.shared_state import SharedState


logger = logging.getLogger(__name__)

SCOPE_USER = "user"
SCOPE_SERVICE = "service"
SCOPE_TENANT = "tenant"

_ARENA = "rl"


@dataclass(frozen=True)
class BucketSpec:
    # One bucket touched by a check; floor < 0 only while an admin override applies.
    scope: str
    key: str
    rate: float
    ceiling: int
    floor: float
    cost: int
    ttl_s: int


@dataclass(frozen=True)
class BucketDecision:
    allowed: bool
    denied_scope: str | None
    retry_after_ms: int
    remaining: dict[str, float] = field(default_factory=dict)


# All buckets are refilled and checked first; tokens are subtracted only if every bucket passes.
_MULTI_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local count = #KEYS
local tokens = {}
local allowed = 1
local denied = 0
local retry = 0

for i = 1, count do
  local base = 1 + (i - 1) * 5
  local rate = tonumber(ARGV[base + 1])
  local ceiling = tonumber(ARGV[base + 2])
  local floor = tonumber(ARGV[base + 3])
  local cost = tonumber(ARGV[base + 4])
  local data = redis.call("HMGET", KEYS[i], "tokens", "ts")
  local current = tonumber(data[1])
  local ts = tonumber(data[2])
  if current == nil then
    current = ceiling
    ts = now_ms
  end
  if now_ms < ts then
    ts = now_ms
  end
  current = math.min(ceiling, current + ((now_ms - ts) / 1000.0) * rate)
  tokens[i] = current
  if current - cost < floor then
    allowed = 0
    local wait = 1000
    if rate > 0 then
      wait = math.ceil(((cost - (current - floor)) / rate) * 1000)
    end
    if wait > retry then
      retry = wait
      denied = i
    end
  end
end

local result = {allowed, denied, retry}
for i = 1, count do
  local base = 1 + (i - 1) * 5
  local cost = tonumber(ARGV[base + 4])
  local ttl = tonumber(ARGV[base + 5])
  if allowed == 1 then
    tokens[i] = tokens[i] - cost
  end
  redis.call("HSET", KEYS[i], "tokens", tokens[i], "ts", now_ms)
  redis.call("EXPIRE", KEYS[i], ttl)
  table.insert(result, tostring(tokens[i]))
end
return result
"""


def _calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    ceiling: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing the ceiling.
    if tokens is None:
        tokens = float(ceiling)
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(ceiling), tokens + (delta_s * rate))


def _retry_after_ms(tokens: float, *, rate: float, cost: int, floor: float = 0.0) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    available = tokens - floor
    if available >= cost:
        return 0
    if rate <= 0:
        return 1000
    return int(math.ceil(((cost - available) / rate) * 1000))


def _ttl_seconds(rate: float, span: float) -> int:
    # Expire idle buckets after twice the time to refill from floor to ceiling.
    if rate <= 0:
        return max(1, int(math.ceil(span)))
    return max(1, int(math.ceil((span / rate) * 2)))


def bucket_spec(
    *,
    scope: str,
    key: str,
    limit: BucketLimit,
    cost: int = 1,
    override: bool = False,
) -> BucketSpec:
    ceiling = limit.ceiling
    # An override lets the bucket draw down past empty, but never past the hard cap.
    floor = -float(limit.hard_cap - ceiling) if override else 0.0
    return BucketSpec(
        scope=scope,
        key=key,
        rate=limit.refill_rate,
        ceiling=ceiling,
        floor=floor,
        cost=cost,
        ttl_s=_ttl_seconds(limit.refill_rate, ceiling - floor),
    )


class TokenBucketLimiter:
    def __init__(self, state: SharedState) -> None:
        self._state = state
        self._local: dict[str, tuple[float, int]] = {}

    async def consume(self, buckets: list[BucketSpec]) -> BucketDecision:
        if not buckets:
            return BucketDecision(allowed=True, denied_scope=None, retry_after_ms=0)
        now_ms = self._state.clock.time_ms()
        redis = self._state.redis
        if redis is None:
            return self._consume_local(buckets, now_ms)

        keys = [self._state.key(_ARENA, bucket.key) for bucket in buckets]
        args: list[float | int] = [now_ms]
        for bucket in buckets:
            args.extend([bucket.rate, bucket.ceiling, bucket.floor, bucket.cost, bucket.ttl_s])
        result = await redis.eval(_MULTI_BUCKET_LUA, len(keys), *keys, *args)
        allowed = bool(int(result[0]))
        denied_index = int(result[1])
        retry_after_ms = int(result[2])
        remaining = {bucket.key: float(result[3 + idx]) for idx, bucket in enumerate(buckets)}
        denied_scope = buckets[denied_index - 1].scope if not allowed and denied_index > 0 else None
        return BucketDecision(
            allowed=allowed,
            denied_scope=denied_scope,
            retry_after_ms=max(1, retry_after_ms) if not allowed else 0,
            remaining=remaining,
        )

    def _consume_local(self, buckets: list[BucketSpec], now_ms: int) -> BucketDecision:
        # Mirrors the Lua script; no awaits, so the check-and-consume is atomic in-process.
        refilled: list[float] = []
        denied_scope: str | None = None
        retry_after_ms = 0
        for bucket in buckets:
            stored = self._local.get(bucket.key)
            tokens = _calculate_tokens(
                tokens=stored[0] if stored else None,
                last_ms=stored[1] if stored else None,
                now_ms=now_ms,
                rate=bucket.rate,
                ceiling=bucket.ceiling,
            )
            refilled.append(tokens)
            wait = _retry_after_ms(tokens, rate=bucket.rate, cost=bucket.cost, floor=bucket.floor)
            if wait > retry_after_ms:
                retry_after_ms = wait
                denied_scope = bucket.scope
        allowed = denied_scope is None
        remaining: dict[str, float] = {}
        for bucket, tokens in zip(buckets, refilled):
            if allowed:
                tokens -= bucket.cost
            self._local[bucket.key] = (tokens, now_ms)
            remaining[bucket.key] = tokens
        return BucketDecision(
            allowed=allowed,
            denied_scope=denied_scope,
            retry_after_ms=retry_after_ms,
            remaining=remaining,
        )
