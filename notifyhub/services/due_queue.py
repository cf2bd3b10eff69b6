from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import math
from uuid import uuid4

from redis.asyncio import Redis

from notifyhub.core.clock import Clock


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    notification_id: str
    token: str
    expires_at_ms: int


# Claimed members are re-scored to the lease expiry so an abandoned lease becomes due again.
_CLAIM_LUA = r"""
local now_ms = tonumber(ARGV[1])
local lease_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local token = ARGV[4]
local lease_prefix = ARGV[5]
local ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", now_ms, "LIMIT", 0, limit)
for _, id in ipairs(ids) do
  redis.call("ZADD", KEYS[1], now_ms + lease_ms, id)
  redis.call("SET", lease_prefix .. id, token, "PX", lease_ms)
end
return ids
"""

_RENEW_LUA = r"""
if redis.call("GET", KEYS[2]) ~= ARGV[1] then
  return 0
end
local lease_ms = tonumber(ARGV[3])
redis.call("ZADD", KEYS[1], "XX", tonumber(ARGV[2]) + lease_ms, ARGV[4])
redis.call("PEXPIRE", KEYS[2], lease_ms)
return 1
"""

_RELEASE_LUA = r"""
if redis.call("GET", KEYS[2]) ~= ARGV[1] then
  return 0
end
redis.call("ZADD", KEYS[1], "XX", tonumber(ARGV[2]), ARGV[3])
redis.call("DEL", KEYS[2])
return 1
"""


class DueQueue:
    """Sorted set of notification ids scored by due time in epoch milliseconds."""

    def __init__(self, redis: Redis | None, *, prefix: str = "notifyhub", clock: Clock | None = None) -> None:
        self._redis = redis
        self._prefix = prefix
        self._clock = clock or Clock()
        self._scores: dict[str, int] = {}
        self._leases: dict[str, tuple[str, int]] = {}

    @property
    def _zset_key(self) -> str:
        return f"{self._prefix}:due"

    @property
    def _lease_prefix(self) -> str:
        return f"{self._prefix}:due-lease:"

    def _lease_key(self, notification_id: str) -> str:
        return f"{self._lease_prefix}{notification_id}"

    async def schedule(self, notification_id: str, due_at: datetime) -> None:
        # (Re)scheduling drops any lease so a running heartbeat cannot move the item again.
        due_ms = int(due_at.timestamp() * 1000)
        if self._redis is None:
            self._scores[notification_id] = due_ms
            self._leases.pop(notification_id, None)
            return
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self._zset_key, {notification_id: due_ms})
            pipe.delete(self._lease_key(notification_id))
            await pipe.execute()

    async def remove(self, notification_id: str) -> None:
        if self._redis is None:
            self._scores.pop(notification_id, None)
            self._leases.pop(notification_id, None)
            return
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._zset_key, notification_id)
            pipe.delete(self._lease_key(notification_id))
            await pipe.execute()

    async def claim(self, *, limit: int, lease_s: float) -> list[Lease]:
        if limit <= 0:
            return []
        now_ms = self._clock.time_ms()
        lease_ms = max(1, int(math.ceil(lease_s * 1000)))
        token = uuid4().hex
        if self._redis is None:
            due = sorted(
                (score, notification_id) for notification_id, score in self._scores.items() if score <= now_ms
            )[:limit]
            leases: list[Lease] = []
            for _, notification_id in due:
                self._scores[notification_id] = now_ms + lease_ms
                self._leases[notification_id] = (token, now_ms + lease_ms)
                leases.append(Lease(notification_id, token, now_ms + lease_ms))
            if leases:
                logger.debug("due_items_claimed count=%s lease_ms=%s", len(leases), lease_ms)
            return leases
        ids = await self._redis.eval(
            _CLAIM_LUA, 1, self._zset_key, now_ms, lease_ms, limit, token, self._lease_prefix
        )
        leases = [Lease(str(notification_id), token, now_ms + lease_ms) for notification_id in ids or []]
        if leases:
            logger.debug("due_items_claimed count=%s lease_ms=%s", len(leases), lease_ms)
        return leases

    async def renew(self, lease: Lease, *, lease_s: float) -> bool:
        now_ms = self._clock.time_ms()
        lease_ms = max(1, int(math.ceil(lease_s * 1000)))
        if self._redis is None:
            held = self._leases.get(lease.notification_id)
            if (
                held is None
                or held[0] != lease.token
                or held[1] <= now_ms
                or lease.notification_id not in self._scores
            ):
                return False
            self._scores[lease.notification_id] = now_ms + lease_ms
            self._leases[lease.notification_id] = (lease.token, now_ms + lease_ms)
            return True
        renewed = await self._redis.eval(
            _RENEW_LUA,
            2,
            self._zset_key,
            self._lease_key(lease.notification_id),
            lease.token,
            now_ms,
            lease_ms,
            lease.notification_id,
        )
        return bool(int(renewed or 0))

    async def release(self, lease: Lease) -> bool:
        # Hand a claimed item back as due now.
        now_ms = self._clock.time_ms()
        if self._redis is None:
            held = self._leases.get(lease.notification_id)
            if held is None or held[0] != lease.token or held[1] <= now_ms:
                return False
            self._leases.pop(lease.notification_id, None)
            if lease.notification_id in self._scores:
                self._scores[lease.notification_id] = now_ms
            return True
        released = await self._redis.eval(
            _RELEASE_LUA,
            2,
            self._zset_key,
            self._lease_key(lease.notification_id),
            lease.token,
            now_ms,
            lease.notification_id,
        )
        return bool(int(released or 0))

    async def due_at(self, notification_id: str) -> int | None:
        if self._redis is None:
            return self._scores.get(notification_id)
        score = await self._redis.zscore(self._zset_key, notification_id)
        return int(score) if score is not None else None

    async def size(self) -> int:
        if self._redis is None:
            return len(self._scores)
        return int(await self._redis.zcard(self._zset_key))
