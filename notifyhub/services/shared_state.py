from __future__ import annotations

import asyncio
import json
import logging
import math

from redis.asyncio import Redis

from notifyhub.core.clock import Clock
from notifyhub.core.config import Settings


logger = logging.getLogger(__name__)

_COMPARE_AND_DELETE_LUA = r"""
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""

# Replace a JSON value only while one of its fields still holds the expected value.
_REPLACE_IF_FIELD_LUA = r"""
local current = redis.call("GET", KEYS[1])
if not current then
  return -1
end
local ok, decoded = pcall(cjson.decode, current)
if not ok or type(decoded) ~= "table" or decoded[ARGV[2]] ~= ARGV[3] then
  return 0
end
redis.call("SET", KEYS[1], ARGV[1], "KEEPTTL")
return 1
"""

REPLACE_MISSING = -1
REPLACE_CONFLICT = 0
REPLACE_DONE = 1


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


def get_shared_redis(settings: Settings) -> Redis | None:
    # Reuse one Redis connection pool per event loop; None keeps state process-local.
    global _redis_pool, _redis_loop
    if not settings.redis_url:
        return None
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        current_loop = None
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    _redis_loop = current_loop
    return _redis_pool


class SharedState:
    """Namespaced keys with the atomic primitives the delivery core relies on.

    Keys are ``<prefix>:<arena>:<key>``. With Redis every primitive is a single
    server-side command or script. Without Redis the same semantics hold inside
    one process because none of the local paths yield to the event loop.
    """

    def __init__(self, redis: Redis | None, *, prefix: str = "notifyhub", clock: Clock | None = None) -> None:
        self._redis = redis
        self._prefix = prefix
        self._clock = clock or Clock()
        self._local: dict[str, tuple[str, float | None]] = {}

    @property
    def redis(self) -> Redis | None:
        return self._redis

    @property
    def clock(self) -> Clock:
        return self._clock

    def key(self, arena: str, key: str) -> str:
        return f"{self._prefix}:{arena}:{key}"

    def _local_get(self, full_key: str) -> str | None:
        entry = self._local.get(full_key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock.time():
            self._local.pop(full_key, None)
            return None
        return value

    def _expiry(self, ttl_s: float | None) -> float | None:
        return self._clock.time() + ttl_s if ttl_s is not None else None

    async def get(self, arena: str, key: str) -> str | None:
        full_key = self.key(arena, key)
        if self._redis is None:
            return self._local_get(full_key)
        return await self._redis.get(full_key)

    async def set_if_absent(self, arena: str, key: str, value: str, *, ttl_s: float) -> bool:
        full_key = self.key(arena, key)
        if self._redis is None:
            if self._local_get(full_key) is not None:
                return False
            self._local[full_key] = (value, self._expiry(ttl_s))
            return True
        created = await self._redis.set(full_key, value, nx=True, px=max(1, int(math.ceil(ttl_s * 1000))))
        return bool(created)

    async def put(self, arena: str, key: str, value: str, *, ttl_s: float | None = None) -> None:
        full_key = self.key(arena, key)
        if self._redis is None:
            self._local[full_key] = (value, self._expiry(ttl_s))
            return
        if ttl_s is None:
            await self._redis.set(full_key, value)
        else:
            await self._redis.set(full_key, value, px=max(1, int(math.ceil(ttl_s * 1000))))

    async def replace_if_field(self, arena: str, key: str, value: str, *, field: str, expected: str) -> int:
        # Compare-and-set on a JSON value; the remaining TTL is kept.
        full_key = self.key(arena, key)
        if self._redis is None:
            current = self._local_get(full_key)
            if current is None:
                return REPLACE_MISSING
            try:
                decoded = json.loads(current)
            except ValueError:
                return REPLACE_CONFLICT
            if not isinstance(decoded, dict) or decoded.get(field) != expected:
                return REPLACE_CONFLICT
            self._local[full_key] = (value, self._local[full_key][1])
            return REPLACE_DONE
        result = await self._redis.eval(_REPLACE_IF_FIELD_LUA, 1, full_key, value, field, expected)
        return int(result)

    async def compare_and_delete(self, arena: str, key: str, expected: str) -> bool:
        full_key = self.key(arena, key)
        if self._redis is None:
            if self._local_get(full_key) != expected:
                return False
            self._local.pop(full_key, None)
            return True
        deleted = await self._redis.eval(_COMPARE_AND_DELETE_LUA, 1, full_key, expected)
        return bool(int(deleted or 0))

    async def delete(self, arena: str, key: str) -> None:
        full_key = self.key(arena, key)
        if self._redis is None:
            self._local.pop(full_key, None)
            return
        await self._redis.delete(full_key)

    async def ping(self) -> bool:
        if self._redis is None:
            return True
        try:
            return bool(await self._redis.ping())
        except Exception as exc:  # noqa: BLE001 - health checks report instead of raising
            logger.warning("shared_state_ping_failed", exc_info=exc)
            return False
