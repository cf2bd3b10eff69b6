from __future__ import annotations

import pytest

from notifyhub.core.clock import Clock
from notifyhub.core.errors import ValidationError
from notifyhub.services.idempotency import IdempotencyStore, canonical_json, normalize_key
from notifyhub.services.shared_state import SharedState


def _store(now: dict[str, float], ttl_s: float = 60) -> IdempotencyStore:
    return IdempotencyStore(SharedState(None, clock=Clock(lambda: now["t"])), ttl_s=ttl_s)


def test_normalize_key_bounds() -> None:
    assert normalize_key("  abc ") == "abc"
    assert normalize_key("k" * 128) == "k" * 128
    with pytest.raises(ValidationError) as excinfo:
        normalize_key("k" * 129)
    assert excinfo.value.code == "IDEMPOTENCY_KEY_INVALID"
    with pytest.raises(ValidationError):
        normalize_key("   ")


def test_canonical_json_is_order_independent() -> None:
    assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == canonical_json({"a": {"c": 3, "d": 2}, "b": 1})


@pytest.mark.asyncio
async def test_reserve_is_create_once_within_ttl() -> None:
    now = {"t": 100.0}
    store = _store(now)
    first = await store.reserve("tenant-a", "key-1", "n-1")
    assert first.created
    second = await store.reserve("tenant-a", "key-1", "n-2")
    assert not second.created
    assert second.notification_id == "n-1"
    assert second.outcome == {"notification_id": "n-1", "status": "processing"}

    # Keys are scoped per tenant.
    other = await store.reserve("tenant-b", "key-1", "n-3")
    assert other.created

    now["t"] += 61
    expired = await store.reserve("tenant-a", "key-1", "n-4")
    assert expired.created


@pytest.mark.asyncio
async def test_record_only_updates_the_same_notification() -> None:
    now = {"t": 100.0}
    store = _store(now)
    await store.reserve("tenant-a", "key-1", "n-1")

    assert await store.record("tenant-a", "key-1", {"notification_id": "n-1", "status": "queued"})
    assert not await store.record("tenant-a", "key-1", {"notification_id": "n-9", "status": "queued"})
    assert await store.get("tenant-a", "key-1") == {"notification_id": "n-1", "status": "queued"}
    assert not await store.record("tenant-a", "missing", {"notification_id": "n-1"})

    # Recording keeps the original expiry.
    now["t"] += 61
    assert await store.get("tenant-a", "key-1") is None


@pytest.mark.asyncio
async def test_release_drops_only_an_unrecorded_reservation() -> None:
    now = {"t": 100.0}
    store = _store(now)
    await store.reserve("tenant-a", "key-1", "n-1")
    assert await store.release("tenant-a", "key-1", "n-1")
    assert await store.get("tenant-a", "key-1") is None

    await store.reserve("tenant-a", "key-2", "n-2")
    await store.record("tenant-a", "key-2", {"notification_id": "n-2", "status": "queued"})
    assert not await store.release("tenant-a", "key-2", "n-2")
    assert (await store.get("tenant-a", "key-2"))["status"] == "queued"


class _ScriptRedis:
    def __init__(self, result: int) -> None:
        self.result = result
        self.evals: list[tuple] = []
        self.gets = 0

    async def eval(self, script, numkeys, *args):  # noqa: ANN001
        self.evals.append((numkeys, *args))
        return self.result

    async def get(self, key):  # noqa: ANN001
        self.gets += 1
        return None


@pytest.mark.asyncio
async def test_record_is_a_single_compare_and_set_on_redis() -> None:
    redis = _ScriptRedis(result=1)
    store = IdempotencyStore(SharedState(redis, prefix="t"), ttl_s=60)
    outcome = {"notification_id": "n-1", "status": "delivered"}

    assert await store.record("tenant-a", "key-1", outcome)
    [(numkeys, key, value, field, expected)] = redis.evals
    assert numkeys == 1
    assert key.startswith("t:idem:tenant-a:")
    assert value == canonical_json(outcome)
    assert (field, expected) == ("notification_id", "n-1")
    assert redis.gets == 0

    # Another notification already owns the key, or it expired.
    redis.result = 0
    assert not await store.record("tenant-a", "key-1", outcome)
    redis.result = -1
    assert not await store.record("tenant-a", "key-1", outcome)
