from __future__ import annotations

from datetime import datetime, timezone

import pytest

from notifyhub.core.clock import Clock
from notifyhub.services.due_queue import DueQueue


def _at(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


@pytest.mark.asyncio
async def test_claim_returns_only_due_items_in_due_order() -> None:
    now = {"t": 150.0}
    queue = DueQueue(None, clock=Clock(lambda: now["t"]))
    await queue.schedule("late", _at(140))
    await queue.schedule("early", _at(100))
    await queue.schedule("future", _at(200))

    leases = await queue.claim(limit=10, lease_s=30)
    assert [lease.notification_id for lease in leases] == ["early", "late"]
    assert await queue.size() == 3


@pytest.mark.asyncio
async def test_claimed_items_are_exclusive_until_the_lease_expires() -> None:
    now = {"t": 150.0}
    queue = DueQueue(None, clock=Clock(lambda: now["t"]))
    await queue.schedule("n-1", _at(100))

    [lease] = await queue.claim(limit=5, lease_s=30)
    assert await queue.claim(limit=5, lease_s=30) == []
    assert await queue.due_at("n-1") == 180_000

    # An abandoned lease becomes claimable again and the stale holder loses it.
    now["t"] = 181.0
    [reclaimed] = await queue.claim(limit=5, lease_s=30)
    assert reclaimed.token != lease.token
    assert not await queue.renew(lease, lease_s=30)
    assert await queue.renew(reclaimed, lease_s=30)


@pytest.mark.asyncio
async def test_release_makes_item_due_now() -> None:
    now = {"t": 150.0}
    queue = DueQueue(None, clock=Clock(lambda: now["t"]))
    await queue.schedule("n-1", _at(100))
    [lease] = await queue.claim(limit=1, lease_s=30)

    assert await queue.release(lease)
    assert await queue.due_at("n-1") == 150_000
    assert not await queue.release(lease)
    assert [again.notification_id for again in await queue.claim(limit=1, lease_s=30)] == ["n-1"]


@pytest.mark.asyncio
async def test_schedule_and_remove_drop_leases() -> None:
    now = {"t": 150.0}
    queue = DueQueue(None, clock=Clock(lambda: now["t"]))
    await queue.schedule("n-1", _at(100))
    [lease] = await queue.claim(limit=1, lease_s=30)

    await queue.schedule("n-1", _at(400))
    assert not await queue.renew(lease, lease_s=30)
    assert await queue.due_at("n-1") == 400_000

    await queue.remove("n-1")
    assert await queue.size() == 0
    assert await queue.due_at("n-1") is None
