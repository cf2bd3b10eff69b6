from __future__ import annotations

import asyncio

import pytest

from notifyhub.core.clock import Clock
from notifyhub.core.errors import ProviderUnavailable
from notifyhub.domain.policies import PolicyCatalog
from notifyhub.providers.fake import FakeProvider
from notifyhub.services.resilience import (
    STATE_CLOSED,
    STATE_HALF_OPEN,
    STATE_OPEN,
    Bulkhead,
    CircuitBreaker,
    CircuitBreakerConfig,
    FailoverManager,
)
from notifyhub.services.telemetry import counters_snapshot


CONFIG = CircuitBreakerConfig(window_size=10, failure_ratio=0.5, open_seconds=30, half_open_trials=1)


def _breaker(now: dict[str, float]) -> CircuitBreaker:
    return CircuitBreaker("provider.twilio", redis=None, config=CONFIG, clock=Clock(lambda: now["t"]))


@pytest.mark.asyncio
async def test_breaker_opens_on_fifth_failure_in_window() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)
    for _ in range(4):
        await breaker.record_failure()
    assert await breaker.state() == STATE_CLOSED
    assert await breaker.allow()

    await breaker.record_failure()
    assert await breaker.state() == STATE_OPEN
    assert not await breaker.allow()
    assert counters_snapshot().get("circuit_breaker_open_total") == 1


@pytest.mark.asyncio
async def test_breaker_cooldown_then_single_half_open_trial() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)
    for _ in range(5):
        await breaker.record_failure()

    now["t"] = 29.0
    assert not await breaker.allow()

    now["t"] = 30.0
    assert await breaker.state() == STATE_HALF_OPEN
    assert await breaker.allow()
    assert not await breaker.allow()

    await breaker.record_success()
    assert await breaker.state() == STATE_CLOSED
    assert await breaker.allow()


@pytest.mark.asyncio
async def test_failed_half_open_trial_reopens() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)
    for _ in range(5):
        await breaker.record_failure()
    now["t"] = 31.0
    assert await breaker.allow()
    await breaker.record_failure()
    assert await breaker.state() == STATE_OPEN
    assert not await breaker.allow()


@pytest.mark.asyncio
async def test_old_failures_slide_out_of_the_window() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)
    for _ in range(4):
        await breaker.record_failure()
    for _ in range(6):
        await breaker.record_success()
    # The oldest failure falls out, leaving four in the last ten calls.
    await breaker.record_failure()
    assert await breaker.state() == STATE_CLOSED


@pytest.mark.asyncio
async def test_failover_prefers_secondary_then_denies() -> None:
    now = {"t": 0.0}
    providers = {"twilio": FakeProvider("twilio", "sms"), "aws_sns": FakeProvider("aws_sns", "sms")}
    manager = FailoverManager(
        catalog=PolicyCatalog(),
        providers=providers,
        redis=None,
        config=CONFIG,
        clock=Clock(lambda: now["t"]),
    )
    primary = await manager.select("sms")
    assert primary.config.name == "twilio"
    assert not primary.failover

    for _ in range(5):
        await manager.breaker("twilio").record_failure()
    secondary = await manager.select("sms")
    assert secondary.config.name == "aws_sns"
    assert secondary.failover

    for _ in range(5):
        await manager.breaker("aws_sns").record_failure()
    with pytest.raises(ProviderUnavailable):
        await manager.select("sms")
    states = await manager.states()
    assert states["twilio"] == STATE_OPEN
    assert states["aws_sns"] == STATE_OPEN


@pytest.mark.asyncio
async def test_bulkhead_rejects_when_saturated() -> None:
    bulkhead = Bulkhead("retry_worker", 1)
    lease = await bulkhead.acquire()
    assert lease is not None
    assert bulkhead.available == 0
    assert await bulkhead.acquire() is None
    lease.release()
    lease.release()
    assert bulkhead.available == 1


@pytest.mark.asyncio
async def test_unsettled_half_open_trial_is_handed_out_again() -> None:
    now = {"t": 0.0}
    breaker = _breaker(now)
    for _ in range(5):
        await breaker.record_failure()

    now["t"] = 30.0
    assert await breaker.allow()
    # The call never reached the provider, so the trial goes back.
    await breaker.release_trial()
    assert await breaker.allow()

    # This trial never settles; after another cooldown a new one is handed out.
    now["t"] = 45.0
    assert not await breaker.allow()
    now["t"] = 60.0
    assert await breaker.allow()
    assert await breaker.state() == STATE_HALF_OPEN


@pytest.mark.asyncio
async def test_rejected_half_open_trial_closes_the_breaker(runtime, make_request, providers, fake_time) -> None:
    breaker = runtime.failover.breaker("fcm")
    for _ in range(5):
        await breaker.record_failure()
    fake_time.advance(31)

    providers["fcm"].script("rejected")
    first = await runtime.gateway.admit(make_request())
    await runtime.scheduler.run_once()
    item = await runtime.store.get_item(first.notification_id)
    assert item.status == "failed"
    assert item.last_error_kind == "PROVIDER_REJECTED"
    # The provider answered, so the trial settles the breaker.
    assert await breaker.state() == STATE_CLOSED

    fake_time.advance(3600)
    second = await runtime.gateway.admit(make_request())
    await runtime.scheduler.run_once()
    assert (await runtime.store.get_item(second.notification_id)).status == "delivered"
    assert providers["fcm"].calls == 2


@pytest.mark.asyncio
async def test_cancelled_half_open_send_hands_the_trial_back(runtime, make_request, providers, fake_time) -> None:
    breaker = runtime.failover.breaker("fcm")
    for _ in range(5):
        await breaker.record_failure()
    fake_time.advance(31)

    providers["fcm"].script("hang")
    admitted = await runtime.gateway.admit(make_request())
    item = await runtime.store.get_item(admitted.notification_id)
    request = await runtime.store.get_request(admitted.notification_id)
    handle = await runtime.dispatcher.launch(item, request)
    for _ in range(100):
        if providers["fcm"].calls:
            break
        await asyncio.sleep(0)
    assert providers["fcm"].calls == 1

    handle.channel_tasks["push"].cancel()
    await asyncio.gather(handle.completion, return_exceptions=True)

    assert await breaker.state() == STATE_HALF_OPEN
    assert await breaker.allow()
