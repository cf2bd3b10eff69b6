from __future__ import annotations

import pytest

from notifyhub.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_sync_send_delivers_within_deadline(runtime, make_request, providers) -> None:
    request = make_request(synchronous=True, priority="high", channels=("push", "realtime"))
    result = await runtime.gateway.admit(request)
    await runtime.gateway.drain()

    assert result.status == "delivered"
    assert set(result.channels) == {"push", "realtime"}
    assert result.channels["push"]["provider"] == "fcm"
    assert result.processing_ms is not None
    assert providers["signalr"].sent[0].destination == "user:user-1"

    item = await runtime.store.get_item(result.notification_id)
    assert item.status == "delivered"
    assert item.attempts == 1
    assert await runtime.due_queue.size() == 0

    replay = await runtime.gateway.admit(request)
    assert replay.replayed
    assert replay.outcome == result.outcome
    assert providers["fcm"].calls == 1


@pytest.mark.asyncio
async def test_sync_deadline_reports_timeout_and_finishes_in_background(
    runtime_factory, make_request, providers
) -> None:
    runtime = runtime_factory(sync_deadline_ms=300)
    providers["fcm"].latency_s = 0.6
    providers["signalr"].latency_s = 0.02

    result = await runtime.gateway.admit(
        make_request(synchronous=True, priority="high", channels=("push", "realtime"))
    )
    assert result.status == "partial"
    assert result.channels["push"]["status"] == "timeout"
    assert result.channels["realtime"]["status"] == "delivered"
    assert result.processing_ms < 550
    assert counters_snapshot().get("sync_deadline_exceeded_total") == 1

    await runtime.gateway.drain()
    item = await runtime.store.get_item(result.notification_id)
    assert item.status == "delivered"
    assert item.channel_state["push"]["status"] == "delivered"
    assert providers["fcm"].calls == 1


@pytest.mark.asyncio
async def test_sync_render_failure_fails_every_channel(runtime, make_request, providers) -> None:
    result = await runtime.gateway.admit(
        make_request(synchronous=True, priority="high", template_key="broken")
    )
    await runtime.gateway.drain()

    assert result.status == "failed"
    assert result.outcome["error_code"] == "RENDER_ERROR"
    assert result.channels["push"]["status"] == "failed"
    assert providers["fcm"].calls == 0

    item = await runtime.store.get_item(result.notification_id)
    assert item.status == "failed"
    assert item.attempts == 0
    assert item.last_error_kind == "RENDER_ERROR"


@pytest.mark.asyncio
async def test_sync_transient_failure_is_retried_by_workers(runtime, make_request, providers, fake_time) -> None:
    providers["fcm"].script("error")
    result = await runtime.gateway.admit(make_request(synchronous=True, priority="high"))
    await runtime.gateway.drain()

    assert result.status == "failed"
    assert result.channels["push"]["error_code"] == "PROVIDER_ERROR"
    item = await runtime.store.get_item(result.notification_id)
    assert item.status == "retrying"

    fake_time.advance(10)
    assert await runtime.scheduler.run_once() == 1
    item = await runtime.store.get_item(result.notification_id)
    assert item.status == "delivered"
    assert item.attempts == 2
