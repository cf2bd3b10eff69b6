from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from notifyhub.core.errors import NotFoundError, ValidationError
from notifyhub.domain.events import EventEnvelope
from notifyhub.services.contacts import ContactCipher
from notifyhub.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_queued_admission_lands_on_due_queue(runtime, make_request) -> None:
    result = await runtime.gateway.admit(make_request())

    assert result.status == "queued"
    assert result.outcome == {"notification_id": result.notification_id, "status": "queued"}
    item = await runtime.store.get_item(result.notification_id)
    assert item.status == "queued"
    assert item.attempts == 0
    assert item.max_attempts == 6
    assert await runtime.due_queue.due_at(result.notification_id) == runtime.clock.time_ms()


@pytest.mark.asyncio
async def test_replay_returns_first_outcome_without_new_work(runtime, make_request, providers) -> None:
    request = make_request(idempotency_key="  order-A1  ")
    first = await runtime.gateway.admit(request)
    await runtime.scheduler.run_once()

    replay = await runtime.gateway.admit(make_request(idempotency_key="order-A1"))
    assert replay.replayed
    assert replay.notification_id == first.notification_id
    assert replay.outcome["status"] == "delivered"
    assert providers["fcm"].calls == 1
    assert await runtime.due_queue.size() == 0
    assert counters_snapshot().get("idempotency_replays_total") == 1


@pytest.mark.asyncio
async def test_idempotency_keys_are_scoped_per_tenant(runtime, make_request) -> None:
    first = await runtime.gateway.admit(make_request(idempotency_key="k-1"))
    second = await runtime.gateway.admit(make_request(idempotency_key="k-1", tenant_id="tenant-b"))
    assert not second.replayed
    assert second.notification_id != first.notification_id


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"channels": ()}, "VALIDATION_ERROR"),
        ({"channels": ("fax",)}, "VALIDATION_ERROR"),
        ({"channels": ("push", "push")}, "VALIDATION_ERROR"),
        ({"priority": "urgent"}, "VALIDATION_ERROR"),
        ({"idempotency_key": "   "}, "IDEMPOTENCY_KEY_INVALID"),
        ({"template_key": ""}, "VALIDATION_ERROR"),
        ({"channels": ("sms",)}, "MISSING_CONTACT"),
        ({"channels": ("sms",), "contacts": {"sms": "12345"}}, "INVALID_CONTACT"),
        ({"contacts": {"email": "a@example.com"}}, "VALIDATION_ERROR"),
        ({"synchronous": True, "priority": "high", "channels": ("email",), "contacts": {"email": "a@example.com"}}, "SYNC_NOT_ELIGIBLE"),
    ],
)
@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(runtime, make_request, overrides, code) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await runtime.gateway.admit(make_request(**overrides))
    assert excinfo.value.code == code
    assert await runtime.due_queue.size() == 0


@pytest.mark.asyncio
async def test_scheduled_notifications_wait_until_due(runtime, make_request, fake_time) -> None:
    due = runtime.clock.now() + timedelta(minutes=10)
    result = await runtime.gateway.admit(make_request(scheduled_at=due.replace(tzinfo=None)))
    assert await runtime.due_queue.due_at(result.notification_id) == int(due.timestamp() * 1000)
    assert await runtime.scheduler.run_once() == 0

    fake_time.advance(601)
    assert await runtime.scheduler.run_once() == 1
    assert (await runtime.store.get_item(result.notification_id)).status == "delivered"


@pytest.mark.asyncio
async def test_scheduled_at_must_be_future_and_async(runtime, make_request) -> None:
    past = datetime.fromtimestamp(runtime.clock.time() - 60, tz=timezone.utc)
    with pytest.raises(ValidationError):
        await runtime.gateway.admit(make_request(scheduled_at=past))
    future = runtime.clock.now() + timedelta(minutes=5)
    with pytest.raises(ValidationError):
        await runtime.gateway.admit(make_request(scheduled_at=future, synchronous=True, priority="high"))


@pytest.mark.asyncio
async def test_encrypted_contacts_are_accepted(runtime, make_request, providers, secrets) -> None:
    token = ContactCipher(secrets).encrypt("+15551234567")
    await runtime.gateway.admit(make_request(channels=("sms",), contacts={"sms": token}))
    await runtime.scheduler.run_once()
    assert providers["twilio"].sent[0].destination == "+15551234567"


@pytest.mark.asyncio
async def test_event_ingestion_maps_message_type(runtime, providers) -> None:
    envelope = EventEnvelope(
        event_id="evt-1",
        message_type="orders.order_confirmed",
        service_origin="orders",
        channels=("push",),
        user_id="user-9",
        data={"order_id": "B2"},
        metadata={"locale": "es"},
    )
    result = await runtime.gateway.ingest_event(envelope, "tenant-a")
    assert result.status == "queued"

    request = await runtime.store.get_request(result.notification_id)
    assert request.idempotency_key == "evt-1"
    assert request.correlation_id == "evt-1"
    assert request.template_key == "order_confirmed"

    await runtime.scheduler.run_once()
    assert providers["fcm"].sent[0].message.body == "Pedido B2 confirmado."

    # Redelivered bus events are absorbed by the event id.
    again = await runtime.gateway.ingest_event(envelope, "tenant-a")
    assert again.replayed
    assert providers["fcm"].calls == 1


@pytest.mark.asyncio
async def test_event_with_unknown_message_type(runtime) -> None:
    envelope = EventEnvelope(event_id="evt-2", message_type="orders.refunded", service_origin="orders", channels=("push",))
    with pytest.raises(ValidationError) as excinfo:
        await runtime.gateway.ingest_event(envelope, "tenant-a")
    assert excinfo.value.code == "UNKNOWN_MESSAGE_TYPE"


@pytest.mark.asyncio
async def test_status_is_tenant_scoped(runtime, make_request) -> None:
    result = await runtime.gateway.admit(make_request())
    item = await runtime.gateway.status(result.notification_id, tenant_id="tenant-a")
    assert item.id == result.notification_id
    with pytest.raises(NotFoundError):
        await runtime.gateway.status(result.notification_id, tenant_id="tenant-b")
    with pytest.raises(NotFoundError):
        await runtime.gateway.status("missing", tenant_id="tenant-a")
