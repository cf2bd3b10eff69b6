from __future__ import annotations

import pytest

from notifyhub.core.errors import NotFoundError, ValidationError


USER_LIMIT_TWO = '[{"user": {"capacity": 2, "window_s": 3600}}]'


@pytest.mark.asyncio
async def test_batch_reports_a_result_per_item(runtime, make_request) -> None:
    requests = [
        make_request(correlation_id="c-0"),
        make_request(channels=("sms",), correlation_id="c-1"),
        make_request(correlation_id="c-2"),
    ]
    result = await runtime.batches.admit_batch(requests)

    assert [item.status for item in result.results] == ["accepted", "rejected", "accepted"]
    assert result.accepted == 2
    assert result.rejected == 1
    rejected = result.results[1]
    assert rejected.error_code == "MISSING_CONTACT"
    assert rejected.notification_id is None
    assert rejected.correlation_id == "c-1"
    assert await runtime.due_queue.size() == 2

    payload = result.to_payload()
    assert payload["total"] == 3
    assert [entry["index"] for entry in payload["results"]] == [0, 1, 2]


@pytest.mark.asyncio
async def test_rate_limits_are_charged_per_item(runtime_factory, make_request) -> None:
    runtime = runtime_factory(rate_limits_json=USER_LIMIT_TWO)
    result = await runtime.batches.admit_batch([make_request() for _ in range(3)])

    assert [item.status for item in result.results] == ["accepted", "accepted", "rejected"]
    assert result.results[2].error_code == "RATE_LIMITED"


@pytest.mark.asyncio
async def test_stop_on_first_error_skips_the_rest(runtime, make_request) -> None:
    requests = [make_request(), make_request(template_key=""), make_request()]
    result = await runtime.batches.admit_batch(requests, continue_on_error=False)

    assert [item.status for item in result.results] == ["accepted", "rejected", "skipped"]
    assert result.results[1].error_code == "VALIDATION_ERROR"
    assert await runtime.due_queue.size() == 1


@pytest.mark.asyncio
async def test_batch_items_replay_by_idempotency_key(runtime, make_request) -> None:
    requests = [make_request(idempotency_key="batch-1:0"), make_request(idempotency_key="batch-1:1")]
    first = await runtime.batches.admit_batch(requests)
    again = await runtime.batches.admit_batch(requests)

    assert again.batch_id != first.batch_id
    assert [item.notification_id for item in again.results] == [item.notification_id for item in first.results]
    assert all(item.replayed for item in again.results)
    assert await runtime.due_queue.size() == 2


@pytest.mark.asyncio
async def test_batches_are_always_queued(runtime, make_request, providers) -> None:
    result = await runtime.batches.admit_batch([make_request(synchronous=True, priority="high")])

    [item] = result.results
    assert item.status == "accepted"
    assert (await runtime.store.get_item(item.notification_id)).status == "queued"
    assert providers["fcm"].calls == 0


@pytest.mark.asyncio
async def test_batch_shape_is_validated(runtime_factory, make_request) -> None:
    runtime = runtime_factory(batch_max_size=2)
    with pytest.raises(ValidationError) as excinfo:
        await runtime.batches.admit_batch([make_request() for _ in range(3)])
    assert excinfo.value.code == "BATCH_TOO_LARGE"

    with pytest.raises(ValidationError):
        await runtime.batches.admit_batch([])
    with pytest.raises(ValidationError):
        await runtime.batches.admit_batch([make_request(), make_request(tenant_id="tenant-b")])
    assert await runtime.due_queue.size() == 0


@pytest.mark.asyncio
async def test_batch_status_tracks_items_per_tenant(runtime, make_request) -> None:
    result = await runtime.batches.admit_batch(
        [make_request(), make_request(), make_request(channels=("sms",))]
    )
    pending = await runtime.batches.status(result.batch_id, tenant_id="tenant-a")
    assert pending["status"] == "processing"
    assert pending["by_status"] == {"queued": 2}
    assert pending["total"] == 3
    assert pending["rejected"] == 1

    await runtime.scheduler.run_once()
    done = await runtime.batches.status(result.batch_id, tenant_id="tenant-a")
    assert done["status"] == "completed"
    assert done["by_status"] == {"delivered": 2}

    with pytest.raises(NotFoundError):
        await runtime.batches.status(result.batch_id, tenant_id="tenant-b")
    with pytest.raises(NotFoundError):
        await runtime.batches.status("missing", tenant_id="tenant-a")
