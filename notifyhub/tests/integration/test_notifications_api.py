from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from notifyhub.apps.api.main import create_app
from notifyhub.tests.conftest import ADMIN_TOKEN, SERVICE_SECRET


SERVICE_HEADERS = {"X-Service-Origin": "orders", "X-Service-Secret": SERVICE_SECRET}


def _client(runtime) -> AsyncClient:
    app = create_app(runtime=runtime)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _body(**overrides):
    body = {
        "tenant_id": "tenant-a",
        "user_id": "user-1",
        "channels": ["push"],
        "template_key": "order_confirmed",
        "payload": {"order_id": "A1"},
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_sync_send_and_replay(runtime, providers) -> None:
    async with _client(runtime) as client:
        headers = {**SERVICE_HEADERS, "Idempotency-Key": "send-1", "X-Request-Id": "req-1"}
        response = await client.post(
            "/v1/notifications/send",
            json=_body(priority="high", channels=["push", "realtime"]),
            headers=headers,
        )
        await runtime.gateway.drain()
        assert response.status_code == 200
        assert response.headers["X-Request-Id"] == "req-1"
        payload = response.json()
        assert payload["meta"] == {"request_id": "req-1", "api_version": "v1"}
        data = payload["data"]
        assert data["status"] == "delivered"
        assert data["channels"]["push"]["status"] == "delivered"
        assert "processing_ms" in data

        replay = await client.post(
            "/v1/notifications/send",
            json=_body(priority="high", channels=["push", "realtime"]),
            headers=headers,
        )
        assert replay.status_code == 200
        assert replay.headers["Idempotency-Replayed"] == "true"
        assert replay.json()["data"] == data
        assert providers["fcm"].calls == 1


@pytest.mark.asyncio
async def test_enqueue_then_read_status(runtime) -> None:
    async with _client(runtime) as client:
        response = await client.post(
            "/v1/notifications",
            json=_body(idempotency_key="queue-1", correlation_id="corr-9"),
            headers=SERVICE_HEADERS,
        )
        assert response.status_code == 202
        data = response.json()["data"]
        assert data["status"] == "queued"
        notification_id = data["notification_id"]

        await runtime.scheduler.run_once()

        status_response = await client.get(
            f"/v1/notifications/{notification_id}",
            headers={**SERVICE_HEADERS, "X-Tenant-Id": "tenant-a"},
        )
        assert status_response.status_code == 200
        status_data = status_response.json()["data"]
        assert status_data["status"] == "delivered"
        assert status_data["attempts"] == 1

        other_tenant = await client.get(
            f"/v1/notifications/{notification_id}",
            headers={**SERVICE_HEADERS, "X-Tenant-Id": "tenant-b"},
        )
        assert other_tenant.status_code == 404
        assert other_tenant.json()["error"]["code"] == "NOT_FOUND"

        missing_tenant = await client.get(f"/v1/notifications/{notification_id}", headers=SERVICE_HEADERS)
        assert missing_tenant.status_code == 400
        assert missing_tenant.json()["error"]["code"] == "TENANT_REQUIRED"


@pytest.mark.asyncio
async def test_service_credentials_are_required(runtime) -> None:
    async with _client(runtime) as client:
        bad_secret = await client.post(
            "/v1/notifications",
            json=_body(idempotency_key="k-1"),
            headers={"X-Service-Origin": "orders", "X-Service-Secret": "nope"},
        )
        assert bad_secret.status_code == 401
        assert bad_secret.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

        missing = await client.post("/v1/notifications", json=_body(idempotency_key="k-1"))
        assert missing.status_code == 401

        spoofed = await client.post(
            "/v1/notifications",
            json=_body(idempotency_key="k-1", service_origin="billing"),
            headers=SERVICE_HEADERS,
        )
        assert spoofed.status_code == 403
        assert spoofed.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_rate_limited_requests_get_retry_after(runtime_factory) -> None:
    runtime = runtime_factory(rate_limits_json='[{"user": {"capacity": 1, "window_s": 3600}}]')
    async with _client(runtime) as client:
        first = await client.post("/v1/notifications", json=_body(idempotency_key="r-1"), headers=SERVICE_HEADERS)
        assert first.status_code == 202

        second = await client.post("/v1/notifications", json=_body(idempotency_key="r-2"), headers=SERVICE_HEADERS)
        assert second.status_code == 429
        error = second.json()["error"]
        assert error["code"] == "RATE_LIMITED"
        assert error["details"]["scope"] == "user"
        assert int(second.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_validation_errors_use_error_envelope(runtime) -> None:
    async with _client(runtime) as client:
        schema_error = await client.post(
            "/v1/notifications",
            json={"tenant_id": "tenant-a", "template_key": "order_confirmed"},
            headers=SERVICE_HEADERS,
        )
        assert schema_error.status_code == 422
        assert schema_error.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

        domain_error = await client.post(
            "/v1/notifications",
            json=_body(idempotency_key="v-1", channels=["fax"]),
            headers=SERVICE_HEADERS,
        )
        assert domain_error.status_code == 422
        assert domain_error.json()["error"]["code"] == "VALIDATION_ERROR"

        not_sync = await client.post(
            "/v1/notifications/send",
            json=_body(idempotency_key="v-2"),
            headers=SERVICE_HEADERS,
        )
        assert not_sync.status_code == 422
        assert not_sync.json()["error"]["code"] == "SYNC_NOT_ELIGIBLE"


@pytest.mark.asyncio
async def test_budget_block_returns_402(runtime_factory) -> None:
    runtime = runtime_factory(
        budgets_json='[{"tenant_id": "tenant-a", "channel": "sms", "monthly_budget_micros": 7900}]'
    )
    sms = {"channels": ["sms"], "contacts": {"sms": "+15551234567"}}
    async with _client(runtime) as client:
        first = await client.post("/v1/notifications", json=_body(idempotency_key="b-1", **sms), headers=SERVICE_HEADERS)
        assert first.status_code == 202
        await runtime.scheduler.run_once()

        blocked = await client.post("/v1/notifications", json=_body(idempotency_key="b-2", **sms), headers=SERVICE_HEADERS)
        assert blocked.status_code == 402
        error = blocked.json()["error"]
        assert error["code"] == "BUDGET_EXCEEDED"
        assert error["details"]["override_eligible"] is True

        grant = await client.post(
            "/v1/admin/overrides",
            json={"tenant_id": "tenant-a", "actor_id": "ops-1", "reason": "launch", "ttl_s": 600},
            headers={"Authorization": f"Bearer {ADMIN_TOKEN}"},
        )
        assert grant.status_code == 201
        override_id = grant.json()["data"]["override_id"]

        allowed = await client.post(
            "/v1/notifications",
            json=_body(idempotency_key="b-2", override_id=override_id, **sms),
            headers=SERVICE_HEADERS,
        )
        assert allowed.status_code == 202


@pytest.mark.asyncio
async def test_admin_override_credentials(runtime) -> None:
    body = {"tenant_id": "tenant-a", "actor_id": "ops-1", "reason": "launch", "ttl_s": 600}
    async with _client(runtime) as client:
        missing = await client.post("/v1/admin/overrides", json=body)
        assert missing.status_code == 401

        wrong = await client.post("/v1/admin/overrides", json=body, headers={"Authorization": "Bearer wrong"})
        assert wrong.status_code == 403
        assert wrong.json()["error"]["code"] == "OVERRIDE_REJECTED"


@pytest.mark.asyncio
async def test_events_are_queued(runtime) -> None:
    event = {
        "event_id": "evt-100",
        "message_type": "orders.order_confirmed",
        "channels": ["push"],
        "user_id": "user-1",
        "data": {"order_id": "C3"},
    }
    async with _client(runtime) as client:
        headers = {**SERVICE_HEADERS, "X-Tenant-Id": "tenant-a"}
        response = await client.post("/v1/events", json=event, headers=headers)
        assert response.status_code == 202
        assert response.json()["data"]["status"] == "queued"

        again = await client.post("/v1/events", json=event, headers=headers)
        assert again.status_code == 202
        assert again.headers["Idempotency-Replayed"] == "true"


@pytest.mark.asyncio
async def test_health_reports_breaker_states(runtime) -> None:
    async with _client(runtime) as client:
        response = await client.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["shared_state"] == "local"
    assert payload["providers"]["twilio"] == "closed"


@pytest.mark.asyncio
async def test_ops_metrics_require_admin(runtime) -> None:
    async with _client(runtime) as client:
        await client.post("/v1/notifications", json=_body(idempotency_key="m-1"), headers=SERVICE_HEADERS)
        await runtime.scheduler.run_once()

        forbidden = await client.get("/v1/ops/metrics", headers={"Authorization": "Bearer wrong"})
        assert forbidden.status_code == 403

        response = await client.get("/v1/ops/metrics", headers={"Authorization": f"Bearer {ADMIN_TOKEN}"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["counters"]["admissions_total.queued"] == 1
    assert data["counters"]["deliveries_total.push"] == 1
    assert data["gauges"]["due_queue_depth"] == 0
    assert "push" in data["delivery_latency_ms"]["queued"]
    assert "fcm" in data["external_latency_ms"]


@pytest.mark.asyncio
async def test_batch_enqueue_and_status(runtime) -> None:
    item = {k: v for k, v in _body().items() if k != "tenant_id"}
    batch = {
        "tenant_id": "tenant-a",
        "notifications": [item, {**item, "channels": ["sms"]}, item],
    }
    async with _client(runtime) as client:
        headers = {**SERVICE_HEADERS, "Idempotency-Key": "batch-7"}
        response = await client.post("/v1/notifications/batch", json=batch, headers=headers)
        assert response.status_code == 202
        data = response.json()["data"]
        assert (data["total"], data["accepted"], data["rejected"]) == (3, 2, 1)
        assert data["results"][1]["error_code"] == "MISSING_CONTACT"

        # The batch key gives each item its own stable key.
        replay = await client.post("/v1/notifications/batch", json=batch, headers=headers)
        assert all(entry["replayed"] for entry in replay.json()["data"]["results"] if entry["status"] == "accepted")

        status_response = await client.get(
            f"/v1/notifications/batch/{data['batch_id']}",
            headers={**SERVICE_HEADERS, "X-Tenant-Id": "tenant-a"},
        )
        assert status_response.status_code == 200
        assert status_response.json()["data"]["by_status"] == {"queued": 2}

        other_tenant = await client.get(
            f"/v1/notifications/batch/{data['batch_id']}",
            headers={**SERVICE_HEADERS, "X-Tenant-Id": "tenant-b"},
        )
        assert other_tenant.status_code == 404

        empty = await client.post(
            "/v1/notifications/batch", json={"tenant_id": "tenant-a", "notifications": []}, headers=headers
        )
        assert empty.status_code == 422
