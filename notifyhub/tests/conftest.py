from __future__ import annotations

import random
from typing import Any, Callable
from uuid import uuid4

import pytest

from notifyhub.core.config import Settings
from notifyhub.core.secrets import (
    ADMIN_OVERRIDE_TOKEN,
    CONTACT_ENCRYPTION_KEY,
    StaticSecretResolver,
    service_secret_name,
)
from notifyhub.domain.notifications import NotificationRequest
from notifyhub.providers.fake import FakeProvider
from notifyhub.services.runtime import Runtime, build_runtime
from notifyhub.services.telemetry import reset_telemetry
from notifyhub.services.templates import JinjaTemplateResolver, TemplateDefinition


# 2026-05-28T20:26:40Z; far enough from a month boundary for budget tests.
START_TS = 1_780_000_000.0

ADMIN_TOKEN = "admin-secret"
SERVICE_SECRET = "orders-secret"


class FakeTime:
    # Wall clock for Clock(time_source); asyncio timing stays real.
    def __init__(self, start: float = START_TS) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


TEST_TEMPLATES = [
    TemplateDefinition(key="order_confirmed", locale="en", body="Order {{ order_id }} is confirmed."),
    TemplateDefinition(key="order_confirmed", locale="es", body="Pedido {{ order_id }} confirmado."),
    TemplateDefinition(key="auth_otp", locale="en", body="Your verification code is {{ code }}"),
    TemplateDefinition(key="alert", locale="en", body="Alert: {{ message }}"),
    TemplateDefinition(key="broken", locale="en", body="Hello {{ missing_var }}"),
    TemplateDefinition(
        key="welcome",
        locale="en",
        channel="email",
        subject="Welcome {{ name }}",
        body="Hi {{ name }}, thanks for joining.",
    ),
]


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    # Telemetry is process-global; isolate counters per test.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def secrets() -> StaticSecretResolver:
    return StaticSecretResolver(
        {
            ADMIN_OVERRIDE_TOKEN: ADMIN_TOKEN,
            CONTACT_ENCRYPTION_KEY: "contact-master-key",
            service_secret_name("orders"): SERVICE_SECRET,
        }
    )


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    return {
        "fcm": FakeProvider("fcm", "push"),
        "twilio": FakeProvider("twilio", "sms"),
        "aws_sns": FakeProvider("aws_sns", "sms"),
        "sendgrid": FakeProvider("sendgrid", "email"),
        "acs": FakeProvider("acs", "email"),
        "signalr": FakeProvider("signalr", "realtime"),
    }


@pytest.fixture
def runtime_factory(
    fake_time: FakeTime,
    secrets: StaticSecretResolver,
    providers: dict[str, FakeProvider],
) -> Callable[..., Runtime]:
    def _build(**overrides: Any) -> Runtime:
        values: dict[str, Any] = {
            "redis_url": None,
            "persistence_backend": "memory",
            "template_catalog_path": None,
        }
        values.update(overrides)
        return build_runtime(
            Settings(**values),
            providers=providers,
            templates=JinjaTemplateResolver(TEST_TEMPLATES),
            secrets=secrets,
            time_source=fake_time,
            rng=random.Random(7),
        )

    return _build


@pytest.fixture
def runtime(runtime_factory: Callable[..., Runtime]) -> Runtime:
    return runtime_factory()


@pytest.fixture
def make_request() -> Callable[..., NotificationRequest]:
    def _make(**overrides: Any) -> NotificationRequest:
        values: dict[str, Any] = {
            "tenant_id": "tenant-a",
            "service_origin": "orders",
            "channels": ("push",),
            "template_key": "order_confirmed",
            "idempotency_key": f"idem-{uuid4().hex}",
            "correlation_id": "corr-1",
            "user_id": "user-1",
            "payload": {"order_id": "A1"},
        }
        values.update(overrides)
        return NotificationRequest(**values)

    return _make
