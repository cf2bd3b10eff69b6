from __future__ import annotations

import pytest

from notifyhub.core.errors import RenderError, TemplateNotFound, ValidationError
from notifyhub.domain.policies import PolicyCatalog
from notifyhub.services.routing import Router, is_sync_eligible, locale_candidates
from notifyhub.services.templates import JinjaTemplateResolver, TemplateDefinition


TEMPLATES = [
    TemplateDefinition(key="order_confirmed", locale="en", body="Order {{ order_id }} is confirmed."),
    TemplateDefinition(key="order_confirmed", locale="es", body="Pedido {{ order_id }} confirmado."),
    TemplateDefinition(
        key="order_confirmed",
        locale="en",
        channel="email",
        subject="Order {{ order_id }}",
        body="Thanks! Order {{ order_id }} is confirmed.",
    ),
    TemplateDefinition(key="broken", locale="en", body="Hello {{ missing_var }}"),
]


def _router() -> Router:
    return Router(catalog=PolicyCatalog(), resolver=JinjaTemplateResolver(TEMPLATES), default_locale="en")


def test_locale_candidates_fall_back_to_language_then_default() -> None:
    assert locale_candidates("es_MX", "en") == ["es-MX", "es", "en"]
    assert locale_candidates("en-US", "en") == ["en-US", "en"]
    assert locale_candidates(None, "en") == ["en"]


@pytest.mark.asyncio
async def test_render_uses_language_fallback(make_request) -> None:
    rendered = await _router().render(make_request(locale="es-MX"), "push")
    assert rendered.body == "Pedido A1 confirmado."
    assert rendered.locale == "es"


@pytest.mark.asyncio
async def test_render_falls_back_to_default_locale(make_request) -> None:
    rendered = await _router().render(make_request(locale="fr-FR"), "sms")
    assert rendered.body == "Order A1 is confirmed."
    assert rendered.variables_used == ("order_id",)


@pytest.mark.asyncio
async def test_channel_specific_template_wins(make_request) -> None:
    rendered = await _router().render(make_request(), "email")
    assert rendered.subject == "Order A1"
    assert rendered.body.startswith("Thanks!")


@pytest.mark.asyncio
async def test_missing_template_and_render_failure(make_request) -> None:
    router = _router()
    with pytest.raises(TemplateNotFound) as excinfo:
        await router.render(make_request(template_key="nope", locale="de"), "push")
    assert excinfo.value.details["locales"] == ["de", "en"]

    with pytest.raises(RenderError):
        await router.render(make_request(template_key="broken"), "push")


def test_sync_eligibility(make_request) -> None:
    router = _router()
    assert is_sync_eligible(make_request(synchronous=True, priority="high", channels=("push", "realtime")))
    assert not is_sync_eligible(make_request(synchronous=True, priority="normal"))
    assert not is_sync_eligible(make_request(synchronous=True, priority="high", channels=("push", "sms")))

    router.check_sync(make_request())
    with pytest.raises(ValidationError) as excinfo:
        router.check_sync(make_request(synchronous=True, priority="high", channels=("email",)))
    assert excinfo.value.code == "SYNC_NOT_ELIGIBLE"


def test_message_type_mapping() -> None:
    router = _router()
    assert router.template_for_message_type("orders.order_confirmed") == "order_confirmed"
    with pytest.raises(ValidationError) as excinfo:
        router.template_for_message_type("orders.unknown")
    assert excinfo.value.code == "UNKNOWN_MESSAGE_TYPE"


def test_extract_variables() -> None:
    resolver = JinjaTemplateResolver()
    assert resolver.extract_variables("Hi {{ name }}, code {{ code }}{% if vip %}!{% endif %}") == {"name", "code", "vip"}
