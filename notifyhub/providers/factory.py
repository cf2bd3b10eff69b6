from __future__ import annotations

import httpx

from notifyhub.core.errors import ValidationError
from notifyhub.core.secrets import SecretResolver
from notifyhub.domain.policies import PolicyCatalog, ProviderConfig
from notifyhub.providers.base import ProviderAdapter
from notifyhub.providers.fake import FakeProvider
from notifyhub.providers.webhook import WebhookProvider


def build_provider(
    config: ProviderConfig,
    *,
    secrets: SecretResolver,
    client: httpx.AsyncClient | None = None,
    default_timeout_s: float = 8.0,
) -> ProviderAdapter:
    kind = (config.kind or "fake").lower()
    if kind == "fake":
        return FakeProvider(
            config.name,
            config.channel,
            latency_s=float(config.options.get("latency_s", 0.0)),
            default_outcome=str(config.options.get("default_outcome", "delivered")),
        )
    if kind == "webhook":
        if not config.endpoint:
            raise ValidationError(f"Provider {config.name} requires an endpoint", code="PROVIDER_CONFIG_INVALID")
        api_key = secrets.get_secret(config.api_key_secret) if config.api_key_secret else None
        return WebhookProvider(
            config.name,
            config.channel,
            endpoint=config.endpoint,
            api_key=api_key,
            client=client,
            default_timeout_s=default_timeout_s,
        )
    raise ValidationError(f"Unsupported provider kind: {kind}", code="PROVIDER_CONFIG_INVALID")


def build_providers(
    catalog: PolicyCatalog,
    *,
    secrets: SecretResolver,
    client: httpx.AsyncClient | None = None,
    default_timeout_s: float = 8.0,
) -> dict[str, ProviderAdapter]:
    return {
        config.name: build_provider(config, secrets=secrets, client=client, default_timeout_s=default_timeout_s)
        for config in catalog.providers
    }
