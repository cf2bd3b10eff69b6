from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from notifyhub.core.errors import ProviderError, ProviderTimeout
from notifyhub.domain.notifications import ProviderMessage
from notifyhub.providers.base import ProviderSendResult


logger = logging.getLogger(__name__)


class WebhookProvider:
    """Delivers through an HTTP relay that fronts a vendor SDK."""

    def __init__(
        self,
        name: str,
        channel: str,
        *,
        endpoint: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        default_timeout_s: float = 8.0,
    ) -> None:
        self.name = name
        self.channel = channel
        self._endpoint = endpoint
        self._api_key = api_key
        self._client = client
        self._default_timeout_s = default_timeout_s

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._default_timeout_s)
        return self._client

    def _headers(self, message: ProviderMessage) -> dict[str, str]:
        # Correlation and idempotency identifiers travel unchanged to the vendor.
        headers = {
            "X-Correlation-Id": message.correlation_id,
            "Idempotency-Key": f"{message.idempotency_key}:{message.channel}",
            "X-Notification-Id": message.notification_id,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(self, message: ProviderMessage, destination: str) -> dict[str, Any]:
        return {
            "provider": self.name,
            "channel": message.channel,
            "destination": destination,
            "tenant_id": message.tenant_id,
            "priority": message.priority,
            "subject": message.subject,
            "body": message.body,
            "data": dict(message.data),
        }

    async def send(self, message: ProviderMessage, destination: str, deadline: float) -> ProviderSendResult:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return ProviderSendResult(delivered=False, error_code=ProviderTimeout.code, error_detail="deadline passed")
        try:
            response = await self._get_client().post(
                self._endpoint,
                json=self._payload(message, destination),
                headers=self._headers(message),
                timeout=min(remaining, self._default_timeout_s),
            )
        except httpx.TimeoutException as exc:
            logger.warning("provider_timeout provider=%s notification_id=%s", self.name, message.notification_id)
            return ProviderSendResult(delivered=False, error_code=ProviderTimeout.code, error_detail=str(exc))
        except httpx.HTTPError as exc:
            logger.warning(
                "provider_transport_error provider=%s notification_id=%s error=%s",
                self.name,
                message.notification_id,
                exc,
            )
            return ProviderSendResult(delivered=False, error_code=ProviderError.code, error_detail=str(exc))

        if 200 <= response.status_code < 300:
            provider_message_id = response.headers.get("X-Message-Id")
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("id"):
                provider_message_id = str(body["id"])
            return ProviderSendResult(delivered=True, provider_message_id=provider_message_id)
        # Throttling and server faults are transient; other client errors are permanent rejections.
        retryable = response.status_code == 429 or response.status_code >= 500
        return ProviderSendResult(
            delivered=False,
            error_code=ProviderError.code if retryable else "PROVIDER_REJECTED",
            error_detail=f"HTTP {response.status_code}",
            retryable=retryable,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
