from __future__ import annotations

import logging
from typing import Iterable

from notifyhub.core.errors import TemplateNotFound, ValidationError
from notifyhub.domain.notifications import PRIORITY_HIGH, SYNC_CHANNELS, NotificationRequest, RenderedMessage
from notifyhub.domain.policies import PolicyCatalog
from notifyhub.services.templates import TemplateResolver


logger = logging.getLogger(__name__)


def locale_candidates(locale: str | None, default_locale: str) -> list[str]:
    # Exact locale, then its language, then the configured default; duplicates dropped.
    candidates: list[str] = []
    if locale:
        cleaned = locale.strip().replace("_", "-")
        if cleaned:
            candidates.append(cleaned)
            language = cleaned.split("-", 1)[0]
            candidates.append(language)
    candidates.append(default_locale)
    seen: set[str] = set()
    ordered: list[str] = []
    for candidate in candidates:
        lowered = candidate.lower()
        if lowered not in seen:
            seen.add(lowered)
            ordered.append(candidate)
    return ordered


def is_sync_eligible(request: NotificationRequest) -> bool:
    return (
        request.synchronous
        and request.priority == PRIORITY_HIGH
        and bool(request.channels)
        and set(request.channels) <= SYNC_CHANNELS
    )


class Router:
    def __init__(self, *, catalog: PolicyCatalog, resolver: TemplateResolver, default_locale: str) -> None:
        self._catalog = catalog
        self._resolver = resolver
        self._default_locale = default_locale

    def check_sync(self, request: NotificationRequest) -> None:
        if request.synchronous and not is_sync_eligible(request):
            raise ValidationError(
                "Synchronous delivery requires high priority and only push or realtime channels",
                code="SYNC_NOT_ELIGIBLE",
                details={"channels": list(request.channels), "priority": request.priority},
            )

    def template_for_message_type(self, message_type: str) -> str:
        template_key = self._catalog.template_for_message_type(message_type)
        if template_key is None:
            raise ValidationError(
                f"Unknown message type {message_type}",
                code="UNKNOWN_MESSAGE_TYPE",
                details={"message_type": message_type},
            )
        return template_key

    async def render(self, request: NotificationRequest, channel: str) -> RenderedMessage:
        candidates = locale_candidates(request.locale, self._default_locale)
        for locale in candidates:
            rendered = await self._resolver.render(request.template_key, channel, locale, request.payload)
            if rendered is not None:
                return rendered
        logger.warning(
            "template_not_found template_key=%s channel=%s locales=%s",
            request.template_key,
            channel,
            ",".join(candidates),
        )
        raise TemplateNotFound(
            f"No template {request.template_key} for channel {channel}",
            details={"template_key": request.template_key, "channel": channel, "locales": candidates},
        )

    async def render_all(self, request: NotificationRequest, channels: Iterable[str]) -> dict[str, RenderedMessage]:
        return {channel: await self.render(request, channel) for channel in channels}
