from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import jinja2
from jinja2 import BaseLoader, StrictUndefined, Template, meta
from jinja2.sandbox import SandboxedEnvironment

from notifyhub.core.errors import RenderError
from notifyhub.domain.notifications import WILDCARD, RenderedMessage


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateDefinition:
    key: str
    locale: str
    body: str
    channel: str = WILDCARD
    subject: str | None = None


class TemplateResolver(Protocol):
    # Returns None when no template exists for exactly this locale; raises RenderError on bad templates.
    async def render(
        self,
        template_key: str,
        channel: str,
        locale: str,
        payload: Mapping[str, Any],
    ) -> RenderedMessage | None:
        ...


DEFAULT_TEMPLATES = (
    TemplateDefinition(key="auth_otp", locale="en", body="Your verification code is {{ code }}"),
    TemplateDefinition(
        key="auth_password_reset",
        locale="en",
        channel="email",
        subject="Reset your password",
        body="Use this link to reset your password: {{ reset_url }}",
    ),
    TemplateDefinition(key="order_confirmed", locale="en", body="Order {{ order_id }} is confirmed."),
    TemplateDefinition(key="order_delivered", locale="en", body="Order {{ order_id }} was delivered."),
    TemplateDefinition(key="ride_driver_arriving", locale="en", body="Your driver is arriving in {{ eta_minutes }} min."),
)


class JinjaTemplateResolver:
    """Sandboxed Jinja2 catalog keyed by (template key, channel, locale)."""

    def __init__(self, templates: Iterable[TemplateDefinition] = ()) -> None:
        self.env = SandboxedEnvironment(
            autoescape=False,
            loader=BaseLoader(),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._templates: dict[tuple[str, str, str], TemplateDefinition] = {}
        self._compiled: dict[tuple[str, str, str, str], Template] = {}
        for template in templates:
            self.register(template)

    def register(self, template: TemplateDefinition) -> None:
        identity = (template.key, template.channel, template.locale.lower())
        self._templates[identity] = template
        # Drop compiled parts of a replaced template.
        for part in ("body", "subject"):
            self._compiled.pop((*identity, part), None)

    def _lookup(self, template_key: str, channel: str, locale: str) -> TemplateDefinition | None:
        # A channel-specific template wins over the wildcard one.
        locale = locale.lower()
        return self._templates.get((template_key, channel, locale)) or self._templates.get(
            (template_key, WILDCARD, locale)
        )

    def _compile(self, template: TemplateDefinition, part: str, source: str) -> Template:
        cache_key = (template.key, template.channel, template.locale.lower(), part)
        compiled = self._compiled.get(cache_key)
        if compiled is None:
            compiled = self.env.from_string(source)
            self._compiled[cache_key] = compiled
        return compiled

    def extract_variables(self, source: str) -> set[str]:
        return set(meta.find_undeclared_variables(self.env.parse(source)))

    async def render(
        self,
        template_key: str,
        channel: str,
        locale: str,
        payload: Mapping[str, Any],
    ) -> RenderedMessage | None:
        template = self._lookup(template_key, channel, locale)
        if template is None:
            return None
        variables = dict(payload)
        try:
            body = self._compile(template, "body", template.body).render(**variables)
            subject = (
                self._compile(template, "subject", template.subject).render(**variables)
                if template.subject
                else None
            )
            used = self.extract_variables(template.body)
            if template.subject:
                used |= self.extract_variables(template.subject)
        except jinja2.TemplateError as exc:
            logger.warning(
                "template_render_failed template_key=%s channel=%s locale=%s error=%s",
                template_key,
                channel,
                locale,
                exc,
            )
            raise RenderError(
                f"Template {template_key} failed to render: {exc}",
                details={"template_key": template_key, "channel": channel, "locale": template.locale},
            ) from exc
        return RenderedMessage(body=body, subject=subject, variables_used=tuple(sorted(used)), locale=template.locale)


def load_template_catalog(path: str | None) -> list[TemplateDefinition]:
    # JSON list of {key, locale, body, channel?, subject?}; missing path means built-in templates.
    if not path:
        return list(DEFAULT_TEMPLATES)
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return [
        TemplateDefinition(
            key=str(row["key"]),
            locale=str(row["locale"]),
            body=str(row["body"]),
            channel=str(row.get("channel") or WILDCARD),
            subject=row.get("subject"),
        )
        for row in raw
    ]
