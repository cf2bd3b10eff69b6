from __future__ import annotations

import json
import logging
from typing import Mapping, Protocol

from notifyhub.core.config import Settings


logger = logging.getLogger(__name__)

ADMIN_OVERRIDE_TOKEN = "admin_override_token"
CONTACT_ENCRYPTION_KEY = "contact_encryption_key"


def service_secret_name(service_origin: str) -> str:
    return f"service_secret:{service_origin}"


class SecretResolver(Protocol):
    def get_secret(self, name: str) -> str | None:
        ...


class StaticSecretResolver:
    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        # Copy the mapping so later caller mutation does not leak into resolution.
        self._secrets = dict(secrets or {})

    def get_secret(self, name: str) -> str | None:
        return self._secrets.get(name)


class SettingsSecretResolver:
    def __init__(self, settings: Settings) -> None:
        # Parse once per resolver; resolvers are built per runtime, not per process.
        try:
            raw = json.loads(settings.secrets_json or "{}")
        except ValueError:
            logger.error("secrets_json_invalid")
            raw = {}
        self._secrets = {str(k): str(v) for k, v in raw.items()} if isinstance(raw, dict) else {}
        if settings.contact_encryption_key:
            self._secrets.setdefault(CONTACT_ENCRYPTION_KEY, settings.contact_encryption_key)

    def get_secret(self, name: str) -> str | None:
        return self._secrets.get(name)
