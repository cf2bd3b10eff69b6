from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
import re

from cryptography.fernet import Fernet, InvalidToken

from notifyhub.core.errors import ContactDecryptionError, ValidationError
from notifyhub.core.secrets import CONTACT_ENCRYPTION_KEY, SecretResolver
from notifyhub.domain.notifications import (
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    CHANNEL_REALTIME,
    CHANNEL_SMS,
    NotificationRequest,
)


ENCRYPTED_PREFIX = "enc:"

_E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ContactCipher:
    """Fernet encryption for contact fields, keyed from the secret resolver."""

    def __init__(self, secrets: SecretResolver) -> None:
        self._secrets = secrets
        self._fernet: Fernet | None = None

    def _build_fernet(self) -> Fernet:
        if self._fernet is None:
            source = (self._secrets.get_secret(CONTACT_ENCRYPTION_KEY) or "").strip()
            if not source:
                raise ContactDecryptionError("Contact encryption key is not configured")
            digest = hashlib.sha256(source.encode("utf-8")).digest()
            self._fernet = Fernet(urlsafe_b64encode(digest))
        return self._fernet

    def encrypt(self, value: str) -> str:
        token = self._build_fernet().encrypt(value.encode("utf-8"))
        return ENCRYPTED_PREFIX + token.decode("utf-8")

    def decrypt(self, value: str) -> str:
        # Plain values pass through unchanged.
        if not value.startswith(ENCRYPTED_PREFIX):
            return value
        try:
            return self._build_fernet().decrypt(value[len(ENCRYPTED_PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ContactDecryptionError("Encrypted contact could not be decrypted") from exc


def validate_contact(channel: str, contact: str) -> None:
    if channel == CHANNEL_SMS and not _E164_RE.match(contact):
        raise ValidationError("SMS contact must be an E.164 phone number", code="INVALID_CONTACT", details={"channel": channel})
    if channel == CHANNEL_EMAIL and not _EMAIL_RE.match(contact):
        raise ValidationError("Email contact must be an email address", code="INVALID_CONTACT", details={"channel": channel})


def resolve_destination(request: NotificationRequest, channel: str, cipher: ContactCipher) -> str:
    raw = request.contacts.get(channel)
    if raw:
        return cipher.decrypt(raw)
    # Push and realtime address the user's devices or connections, or the tenant broadcast group.
    if channel in {CHANNEL_PUSH, CHANNEL_REALTIME}:
        if request.user_id:
            return f"user:{request.user_id}"
        return f"broadcast:{request.tenant_id}"
    raise ValidationError(f"Channel {channel} requires a contact", code="MISSING_CONTACT", details={"channel": channel})
