from __future__ import annotations

import pytest

from notifyhub.core.errors import ContactDecryptionError, ValidationError
from notifyhub.core.secrets import CONTACT_ENCRYPTION_KEY, StaticSecretResolver
from notifyhub.services.contacts import ContactCipher, resolve_destination, validate_contact


def test_encrypted_contacts_decrypt_and_plain_values_pass_through() -> None:
    cipher = ContactCipher(StaticSecretResolver({CONTACT_ENCRYPTION_KEY: "k1"}))
    token = cipher.encrypt("+15551234567")
    assert token.startswith("enc:")
    assert cipher.decrypt(token) == "+15551234567"
    assert cipher.decrypt("+15551234567") == "+15551234567"

    other = ContactCipher(StaticSecretResolver({CONTACT_ENCRYPTION_KEY: "k2"}))
    with pytest.raises(ContactDecryptionError):
        other.decrypt(token)


def test_missing_key_cannot_decrypt() -> None:
    cipher = ContactCipher(StaticSecretResolver({}))
    with pytest.raises(ContactDecryptionError):
        cipher.decrypt("enc:abc")


def test_contact_formats() -> None:
    validate_contact("sms", "+15551234567")
    validate_contact("email", "a@example.com")
    validate_contact("push", "device-token")
    with pytest.raises(ValidationError) as excinfo:
        validate_contact("sms", "5551234567")
    assert excinfo.value.code == "INVALID_CONTACT"
    with pytest.raises(ValidationError):
        validate_contact("email", "not-an-address")


def test_destination_fallbacks(make_request) -> None:
    cipher = ContactCipher(StaticSecretResolver({CONTACT_ENCRYPTION_KEY: "k1"}))
    assert resolve_destination(make_request(), "push", cipher) == "user:user-1"
    assert resolve_destination(make_request(user_id=None), "realtime", cipher) == "broadcast:tenant-a"

    encrypted = make_request(channels=("sms",), contacts={"sms": cipher.encrypt("+15551234567")})
    assert resolve_destination(encrypted, "sms", cipher) == "+15551234567"

    with pytest.raises(ValidationError) as excinfo:
        resolve_destination(make_request(channels=("email",)), "email", cipher)
    assert excinfo.value.code == "MISSING_CONTACT"
