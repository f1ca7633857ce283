from __future__ import annotations

import hashlib
from base64 import urlsafe_b64encode

from cryptography.fernet import Fernet, InvalidToken

from syncbridge.core.config import get_settings
from syncbridge.core.errors import CredentialEncryptionError


def _build_fernet() -> Fernet:
    settings = get_settings()
    # Never fall back to plaintext for non-empty credentials.
    source = (settings.credentials_encryption_key or "").strip()
    if not source:
        raise CredentialEncryptionError("CREDENTIALS_ENCRYPTION_KEY is required to store integration credentials")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def encrypt_credential(value: str | None) -> str:
    # Empty credentials stay empty so cleared fields need no key.
    if not value:
        return ""
    token = _build_fernet().encrypt(value.encode("utf-8"))
    return str(token.decode("utf-8"))


def decrypt_credential(token: str | None) -> str:
    if not token:
        return ""
    try:
        return _build_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise CredentialEncryptionError("stored credential could not be decrypted with the configured key") from exc
