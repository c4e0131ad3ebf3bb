"""
Encryption at rest for signature images.

Keys are Fernet keys from settings. ENCRYPTION_KEY encrypts; keys listed in
ENCRYPTION_KEY_ROTATION are still accepted for decryption so old blobs stay
readable while a new key is rolled out.
"""
from cryptography.fernet import Fernet, MultiFernet, InvalidToken as FernetInvalidToken
from enrollpay.core.config import settings
from enrollpay.core.errors import ConfigurationError
import base64
import logging
from typing import List

logger = logging.getLogger(__name__)


def _parse_key(key_str: str) -> bytes:
    """Accept a Fernet key (44 chars urlsafe base64) or raw 32 bytes in standard base64."""
    key_str = key_str.strip()
    if len(key_str) == 44:
        return key_str.encode()
    decoded = base64.b64decode(key_str)
    if len(decoded) != 32:
        raise ValueError("Encryption key must decode to 32 bytes")
    return base64.urlsafe_b64encode(decoded)


def _load_keys() -> List[bytes]:
    keys = []
    if settings.ENCRYPTION_KEY:
        keys.append(_parse_key(settings.ENCRYPTION_KEY))
    for key_str in (settings.ENCRYPTION_KEY_ROTATION or "").split(","):
        if not key_str.strip():
            continue
        try:
            key = _parse_key(key_str)
        except ValueError as e:
            logger.warning("[ENCRYPTION] Skipping unparseable rotation key: %s", e)
            continue
        if key not in keys:
            keys.append(key)
    return keys


def get_cipher() -> MultiFernet:
    keys = _load_keys()
    if not settings.ENCRYPTION_KEY or not keys:
        raise ConfigurationError("ENCRYPTION_KEY is not configured")
    return MultiFernet([Fernet(k) for k in keys])


def encrypt_bytes(data: bytes) -> bytes:
    return get_cipher().encrypt(data)


def decrypt_bytes(token: bytes) -> bytes:
    try:
        return get_cipher().decrypt(token)
    except FernetInvalidToken:
        raise ValueError("Blob could not be decrypted with any configured key")
