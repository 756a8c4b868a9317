from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from keygate.core.config import get_settings
from keygate.core.errors import SessionConfigError


# Sealed format: base64url(nonce || ciphertext || tag), versioned by prefix.
_SEALED_PREFIX = "v1:"
_NONCE_BYTES = 12
_AAD = b"keygate.remote_api_key"


def _sealing_key(secret: str | None = None) -> bytes:
    # Derive a fixed 256-bit AES key from the configured secret.
    resolved = secret if secret is not None else get_settings().key_sealing_secret
    if not resolved:
        raise SessionConfigError("KEY_SEALING_SECRET is not set")
    return hashlib.sha256(resolved.encode("utf-8")).digest()


def seal_secret(plaintext: str, *, secret: str | None = None) -> str:
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext_with_tag = AESGCM(_sealing_key(secret)).encrypt(nonce, plaintext.encode("utf-8"), _AAD)
    encoded = base64.urlsafe_b64encode(nonce + ciphertext_with_tag).decode("ascii")
    return f"{_SEALED_PREFIX}{encoded}"


def open_secret(sealed: str, *, secret: str | None = None) -> str:
    """Decrypt a value produced by :func:`seal_secret`.

    Raises ``ValueError`` for malformed input or when authentication fails,
    for example after the sealing secret was rotated.
    """
    if not sealed.startswith(_SEALED_PREFIX):
        raise ValueError("unsupported sealed value format")
    try:
        raw = base64.urlsafe_b64decode(sealed[len(_SEALED_PREFIX):].encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise ValueError("sealed value is not valid base64") from exc
    if len(raw) <= _NONCE_BYTES:
        raise ValueError("sealed value is truncated")
    nonce, ciphertext_with_tag = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
    try:
        plaintext = AESGCM(_sealing_key(secret)).decrypt(nonce, ciphertext_with_tag, _AAD)
    except InvalidTag as exc:
        raise ValueError("sealed value failed authentication") from exc
    return plaintext.decode("utf-8")
