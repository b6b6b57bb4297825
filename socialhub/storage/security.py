"""Token-at-rest protection: SHA-256 fingerprints and authenticated encryption."""

from __future__ import annotations

import base64
from functools import lru_cache
import hashlib
import hmac
import json
import os
from typing import Any, Dict, Optional

from socialhub.core.config import get_settings


_NONCE_BYTES = 16
_MAC_BYTES = 32


class TokenDecryptionError(ValueError):
    """Raised when an encrypted blob was tampered with or uses another key."""


def hash_token(secret_value: str) -> str:
    return hashlib.sha256(secret_value.encode("utf-8")).hexdigest()


@lru_cache(maxsize=1)
def get_token_key() -> bytes:
    settings = get_settings()
    seed = settings.token_encryption_key.strip() or settings.secret_key or "socialhub-dev-token-key"
    return hashlib.sha256(seed.encode("utf-8")).digest()


def _keystream(key: bytes, nonce: bytes, length: int) -> bytes:
    stream = bytearray()
    counter = 0
    while len(stream) < length:
        stream.extend(hmac.new(key, nonce + counter.to_bytes(4, "big"), digestmod=hashlib.sha256).digest())
        counter += 1
    return bytes(stream[:length])


def encrypt_token(secret_value: str) -> str:
    """Encrypt with an HMAC-SHA256 keystream and append an encrypt-then-MAC tag."""

    key = get_token_key()
    nonce = os.urandom(_NONCE_BYTES)
    plaintext = secret_value.encode("utf-8")
    ciphertext = bytes(a ^ b for a, b in zip(plaintext, _keystream(key, nonce, len(plaintext))))
    mac = hmac.new(key, nonce + ciphertext, digestmod=hashlib.sha256).digest()
    return base64.urlsafe_b64encode(nonce + mac + ciphertext).decode("ascii")


def decrypt_token(ciphertext: str) -> str:
    key = get_token_key()
    try:
        blob = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
    except Exception as exc:
        raise TokenDecryptionError("Invalid encrypted token payload") from exc

    if len(blob) < _NONCE_BYTES + _MAC_BYTES:
        raise TokenDecryptionError("Invalid encrypted token payload")
    nonce = blob[:_NONCE_BYTES]
    mac = blob[_NONCE_BYTES : _NONCE_BYTES + _MAC_BYTES]
    encrypted = blob[_NONCE_BYTES + _MAC_BYTES :]
    expected_mac = hmac.new(key, nonce + encrypted, digestmod=hashlib.sha256).digest()
    if not hmac.compare_digest(mac, expected_mac):
        raise TokenDecryptionError("Invalid encrypted token payload")

    plaintext = bytes(a ^ b for a, b in zip(encrypted, _keystream(key, nonce, len(encrypted))))
    return plaintext.decode("utf-8")


def encrypt_json(payload: Dict[str, Any]) -> str:
    return encrypt_token(json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True))


def decrypt_json(ciphertext: Optional[str]) -> Dict[str, Any]:
    if not ciphertext:
        return {}
    parsed = json.loads(decrypt_token(ciphertext))
    if not isinstance(parsed, dict):
        raise TokenDecryptionError("Encrypted metadata must decode to an object")
    return parsed
