from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from supportbridge.core.config import get_settings


class EncryptionKeyError(RuntimeError):
    pass


def _load_key() -> bytes:
    settings = get_settings()
    raw = settings.ENCRYPTION_KEY_BASE64
    try:
        key = base64.b64decode(raw, validate=True)
    except Exception as e:  # noqa: BLE001
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must be valid base64") from e

    if len(key) != 32:
        raise EncryptionKeyError("ENCRYPTION_KEY_BASE64 must decode to 32 bytes (AES-256)")

    return key


def encrypt_token(*, token: str, aad: bytes) -> bytes:
    key = _load_key()
    nonce = os.urandom(12)
    ciphertext = AESGCM(key).encrypt(nonce, token.encode("utf-8"), aad)
    return nonce + ciphertext


def decrypt_token(*, blob: bytes, aad: bytes) -> str:
    if len(blob) < 13:
        raise ValueError("Encrypted token is too short")

    key = _load_key()
    plaintext = AESGCM(key).decrypt(blob[:12], blob[12:], aad)
    return plaintext.decode("utf-8")


def installation_token_aad(*, account_id: object, platform: str) -> bytes:
    return f"installations:{account_id}:{platform}".encode()
