"""Utility helpers for encrypting/decrypting the credential store payload."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


def _fernet(secret_key: str) -> Fernet:
    digest = hashlib.sha256(secret_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_secret(secret_key: str, plaintext: str) -> str:
    return _fernet(secret_key).encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(secret_key: str, ciphertext: str) -> str:
    """Reverse :func:`encrypt_secret`.

    Raises ``ValueError`` when the token was produced with another key or has
    been tampered with, so a wrong SECRET_KEY never yields garbage text.
    """

    try:
        plain_bytes = _fernet(secret_key).decrypt(ciphertext.encode("utf-8"))
    except InvalidToken as exc:
        raise ValueError("ciphertext authentication failed") from exc
    return plain_bytes.decode("utf-8")
