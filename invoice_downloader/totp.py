"""One-time password helpers (RFC 4226 HOTP / RFC 6238 TOTP).

Vendors hand out second-factor secrets in different encodings. ``decode_secret``
tries them in a fixed order (strict Base32, hex, loosely filtered Base32,
Base64) and raises :class:`SecretFormatError` when none applies; it never
substitutes a placeholder key, because a wrong key still produces plausible
looking codes that silently fail at the vendor.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import struct
import time

__all__ = [
    "SecretFormatError",
    "CodeGenerationError",
    "decode_secret",
    "is_valid_secret",
    "generate_code",
    "generate_totp",
    "generate_window",
    "current_counter",
    "seconds_remaining",
]

TIME_STEP_SECONDS = 30
DEFAULT_DIGITS = 6
BASE32_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

MIN_BASE32_LENGTH = 16
MIN_BASE64_LENGTH = 12
MIN_HEX_LENGTH = 20

_SEPARATORS = re.compile(r"[\s-]+")
_BASE32_PATTERN = re.compile(r"^[A-Z2-7]+=*$", re.IGNORECASE)
_HEX_PATTERN = re.compile(r"^[0-9A-F]+$", re.IGNORECASE)
_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/_]+=*$")
_NON_BASE32 = re.compile(r"[^A-Z2-7]", re.IGNORECASE)


class SecretFormatError(ValueError):
    """Raised when a second-factor secret cannot be decoded."""


class CodeGenerationError(RuntimeError):
    """Raised when an HOTP/TOTP code cannot be computed."""


def _clean(text: str) -> str:
    return _SEPARATORS.sub("", text or "")


def _base32_to_bytes(chars: str) -> bytes:
    value = 0
    bits = 0
    output = bytearray()
    for char in chars.upper().rstrip("="):
        value = (value << 5) | BASE32_ALPHABET.index(char)
        bits += 5
        if bits >= 8:
            output.append((value >> (bits - 8)) & 0xFF)
            bits -= 8
        value &= (1 << bits) - 1
    return bytes(output)


def _hex_to_bytes(chars: str) -> bytes:
    normalized = chars if len(chars) % 2 == 0 else f"0{chars}"
    return bytes.fromhex(normalized)


def _base64_to_bytes(chars: str) -> bytes:
    normalized = chars.replace("-", "+").replace("_", "/").rstrip("=")
    normalized += "=" * (-len(normalized) % 4)
    return base64.b64decode(normalized, validate=True)


def decode_secret(text: str) -> bytes:
    """Decode a Base32 / hex / Base64 secret into raw key bytes."""

    cleaned = _clean(text)
    if not cleaned:
        raise SecretFormatError("secret is empty")

    if _BASE32_PATTERN.match(cleaned):
        decoded = _base32_to_bytes(cleaned)
        if decoded:
            return decoded

    if _HEX_PATTERN.match(cleaned):
        return _hex_to_bytes(cleaned)

    loose = _NON_BASE32.sub("", cleaned).upper()
    if len(loose) >= MIN_BASE32_LENGTH:
        return _base32_to_bytes(loose)

    if _BASE64_PATTERN.match(cleaned):
        try:
            decoded = _base64_to_bytes(cleaned)
        except (binascii.Error, ValueError) as exc:
            raise SecretFormatError(f"secret is not valid Base64: {exc}") from exc
        if decoded:
            return decoded

    raise SecretFormatError("secret is not Base32, hex or Base64")


def is_valid_secret(text: str | None) -> bool:
    if not text or not text.strip():
        return False

    cleaned = _clean(text).upper()
    if re.fullmatch(r"[A-Z2-7]+=*", cleaned) and len(cleaned.rstrip("=")) >= MIN_BASE32_LENGTH:
        return True

    original = _clean(text)
    if re.fullmatch(r"[A-Za-z0-9+/=]+", original) and len(original) >= MIN_BASE64_LENGTH:
        return True

    if re.fullmatch(r"[0-9A-F]+", cleaned) and len(cleaned) >= MIN_HEX_LENGTH and len(cleaned) % 2 == 0:
        return True

    return False


def generate_code(secret: bytes, counter: int, digits: int = DEFAULT_DIGITS) -> str:
    """Compute the RFC 4226 HOTP value for ``counter``."""

    if not isinstance(secret, (bytes, bytearray)) or not secret:
        raise CodeGenerationError("secret key must be non-empty bytes")
    if not isinstance(counter, int) or counter < 0 or counter >= 2**64:
        raise CodeGenerationError(f"counter out of range: {counter!r}")
    if not isinstance(digits, int) or not 1 <= digits <= 10:
        raise CodeGenerationError(f"unsupported digit count: {digits!r}")

    digest = hmac.new(bytes(secret), struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    binary = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10**digits)).zfill(digits)


def current_counter(timestamp: float | None = None, time_step: int = TIME_STEP_SECONDS) -> int:
    now = time.time() if timestamp is None else timestamp
    return int(now // time_step)


def seconds_remaining(timestamp: float | None = None, time_step: int = TIME_STEP_SECONDS) -> float:
    now = time.time() if timestamp is None else timestamp
    return time_step - (now % time_step)


def _key_bytes(secret: str | bytes) -> bytes:
    if isinstance(secret, (bytes, bytearray)):
        return bytes(secret)
    return decode_secret(secret)


def generate_totp(
    secret: str | bytes,
    timestamp: float | None = None,
    *,
    time_step: int = TIME_STEP_SECONDS,
    digits: int = DEFAULT_DIGITS,
) -> str:
    return generate_code(_key_bytes(secret), current_counter(timestamp, time_step), digits)


def generate_window(
    secret: str | bytes,
    window: int = 1,
    timestamp: float | None = None,
    *,
    time_step: int = TIME_STEP_SECONDS,
    digits: int = DEFAULT_DIGITS,
) -> list[str]:
    """Codes for the surrounding time steps, oldest first, to absorb clock skew."""

    if window < 0:
        raise CodeGenerationError(f"window must be >= 0; got {window}")
    key = _key_bytes(secret)
    counter = current_counter(timestamp, time_step)
    return [
        generate_code(key, step, digits)
        for step in range(counter - window, counter + window + 1)
        if step >= 0
    ]
