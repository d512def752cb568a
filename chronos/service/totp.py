"""RFC 6238 time-based one-time passwords.

HMAC-SHA1 over a 30 second counter, 6 digits, which is what authenticator
apps expect from an ``otpauth://totp/`` URI with default parameters.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

from chronos.logging import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVAL = 30
DEFAULT_DIGITS = 6
DEFAULT_WINDOW = 1


def generate_secret(num_bytes: int = 20) -> str:
    """Random base32 secret without padding (160 bits by default)."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    normalized = secret.replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(
    secret: str,
    timestamp: float,
    *,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    mac = hmac.new(key, counter, hashlib.sha1).digest()
    offset = mac[-1] & 0x0F
    code_int = (int.from_bytes(mac[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    candidate: str,
    *,
    window: int = DEFAULT_WINDOW,
    interval: int = DEFAULT_INTERVAL,
    digits: int = DEFAULT_DIGITS,
    now: Optional[float] = None,
) -> bool:
    """Accept ``candidate`` if it matches any step in ``[-window, +window]``."""
    # ASCII digits only; str.isdigit also accepts other scripts
    if not candidate or len(candidate) != digits:
        return False
    if not (candidate.isascii() and candidate.isdigit()):
        return False
    current = time.time() if now is None else now
    for offset in range(-window, window + 1):
        expected = generate_totp(
            secret, current + offset * interval, interval=interval, digits=digits
        )
        if expected and hmac.compare_digest(expected.encode(), candidate.encode()):
            return True
    return False


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}", safe=":@")
    return f"otpauth://totp/{label}?{urlencode({'secret': secret, 'issuer': issuer})}"
