from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

PERIOD = 30
DIGITS = 6
RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_LENGTH = 10
RECOVERY_CODE_COUNT = 10


def generate_secret(n_bytes: int = 20) -> str:
    """Return a 160-bit base32 secret without padding."""
    return base64.b32encode(secrets.token_bytes(n_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, True)
    except (ValueError, TypeError):
        return None


def code_at(secret: str, counter: int, *, digits: int = DIGITS) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def counter_for(timestamp: float, *, period: int = PERIOD) -> int:
    return int(timestamp // period)


def verify(
    secret: str,
    code: str,
    *,
    now: Optional[float] = None,
    window: int = 1,
    last_counter: int = -1,
) -> Tuple[bool, int]:
    """Check a code within +/- ``window`` steps, refusing counters already used.

    Returns ``(ok, counter)`` where ``counter`` is the matched step.
    """
    code = (code or "").strip()
    if len(code) != DIGITS or not code.isdigit():
        return False, -1
    current = counter_for(time.time() if now is None else now)
    for offset in range(-window, window + 1):
        counter = current + offset
        if counter <= last_counter:
            continue
        expected = code_at(secret, counter)
        if expected and hmac.compare_digest(expected, code):
            return True, counter
    return False, -1


def otpauth_url(issuer: str, account: str, secret: str) -> str:
    label = quote(f"{issuer}:{account}", safe="@:")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": DIGITS,
            "period": PERIOD,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def generate_recovery_codes(
    count: int = RECOVERY_CODE_COUNT, length: int = RECOVERY_CODE_LENGTH
) -> list[str]:
    return [
        "".join(secrets.choice(RECOVERY_ALPHABET) for _ in range(length))
        for _ in range(count)
    ]


def normalize_recovery_code(code: str) -> str:
    return code.replace("-", "").replace(" ", "").strip().upper()
