"""Opaque token generation and the digests used to index them.

Two encodings are used, one per entity kind:

* base64url SHA-256 (no padding): cache keys for sessions and authorization
  codes, trusted-device hashes and recovery-code hashes;
* hex SHA-256: refresh-token rows.
"""

from __future__ import annotations

import base64
import hashlib
import secrets


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def opaque_token(n_bytes: int = 32) -> str:
    return b64url(secrets.token_bytes(n_bytes))


def sha256_b64url(value: str) -> str:
    return b64url(hashlib.sha256(value.encode("utf-8")).digest())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def pkce_s256(verifier: str) -> str:
    """Derive the S256 code challenge for a PKCE verifier."""
    return sha256_b64url(verifier)
