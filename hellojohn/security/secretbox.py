"""AES-256-GCM encryption for secrets persisted in the control and data planes.

Ciphertexts are self-describing strings: a version prefix followed by the
encoded ``nonce || ciphertext``. Decryption refuses any value whose prefix does
not match the box it is handed to, so a TOTP secret can never be decrypted as
a DSN and vice versa.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LENGTH = 32
NONCE_SIZE = 12

GENERAL_PREFIX = "GCMV1:"
MFA_PREFIX = "GCMV1-MFA:"


class SecretBoxError(Exception):
    """Raised for invalid master keys and undecryptable ciphertexts."""


def parse_master_key(raw: str | bytes) -> bytes:
    """Decode a master key given as base64 (std or raw), 64 hex chars or 32 raw bytes."""
    if isinstance(raw, bytes):
        if len(raw) == KEY_LENGTH:
            return raw
        raw = raw.decode("utf-8", errors="strict")
    key = raw.strip()
    if not key:
        raise SecretBoxError("master key is empty")

    for candidate in (key, key + "=" * (-len(key) % 4)):
        try:
            decoded = base64.b64decode(candidate, validate=True)
        except (binascii.Error, ValueError):
            continue
        if len(decoded) == KEY_LENGTH:
            return decoded

    if len(key) == 64:
        try:
            decoded = bytes.fromhex(key)
        except ValueError:
            decoded = b""
        if len(decoded) == KEY_LENGTH:
            return decoded

    encoded = key.encode("utf-8")
    if len(encoded) == KEY_LENGTH:
        return encoded
    raise SecretBoxError(
        "master key must be 32 raw bytes, 64 hex chars or base64 of 32 bytes"
    )


class SecretBox:
    """Encrypts short strings under a process master key."""

    def __init__(self, key: str | bytes, *, prefix: str = GENERAL_PREFIX):
        self._aead = AESGCM(parse_master_key(key))
        self.prefix = prefix

    def _encode(self, blob: bytes) -> str:
        if self.prefix == MFA_PREFIX:
            return blob.hex()
        return base64.urlsafe_b64encode(blob).decode("ascii").rstrip("=")

    def _decode(self, body: str) -> bytes:
        try:
            if self.prefix == MFA_PREFIX:
                return bytes.fromhex(body)
            return base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
        except (binascii.Error, ValueError) as exc:
            raise SecretBoxError("ciphertext is not correctly encoded") from exc

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return self.prefix + self._encode(nonce + sealed)

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext or not ciphertext.startswith(self.prefix):
            raise SecretBoxError("ciphertext prefix mismatch")
        blob = self._decode(ciphertext[len(self.prefix):])
        if len(blob) <= NONCE_SIZE:
            raise SecretBoxError("ciphertext too short")
        try:
            plain = self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
        except InvalidTag as exc:
            raise SecretBoxError("ciphertext authentication failed") from exc
        return plain.decode("utf-8")

    def is_ciphertext(self, value: Optional[str]) -> bool:
        return bool(value) and value.startswith(self.prefix)
