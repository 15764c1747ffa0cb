"""Signing keys per tenant (or the global owner) with rotation and grace periods.

Key material lives in the control plane's key repository; private PEMs are
sealed with the signing master key before they reach disk.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from hellojohn.jwt import jws
from hellojohn.logging import get_logger
from hellojohn.security.secretbox import SecretBox
from hellojohn.store.errors import InvalidConfig
from hellojohn.store.models import SigningKey, utcnow

logger = get_logger(__name__)

GLOBAL_OWNER = ""
ACTIVE_CACHE_SECONDS = 30
# an unknown kid may re-read the repository at most this often
UNKNOWN_KID_RELOAD_SECONDS = 5


@dataclass(frozen=True)
class ActiveKey:
    kid: str
    private_key: Ed25519PrivateKey
    public_key: Ed25519PublicKey


def new_kid(now: datetime) -> str:
    return "fs-" + now.strftime("%Y%m%dT%H%M%SZ")


class Keystore:
    def __init__(self, repo, master_key: Optional[str]):
        self._repo = repo
        self._box = SecretBox(master_key) if master_key else None
        self._active: Dict[str, Tuple[float, ActiveKey]] = {}
        # owner -> (expires, loaded_at, records)
        self._listed: Dict[str, Tuple[float, float, List[SigningKey]]] = {}
        self._public: Dict[Tuple[str, str], Ed25519PublicKey] = {}
        self._lock = threading.Lock()

    def _require_box(self) -> SecretBox:
        if self._box is None:
            raise InvalidConfig("SIGNING_MASTER_KEY is required to use signing keys")
        return self._box

    def _generate(self, owner: str, now: datetime, existing: List[SigningKey]) -> Tuple[SigningKey, ActiveKey]:
        box = self._require_box()
        private_key, private_pem, public_pem = jws.generate_keypair()
        kid = new_kid(now)
        taken = {k.kid for k in existing}
        while kid in taken:
            kid = f"{new_kid(now)}-{secrets.token_hex(2)}"
        record = SigningKey(
            kid=kid,
            tenant=owner,
            public_pem=public_pem,
            private_pem_enc=box.encrypt(private_pem),
            status="active",
            created_at=now,
        )
        self._repo.save(record)
        self._listed.pop(owner, None)
        return record, ActiveKey(kid, private_key, private_key.public_key())

    def _load_active(self, record: SigningKey) -> ActiveKey:
        pem = self._require_box().decrypt(record.private_pem_enc)
        private_key = jws.load_private_pem(pem)
        return ActiveKey(record.kid, private_key, private_key.public_key())

    def active(self, owner: str = GLOBAL_OWNER) -> ActiveKey:
        """The unique active key of ``owner``, generating one on first use."""
        cached = self._active.get(owner)
        if cached is not None and cached[0] > time.monotonic():
            return cached[1]
        with self._lock:
            keys = self._repo.list(owner)
            current = [k for k in keys if k.status == "active"]
            if current:
                current.sort(key=lambda k: k.created_at, reverse=True)
                if len(current) > 1:
                    logger.error("keystore_multiple_active", tenant=owner or "global", count=len(current))
                active = self._load_active(current[0])
            else:
                _, active = self._generate(owner, utcnow(), keys)
                logger.info("signing_key_generated", tenant=owner or "global", kid=active.kid)
            self._active[owner] = (time.monotonic() + ACTIVE_CACHE_SECONDS, active)
            return active

    def _records(self, owner: str, *, reload: bool = False) -> List[SigningKey]:
        cached = self._listed.get(owner)
        mono = time.monotonic()
        if cached is not None and cached[0] > mono and not reload:
            return cached[2]
        records = self._repo.list(owner)
        self._listed[owner] = (mono + ACTIVE_CACHE_SECONDS, mono, records)
        return records

    def published(self, owner: str = GLOBAL_OWNER, *, now: Optional[datetime] = None) -> List[SigningKey]:
        """Active plus unexpired grace keys, newest first."""
        now = now or utcnow()
        keys = [k for k in self._records(owner) if k.is_published(now)]
        keys.sort(key=lambda k: k.created_at, reverse=True)
        return keys

    def _find_published(self, owner: str, kid: str) -> Optional[SigningKey]:
        return next((record for record in self.published(owner) if record.kid == kid), None)

    def public_key(self, owner: str, kid: str) -> Optional[Ed25519PublicKey]:
        """Verification key for ``kid``; the key list is cached per owner."""
        record = self._find_published(owner, kid)
        if record is None:
            # another node may have rotated since the list was cached
            cached = self._listed.get(owner)
            if cached is None or time.monotonic() - cached[1] < UNKNOWN_KID_RELOAD_SECONDS:
                return None
            self._records(owner, reload=True)
            record = self._find_published(owner, kid)
            if record is None:
                return None
        cache_key = (owner, kid)
        key = self._public.get(cache_key)
        if key is None:
            key = jws.load_public_pem(record.public_pem)
            self._public[cache_key] = key
        return key

    def jwks(self, owner: str = GLOBAL_OWNER) -> Dict[str, list]:
        if not self.published(owner):
            self.active(owner)
        keys = []
        for record in self.published(owner):
            jwk = jws.public_jwk(jws.load_public_pem(record.public_pem), record.kid)
            jwk["status"] = record.status
            keys.append(jwk)
        return {"keys": keys}

    def rotate(self, owner: str, grace_seconds: int) -> str:
        """Promote a fresh key; the previous active key stays published for ``grace_seconds``."""
        now = utcnow()
        with self._lock:
            keys = self._repo.list(owner)
            for record in keys:
                if record.status == "active":
                    if grace_seconds > 0:
                        record.status = "grace"
                        record.not_after = now + timedelta(seconds=grace_seconds)
                    else:
                        record.status = "revoked"
                        record.not_after = now
                    self._repo.save(record)
                elif record.status == "grace" and not record.is_published(now):
                    record.status = "revoked"
                    self._repo.save(record)
            self._listed.pop(owner, None)
            _, active = self._generate(owner, now, keys)
            self._active[owner] = (time.monotonic() + ACTIVE_CACHE_SECONDS, active)
        logger.info(
            "key_rotated", tenant=owner or "global", kid=active.kid, grace_seconds=grace_seconds
        )
        return active.kid

    def invalidate(self, owner: Optional[str] = None) -> None:
        with self._lock:
            if owner is None:
                self._active.clear()
                self._listed.clear()
            else:
                self._active.pop(owner, None)
                self._listed.pop(owner, None)
