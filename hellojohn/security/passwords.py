from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hellojohn.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id PHC hashing plus an optional cached blacklist of weak passwords."""

    def __init__(self, blacklist_path: Optional[Path | str] = None):
        self._hasher = PasswordHasher(type=Type.ID)
        self._blacklist_path = Path(blacklist_path) if blacklist_path else None
        self._blacklist: Optional[frozenset[str]] = None
        self._blacklist_mtime: Optional[float] = None
        self._lock = threading.Lock()

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        """Constant-time check of a password against a stored PHC string."""
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def _load_blacklist(self) -> frozenset[str]:
        if self._blacklist_path is None or not self._blacklist_path.exists():
            return frozenset()
        mtime = self._blacklist_path.stat().st_mtime
        with self._lock:
            if self._blacklist is not None and self._blacklist_mtime == mtime:
                return self._blacklist
            words = {
                line.strip().lower()
                for line in self._blacklist_path.read_text(encoding="utf-8").splitlines()
                if line.strip() and not line.startswith("#")
            }
            self._blacklist = frozenset(words)
            self._blacklist_mtime = mtime
            logger.info("password_blacklist_loaded", entries=len(words))
            return self._blacklist

    def is_blacklisted(self, password: str) -> bool:
        return password.strip().lower() in self._load_blacklist()
