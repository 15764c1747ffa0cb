from __future__ import annotations

import json
import threading
import time
from typing import Callable, Dict, Optional, Tuple

JWKS_TTL_SECONDS = 15


class JWKSCache:
    """Memoizes serialized JWKS documents per key owner for a short TTL.

    Entries are replaced, never mutated: writers publish a new dict under the
    lock and readers use whatever dict they find.
    """

    def __init__(self, loader: Callable[[str], dict], *, ttl: float = JWKS_TTL_SECONDS):
        self._loader = loader
        self._ttl = ttl
        self._entries: Dict[str, Tuple[float, bytes]] = {}
        self._lock = threading.Lock()

    def get(self, owner: str) -> bytes:
        entry = self._entries.get(owner)
        now = time.monotonic()
        if entry is not None and entry[0] > now:
            return entry[1]
        body = json.dumps(self._loader(owner), separators=(",", ":")).encode("utf-8")
        with self._lock:
            entries = dict(self._entries)
            entries[owner] = (now + self._ttl, body)
            self._entries = entries
        return body

    def invalidate(self, owner: Optional[str] = None) -> None:
        with self._lock:
            if owner is None:
                self._entries = {}
            else:
                entries = dict(self._entries)
                entries.pop(owner, None)
                self._entries = entries
