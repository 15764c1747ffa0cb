"""Per-tenant cache of data-plane connections keyed by tenant slug."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from hellojohn.logging import get_logger
from hellojohn.store.registry import AdapterConfig, AdapterRegistry, Connection

logger = get_logger(__name__)

OnTenantConnect = Callable[[str, str], None]


@dataclass
class _PoolEntry:
    connection: Connection
    driver: str
    config_key: str
    opened_at: float = field(default_factory=time.time)
    uses: int = 0


class TenantPool:
    """Lazily opens one adapter connection per tenant and reuses it.

    The map is guarded by a single lock; opens for the same slug are further
    serialized by a per-slug lock so concurrent first requests share one open.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        *,
        on_tenant_connect: Optional[OnTenantConnect] = None,
    ):
        self._registry = registry
        self._on_connect = on_tenant_connect
        self._entries: Dict[str, _PoolEntry] = {}
        self._slug_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _slug_lock(self, slug: str) -> threading.Lock:
        with self._lock:
            lock = self._slug_locks.get(slug)
            if lock is None:
                lock = threading.Lock()
                self._slug_locks[slug] = lock
            return lock

    def get(self, slug: str) -> Optional[Connection]:
        with self._lock:
            entry = self._entries.get(slug)
            if entry is None:
                return None
            entry.uses += 1
            return entry.connection

    def open(
        self,
        slug: str,
        config: AdapterConfig,
        *,
        initialize: Optional[Callable[[Connection], None]] = None,
    ) -> Connection:
        """Return the pooled connection for ``slug``, opening it on first use.

        A pooled entry opened with a different config is closed and replaced.
        ``initialize`` runs once on a freshly opened connection (migrations);
        if it raises, the connection is closed and not pooled.
        """
        config_key = config.cache_key()
        with self._lock:
            entry = self._entries.get(slug)
            if entry is not None and entry.config_key == config_key:
                entry.uses += 1
                return entry.connection

        with self._slug_lock(slug):
            with self._lock:
                entry = self._entries.get(slug)
                if entry is not None and entry.config_key == config_key:
                    entry.uses += 1
                    return entry.connection
                stale = self._entries.pop(slug, None)
            if stale is not None:
                self._close_entry(slug, stale)

            conn = self._registry.connect(config)
            if initialize is not None:
                try:
                    initialize(conn)
                except Exception:
                    conn.close()
                    raise
            with self._lock:
                self._entries[slug] = _PoolEntry(conn, config.driver, config_key, uses=1)
            logger.info("tenant_pool_opened", tenant=slug, driver=config.driver)

        if self._on_connect is not None:
            try:
                self._on_connect(slug, config.driver)
            except Exception as exc:
                logger.warning("tenant_connect_hook_failed", tenant=slug, error=str(exc))
        return conn

    def _close_entry(self, slug: str, entry: _PoolEntry) -> None:
        try:
            entry.connection.close()
        except Exception as exc:
            logger.warning("tenant_pool_close_failed", tenant=slug, error=str(exc))
        else:
            logger.info("tenant_pool_closed", tenant=slug, driver=entry.driver)

    def close_tenant(self, slug: str) -> bool:
        with self._slug_lock(slug):
            with self._lock:
                entry = self._entries.pop(slug, None)
            if entry is None:
                return False
            self._close_entry(slug, entry)
            return True

    def close(self) -> None:
        with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
        for slug, entry in entries:
            self._close_entry(slug, entry)

    def slugs(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def stats(self) -> Dict[str, object]:
        now = time.time()
        with self._lock:
            tenants = {
                slug: {
                    "driver": entry.driver,
                    "uses": entry.uses,
                    "age_seconds": int(now - entry.opened_at),
                }
                for slug, entry in self._entries.items()
            }
        return {"open": len(tenants), "tenants": tenants}
