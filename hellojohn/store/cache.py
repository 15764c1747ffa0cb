"""Key/value caches for short-lived protocol state and their per-tenant provisioning.

Every cache exposes the same async surface (``get``, ``set``, ``delete``,
``getdel``, ``ping``, ``close``) plus JSON helpers, so engines can hold either
the in-process map or Redis without caring which.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from hellojohn.logging import get_logger
from hellojohn.security.secretbox import SecretBox, SecretBoxError
from hellojohn.store.models import Tenant

logger = get_logger(__name__)


class _JSONMixin:
    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        return _decode(await self.get(key))

    async def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await self.set(key, json.dumps(value), ttl_seconds)

    async def pop_json(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete a JSON payload (one-shot consumption)."""
        return _decode(await self.getdel(key))


def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("cache_payload_corrupt")
        return None
    return data if isinstance(data, dict) else None


class MemoryCache(_JSONMixin):
    """In-process TTL map.

    Expired entries are dropped when read, and swept from the whole map every
    ``sweep_every`` writes so keys that are never read again do not pile up.
    """

    driver = "memory"
    sweep_every = 256

    def __init__(self, *, sweep_every: Optional[int] = None) -> None:
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._writes = 0
        if sweep_every is not None:
            self.sweep_every = max(1, sweep_every)

    def _sweep(self, now: float) -> int:
        expired = [key for key, (_, expires) in self._data.items() if expires <= now]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug("cache_swept", removed=len(expired), remaining=len(self._data))
        return len(expired)

    def _live(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires <= now:
            self._data.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key, time.monotonic())

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = time.monotonic()
            self._writes += 1
            if self._writes >= self.sweep_every:
                self._writes = 0
                self._sweep(now)
            self._data[key] = (value, now + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key, time.monotonic())
            self._data.pop(key, None)
            return value

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class RedisCache(_JSONMixin):
    """Redis-backed cache using the asyncio client."""

    driver = "redis"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one never binds to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def getdel(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def ping(self) -> None:
        await self.client.ping()

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache(_JSONMixin):
    """Redis cache driven by the synchronous client, for use in tests.

    Exposes the same async methods as :class:`RedisCache` so callers can await
    it uniformly without binding a client to pytest's per-test event loops.
    """

    driver = "redis"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self._sync_client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        self._sync_client.delete(key)

    async def getdel(self, key: str) -> Optional[str]:
        return self._sync_client.getdel(key)

    async def ping(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()


class PrefixedCache(_JSONMixin):
    """Namespaces a shared cache under ``<prefix>``; closing it leaves the backend open."""

    def __init__(self, inner, prefix: str):
        self.inner = inner
        self.prefix = prefix

    @property
    def driver(self) -> str:
        return getattr(self.inner, "driver", "memory")

    async def get(self, key: str) -> Optional[str]:
        return await self.inner.get(self.prefix + key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.inner.set(self.prefix + key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.inner.delete(self.prefix + key)

    async def getdel(self, key: str) -> Optional[str]:
        return await self.inner.getdel(self.prefix + key)

    async def ping(self) -> None:
        await self.inner.ping()

    async def close(self) -> None:
        return None


def build_cache(redis_url: Optional[str], *, test_mode: bool = False):
    """Process cache: Redis when a URL is configured, otherwise an in-process map."""
    if not redis_url:
        return MemoryCache()
    if test_mode:
        return SyncRedisCache(redis_url)
    return RedisCache(redis_url)


class CacheProvisioner:
    """Hands each tenant its cache.

    Tenants whose settings enable a Redis cache get a dedicated client (password
    decrypted through the secret box); everyone else shares the process cache
    under a ``<slug>:`` prefix. A dedicated client that cannot be built falls
    back to the shared cache.
    """

    def __init__(self, shared, *, secretbox: Optional[SecretBox] = None, test_mode: bool = False):
        self.shared = shared
        self._box = secretbox
        self._test_mode = test_mode
        self._dedicated: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _redis_url(self, tenant: Tenant) -> Optional[str]:
        cfg = tenant.settings.cache
        if cfg is None or not cfg.enabled or cfg.driver != "redis" or not cfg.host:
            return None
        password = cfg.password
        if not password and cfg.password_enc:
            if self._box is None:
                raise SecretBoxError("secretbox key required to decrypt cache password")
            password = self._box.decrypt(cfg.password_enc)
        auth = f":{password}@" if password else ""
        return f"redis://{auth}{cfg.host}:{cfg.port}/{cfg.db}"

    def for_tenant(self, tenant: Tenant):
        prefix = f"{tenant.slug}:"
        cfg = tenant.settings.cache
        if cfg is not None and cfg.prefix:
            prefix = cfg.prefix
        with self._lock:
            dedicated = self._dedicated.get(tenant.slug)
            if dedicated is None:
                try:
                    url = self._redis_url(tenant)
                except SecretBoxError as exc:
                    logger.warning("tenant_cache_fallback", tenant=tenant.slug, error=str(exc))
                    url = None
                if url:
                    dedicated = build_cache(url, test_mode=self._test_mode)
                    self._dedicated[tenant.slug] = dedicated
                    logger.info("tenant_cache_opened", tenant=tenant.slug, driver="redis")
        if dedicated is not None:
            return PrefixedCache(dedicated, prefix)
        return PrefixedCache(self.shared, prefix)

    async def invalidate(self, slug: str) -> None:
        with self._lock:
            dedicated = self._dedicated.pop(slug, None)
        if dedicated is not None:
            await dedicated.close()

    async def close(self) -> None:
        with self._lock:
            caches = list(self._dedicated.values())
            self._dedicated.clear()
        for cache in caches:
            await cache.close()
        await self.shared.close()
