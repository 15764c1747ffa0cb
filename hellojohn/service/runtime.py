from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, urlunparse

from hellojohn.config import get_settings, reset_settings_cache
from hellojohn.jwt.jwks_cache import JWKSCache
from hellojohn.jwt.keystore import Keystore
from hellojohn.logging import get_logger
from hellojohn.security.passwords import PasswordService
from hellojohn.service.admin import AdminService
from hellojohn.service.authorize import AuthorizeService
from hellojohn.service.discovery import DiscoveryService
from hellojohn.service.email import EmailService
from hellojohn.service.email_flows import EmailFlowService
from hellojohn.service.introspect import IntrospectionService
from hellojohn.service.login import LoginService
from hellojohn.service.mfa import MFAService
from hellojohn.service.readyz import ReadinessService
from hellojohn.service.tokens import TokenService
from hellojohn.service.userinfo import UserinfoService
from hellojohn.store.cache import MemoryCache, RedisCache, SyncRedisCache
from hellojohn.store.factory import DALFactory

logger = get_logger(__name__)

PASSWORD_BLACKLIST_FILE = "password_blacklist.txt"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            fs_root=self.settings.fs_root,
            mode=self.settings.mode or "auto",
            test_mode=self.settings.test_mode,
        )

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None
        if self.cache is None:
            if self.settings.redis_url:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else "redis_url_missing",
                    message="Authorization codes, sessions and MFA challenges are kept in process memory.",
                )
            self.cache = MemoryCache()

        try:
            self.dal = DALFactory.from_settings(self.settings, shared_cache=self.cache)
            logger.info("runtime_store_initialized", mode=self.dal.mode.value)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.keystore = Keystore(self.dal.control.keys, self.settings.signing_master_key)
        self.jwks = JWKSCache(self.keystore.jwks)
        self.passwords = PasswordService(Path(self.settings.fs_root) / PASSWORD_BLACKLIST_FILE)
        self.tokens = TokenService(self.dal, self.keystore, self.settings)
        self.mfa = MFAService(self.dal, self.tokens, self.passwords, self.settings, self.cache)
        self.authorize = AuthorizeService(self.dal, self.tokens, self.mfa, self.settings)
        self.login = LoginService(self.dal, self.tokens, self.mfa, self.passwords, self.settings)
        self.email = EmailService(secretbox=self.dal.secretbox, from_name=self.settings.email_from_name)
        self.email_flows = EmailFlowService(
            self.dal, self.tokens, self.passwords, self.email, self.settings
        )
        self.userinfo = UserinfoService(self.tokens)
        self.introspection = IntrospectionService(self.tokens)
        self.discovery = DiscoveryService(self.tokens, self.settings)
        self.admin = AdminService(
            self.dal, self.keystore, self.jwks, self.tokens, self.passwords, self.settings
        )
        self.readiness = ReadinessService(self.dal, self.keystore, self.cache)

        logger.info(
            "runtime_initialized",
            mode=self.dal.mode.value,
            redis_enabled=not isinstance(self.cache, MemoryCache),
            signing_key_configured=bool(self.settings.signing_master_key),
            secretbox_configured=bool(self.settings.secretbox_key),
            cluster=self.dal.cluster.mode,
        )

    async def close(self) -> None:
        await self.dal.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing runtime
    and a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.close())
                except RuntimeError:
                    asyncio.run(runtime.close())
            except Exception as exc:
                # the connection may already be closed
                logger.debug("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
