"""Readiness probe over the control plane, keystore, cache and tenant pools."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Tuple

from hellojohn.jwt.keystore import GLOBAL_OWNER, Keystore
from hellojohn.logging import get_logger
from hellojohn.store.factory import DALFactory

logger = get_logger(__name__)

CHECK_TIMEOUT_SECONDS = 3
CRITICAL = ("control_plane", "keystore")


class ReadinessService:
    def __init__(self, dal: DALFactory, keystore: Keystore, cache):
        self.dal = dal
        self.keystore = keystore
        self.cache = cache

    async def _run_bounded(self, label: str, func) -> Tuple[bool, str]:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), CHECK_TIMEOUT_SECONDS)
            return True, ""
        except asyncio.TimeoutError:
            logger.error("readiness_check_timeout", component=label, timeout=CHECK_TIMEOUT_SECONDS)
            return False, "timeout"
        except Exception as exc:
            logger.error("readiness_check_failed", component=label, error=str(exc))
            return False, type(exc).__name__

    async def _cache_ok(self) -> Tuple[bool, str]:
        try:
            await asyncio.wait_for(self.cache.ping(), CHECK_TIMEOUT_SECONDS)
            return True, ""
        except asyncio.TimeoutError:
            logger.error("readiness_check_timeout", component="cache", timeout=CHECK_TIMEOUT_SECONDS)
            return False, "timeout"
        except Exception as exc:
            logger.error("readiness_check_failed", component="cache", error=str(exc))
            return False, type(exc).__name__

    async def check(self) -> Tuple[int, Dict[str, Any]]:
        """Return ``(http_status, body)``; 503 when a critical component is down."""
        components: Dict[str, Dict[str, Any]] = {}

        ok, err = await self._run_bounded("control_plane", self.dal.control.ping)
        components["control_plane"] = {"status": "ok" if ok else "error", "driver": "fs"}
        if err:
            components["control_plane"]["error"] = err

        ok, err = await self._run_bounded("keystore", lambda: self.keystore.active(GLOBAL_OWNER))
        components["keystore"] = {"status": "ok" if ok else "error"}
        if err:
            components["keystore"]["error"] = err

        ok, err = await self._cache_ok()
        components["cache"] = {
            "status": "ok" if ok else "degraded",
            "driver": getattr(self.cache, "driver", "memory"),
        }
        if err:
            components["cache"]["error"] = err

        components["tenant_pools"] = {"status": "ok", **self.dal.pool.stats()}
        components["mode"] = {
            "status": "ok",
            "mode": self.dal.mode.value,
            "capabilities": self.dal.capabilities.as_dict(),
        }

        healthy = all(components[name]["status"] == "ok" for name in CRITICAL)
        body = {
            "status": "ready" if healthy else "unavailable",
            "components": components,
            "cluster": self.dal.cluster.status(),
        }
        return (200 if healthy else 503), body
