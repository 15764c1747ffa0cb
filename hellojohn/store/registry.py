"""Storage adapter contract and the driver registry.

An adapter turns an :class:`AdapterConfig` into a :class:`Connection`. A
connection exposes typed repositories as properties; any repository the
backend does not implement is ``None`` and callers are expected to consult the
capability set instead of probing.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from hellojohn.logging import get_logger
from hellojohn.store.errors import InvalidConfig, UnknownDriver

logger = get_logger(__name__)


@dataclass
class AdapterConfig:
    driver: str
    dsn: str = ""
    fs_root: str = ""
    schema: str = ""
    min_size: int = 1
    max_size: int = 10
    options: Dict[str, Any] = field(default_factory=dict)

    def cache_key(self) -> str:
        return f"{self.driver}|{self.dsn}|{self.fs_root}|{self.schema}"


class Connection:
    """Base class for adapter connections."""

    driver: str = ""

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None

    # control plane
    @property
    def tenants(self):
        return None

    @property
    def clients(self):
        return None

    @property
    def scopes(self):
        return None

    @property
    def keys(self):
        return None

    @property
    def admins(self):
        return None

    # data plane
    @property
    def users(self):
        return None

    @property
    def tokens(self):
        return None

    @property
    def email_tokens(self):
        return None

    @property
    def mfa(self):
        return None

    @property
    def consents(self):
        return None

    @property
    def rbac(self):
        return None

    @property
    def migration_executor(self):
        return None


class Adapter:
    name: str = ""

    def connect(self, config: AdapterConfig) -> Connection:
        raise NotImplementedError


class AdapterRegistry:
    """Driver name to adapter map, populated once by the composition root."""

    def __init__(self) -> None:
        self._adapters: Dict[str, Adapter] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def register(self, adapter: Adapter) -> None:
        if not adapter.name:
            raise InvalidConfig("adapter must declare a name")
        with self._lock:
            if self._frozen:
                raise InvalidConfig("adapter registry is frozen", {"driver": adapter.name})
            if adapter.name in self._adapters:
                raise InvalidConfig("adapter already registered", {"driver": adapter.name})
            self._adapters[adapter.name] = adapter
        logger.debug("storage_adapter_registered", driver=adapter.name)

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def get(self, name: str) -> Adapter:
        adapter = self._adapters.get((name or "").strip().lower())
        if adapter is None:
            raise UnknownDriver(name)
        return adapter

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def connect(self, config: AdapterConfig) -> Connection:
        return self.get(config.driver).connect(config)


def build_default_registry() -> AdapterRegistry:
    """Registry holding the built-in fs, memory and postgres drivers."""
    from hellojohn.store.adapters.fs import FSAdapter
    from hellojohn.store.adapters.memory import MemoryAdapter
    from hellojohn.store.adapters.postgres import PostgresAdapter

    registry = AdapterRegistry()
    registry.register(FSAdapter())
    registry.register(MemoryAdapter())
    registry.register(PostgresAdapter())
    registry.freeze()
    return registry


def normalize_driver(name: Optional[str]) -> str:
    value = (name or "").strip().lower()
    if value in {"pg", "postgresql", "pgx"}:
        return "postgres"
    return value
