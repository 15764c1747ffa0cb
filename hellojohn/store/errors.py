from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for data-access failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class NotFound(StoreError):
    """A looked-up record does not exist."""


class TenantNotFound(NotFound):
    def __init__(self, ref: str):
        super().__init__("tenant not found", {"tenant": ref})


class ClientNotFound(NotFound):
    def __init__(self, client_id: str):
        super().__init__("client not found", {"client_id": client_id})


class UserNotFound(NotFound):
    pass


class TokenNotFound(NotFound):
    pass


class NoDBForTenant(StoreError):
    """A data-plane operation was attempted on a tenant without a database."""

    def __init__(self, tenant: str = ""):
        super().__init__("tenant has no database configured", {"tenant": tenant} if tenant else None)


class NotLeader(StoreError):
    """A leader-only write reached a follower node."""

    def __init__(self, leader_id: Optional[str] = None):
        detail = {"leader_id": leader_id} if leader_id else None
        super().__init__("not leader", detail)
        self.leader_id = leader_id


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class PreconditionFailed(StoreError):
    """Optimistic concurrency check (ETag) did not match."""


class InvalidConfig(StoreError):
    pass


class UnknownDriver(InvalidConfig):
    def __init__(self, driver: str):
        super().__init__(f"unknown storage driver: {driver}", {"driver": driver})


class MigrationError(StoreError):
    pass


__all__ = [
    "StoreError",
    "NotFound",
    "TenantNotFound",
    "ClientNotFound",
    "UserNotFound",
    "TokenNotFound",
    "NoDBForTenant",
    "NotLeader",
    "ConstraintViolation",
    "PreconditionFailed",
    "InvalidConfig",
    "UnknownDriver",
    "MigrationError",
]
