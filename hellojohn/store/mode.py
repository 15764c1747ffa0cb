"""Operational modes and the capability set derived from them."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OperationalMode(str, Enum):
    FS_ONLY = "fs_only"
    FS_GLOBAL_DB = "fs_global_db"
    FS_TENANT_DB = "fs_tenant_db"
    FULL_DB = "full_db"


_MODE_ALIASES = {
    "fs_only": OperationalMode.FS_ONLY,
    "fs-only": OperationalMode.FS_ONLY,
    "fs": OperationalMode.FS_ONLY,
    "1": OperationalMode.FS_ONLY,
    "fs_global_db": OperationalMode.FS_GLOBAL_DB,
    "fs-global-db": OperationalMode.FS_GLOBAL_DB,
    "fs+globaldb": OperationalMode.FS_GLOBAL_DB,
    "2": OperationalMode.FS_GLOBAL_DB,
    "fs_tenant_db": OperationalMode.FS_TENANT_DB,
    "fs-tenant-db": OperationalMode.FS_TENANT_DB,
    "fs+tenantdb": OperationalMode.FS_TENANT_DB,
    "3": OperationalMode.FS_TENANT_DB,
    "full_db": OperationalMode.FULL_DB,
    "full-db": OperationalMode.FULL_DB,
    "full": OperationalMode.FULL_DB,
    "4": OperationalMode.FULL_DB,
}


def parse_mode(value: Optional[str]) -> Optional[OperationalMode]:
    """Parse a mode name or alias; returns None for unknown or empty input."""
    if not value:
        return None
    return _MODE_ALIASES.get(value.strip().lower())


def detect_mode(has_global_db: bool, has_default_tenant_db: bool) -> OperationalMode:
    if has_global_db and has_default_tenant_db:
        return OperationalMode.FULL_DB
    if has_global_db:
        return OperationalMode.FS_GLOBAL_DB
    if has_default_tenant_db:
        return OperationalMode.FS_TENANT_DB
    return OperationalMode.FS_ONLY


@dataclass(frozen=True)
class Capabilities:
    tenants: bool = True
    clients: bool = True
    scopes: bool = True
    admins: bool = True
    branding: bool = True
    cache: bool = True
    users: bool = False
    tokens: bool = False
    mfa: bool = False
    consents: bool = False
    rbac: bool = False
    global_db_sync: bool = False

    @property
    def data_plane(self) -> bool:
        return self.users

    def as_dict(self) -> dict[str, bool]:
        return {
            "tenants": self.tenants,
            "clients": self.clients,
            "scopes": self.scopes,
            "admins": self.admins,
            "branding": self.branding,
            "cache": self.cache,
            "users": self.users,
            "tokens": self.tokens,
            "mfa": self.mfa,
            "consents": self.consents,
            "rbac": self.rbac,
            "global_db_sync": self.global_db_sync,
        }


def capabilities_for(mode: OperationalMode, *, tenant_has_db: bool = False) -> Capabilities:
    """Capability set for a mode, widened when an individual tenant brings a DB."""
    has_global = mode in (OperationalMode.FS_GLOBAL_DB, OperationalMode.FULL_DB)
    data_plane = tenant_has_db or mode in (
        OperationalMode.FS_TENANT_DB,
        OperationalMode.FULL_DB,
    )
    return Capabilities(
        users=data_plane,
        tokens=data_plane,
        mfa=data_plane,
        consents=data_plane,
        rbac=data_plane,
        global_db_sync=has_global,
    )
