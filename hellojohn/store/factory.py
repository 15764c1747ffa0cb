"""Composition of the control plane, tenant pools, caches and migrations.

``DALFactory.for_tenant`` is the single entry point the protocol engines use to
reach a tenant: it resolves the tenant on the filesystem control plane, opens
(or reuses) the tenant's data-plane connection and hands back a
:class:`TenantDataAccess` facade carrying the capability set.
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from hellojohn.logging import get_logger
from hellojohn.security.secretbox import SecretBox, SecretBoxError
from hellojohn.store.cache import CacheProvisioner
from hellojohn.store.cluster import Change, ClusterHook, SingleNodeCluster
from hellojohn.store.errors import (
    ClientNotFound,
    InvalidConfig,
    MigrationError,
    NoDBForTenant,
    TenantNotFound,
)
from hellojohn.store.migrate import MigrationResult, Migrator
from hellojohn.store.mode import Capabilities, OperationalMode, capabilities_for, detect_mode, parse_mode
from hellojohn.store.models import OIDCClient, Scope, Tenant, TenantSettings
from hellojohn.store.pool import OnTenantConnect, TenantPool
from hellojohn.store.registry import (
    AdapterConfig,
    AdapterRegistry,
    Connection,
    build_default_registry,
    normalize_driver,
)

logger = get_logger(__name__)


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return False
    return True


class TenantDataAccess:
    """Everything one request may touch for one tenant."""

    def __init__(
        self,
        tenant: Tenant,
        control: Connection,
        data: Optional[Connection],
        cache: Any,
        capabilities: Capabilities,
    ):
        self.tenant = tenant
        self._control = control
        self._data = data
        self.cache = cache
        self.capabilities = capabilities

    @property
    def id(self) -> str:
        return self.tenant.id

    @property
    def slug(self) -> str:
        return self.tenant.slug

    @property
    def settings(self) -> TenantSettings:
        return self.tenant.settings

    @property
    def has_db(self) -> bool:
        return self._data is not None

    @property
    def driver(self) -> str:
        return self._data.driver if self._data is not None else ""

    def require_db(self) -> None:
        if self._data is None:
            raise NoDBForTenant(self.slug)

    # control plane
    def get_client(self, client_id: str) -> Optional[OIDCClient]:
        return self._control.clients.get(self.slug, client_id)

    def list_clients(self) -> List[OIDCClient]:
        return self._control.clients.list(self.slug)

    def list_scopes(self) -> List[Scope]:
        return self._control.scopes.list(self.slug)

    # data plane; None when the tenant has no database
    @property
    def users(self):
        return self._data.users if self._data is not None else None

    @property
    def tokens(self):
        return self._data.tokens if self._data is not None else None

    @property
    def email_tokens(self):
        return self._data.email_tokens if self._data is not None else None

    @property
    def mfa(self):
        return self._data.mfa if self._data is not None else None

    @property
    def consents(self):
        return self._data.consents if self._data is not None else None

    @property
    def rbac(self):
        return self._data.rbac if self._data is not None else None


class DALFactory:
    def __init__(
        self,
        *,
        control: Connection,
        registry: AdapterRegistry,
        caches: CacheProvisioner,
        mode: OperationalMode,
        default_tenant_db: Optional[AdapterConfig] = None,
        global_db: Optional[AdapterConfig] = None,
        secretbox: Optional[SecretBox] = None,
        cluster: Optional[ClusterHook] = None,
        migrator: Optional[Migrator] = None,
        on_tenant_connect: Optional[OnTenantConnect] = None,
    ):
        self.control = control
        self.registry = registry
        self.caches = caches
        self.mode = mode
        self.default_tenant_db = default_tenant_db
        self.global_db = global_db
        self.secretbox = secretbox
        self.cluster = cluster or SingleNodeCluster()
        self.migrator = migrator or Migrator()
        self.pool = TenantPool(registry, on_tenant_connect=on_tenant_connect)

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        shared_cache,
        registry: Optional[AdapterRegistry] = None,
        cluster: Optional[ClusterHook] = None,
    ) -> "DALFactory":
        registry = registry or build_default_registry()
        box = SecretBox(settings.secretbox_key) if settings.secretbox_key else None
        control = registry.connect(
            AdapterConfig(driver="fs", fs_root=settings.fs_root, options={"secretbox": box})
        )
        default_tenant_db = None
        if settings.default_tenant_db_driver or settings.default_tenant_db_dsn:
            default_tenant_db = AdapterConfig(
                driver=normalize_driver(settings.default_tenant_db_driver or "postgres"),
                dsn=settings.default_tenant_db_dsn or "",
                min_size=settings.pool_min_size,
                max_size=settings.pool_max_size,
            )
        global_db = None
        if settings.global_db_driver or settings.global_db_dsn:
            global_db = AdapterConfig(
                driver=normalize_driver(settings.global_db_driver or "postgres"),
                dsn=settings.global_db_dsn or "",
                min_size=settings.pool_min_size,
                max_size=settings.pool_max_size,
            )
        mode = parse_mode(settings.mode)
        if settings.mode and mode is None:
            raise InvalidConfig("unknown operational mode", {"mode": settings.mode})
        if mode is None:
            mode = detect_mode(global_db is not None, default_tenant_db is not None)
        logger.info(
            "dal_mode_selected",
            mode=mode.value,
            has_global_db=global_db is not None,
            has_default_tenant_db=default_tenant_db is not None,
        )
        return cls(
            control=control,
            registry=registry,
            caches=CacheProvisioner(shared_cache, secretbox=box, test_mode=settings.test_mode),
            mode=mode,
            default_tenant_db=default_tenant_db,
            global_db=global_db,
            secretbox=box,
            cluster=cluster,
        )

    @property
    def capabilities(self) -> Capabilities:
        return capabilities_for(self.mode)

    # tenants
    def resolve_tenant(self, ref: str) -> Tenant:
        """Find a tenant by id or slug; UUID-shaped references are tried as ids first."""
        ref = (ref or "").strip()
        if not ref:
            raise TenantNotFound(ref)
        tenants = self.control.tenants
        tenant = None
        if is_uuid(ref):
            tenant = tenants.get_by_id(ref)
        if tenant is None:
            tenant = tenants.get_by_slug(ref.lower())
        if tenant is None:
            raise TenantNotFound(ref)
        return tenant

    def find_client(self, client_id: str) -> Tuple[Tenant, OIDCClient]:
        """Locate the tenant owning ``client_id``; the first owner wins."""
        owner: Optional[Tuple[Tenant, OIDCClient]] = None
        for tenant in self.control.tenants.list():
            client = self.control.clients.get(tenant.slug, client_id)
            if client is None:
                continue
            if owner is None:
                owner = (tenant, client)
            else:
                logger.error(
                    "client_id_invariant_violation",
                    client_id=client_id,
                    tenant=owner[0].slug,
                    duplicate_tenant=tenant.slug,
                )
        if owner is None:
            raise ClientNotFound(client_id)
        return owner

    def _data_config(self, tenant: Tenant) -> Optional[AdapterConfig]:
        user_db = tenant.settings.user_db
        if user_db is not None and user_db.driver:
            dsn = user_db.dsn
            if not dsn and user_db.dsn_enc:
                if self.secretbox is None:
                    raise InvalidConfig(
                        "secretbox key required to decrypt tenant dsn", {"tenant": tenant.slug}
                    )
                try:
                    dsn = self.secretbox.decrypt(user_db.dsn_enc)
                except SecretBoxError as exc:
                    raise InvalidConfig("tenant dsn cannot be decrypted", {"tenant": tenant.slug}) from exc
            driver = normalize_driver(user_db.driver)
            if driver == "memory" and not dsn:
                dsn = f"memory://{tenant.slug}"
            base = self.default_tenant_db
            return AdapterConfig(
                driver=driver,
                dsn=dsn,
                schema=user_db.schema,
                min_size=base.min_size if base else 1,
                max_size=base.max_size if base else 10,
                options={"tenant_id": tenant.id, "manual_mode": user_db.manual_mode},
            )
        if self.default_tenant_db is not None:
            base = self.default_tenant_db
            return AdapterConfig(
                driver=base.driver,
                dsn=base.dsn,
                schema=base.schema,
                min_size=base.min_size,
                max_size=base.max_size,
                options={"tenant_id": tenant.id},
            )
        return None

    def _initializer(self, slug: str, manual: bool) -> Callable[[Connection], None]:
        def initialize(conn: Connection) -> None:
            executor = conn.migration_executor
            if executor is None or manual:
                return
            result = self.migrator.run(executor, tenant=slug)
            if not result.ok:
                raise MigrationError(
                    "tenant migrations failed", {"tenant": slug, "version": result.failed}
                ) from result.error

        return initialize

    def for_tenant(self, ref: str) -> TenantDataAccess:
        tenant = self.resolve_tenant(ref)
        config = self._data_config(tenant)
        data = None
        if config is not None:
            data = self.pool.open(
                tenant.slug,
                config,
                initialize=self._initializer(tenant.slug, bool(config.options.get("manual_mode"))),
            )
        return TenantDataAccess(
            tenant=tenant,
            control=self.control,
            data=data,
            cache=self.caches.for_tenant(tenant),
            capabilities=capabilities_for(self.mode, tenant_has_db=data is not None),
        )

    def migrate_tenant(self, ref: str) -> MigrationResult:
        """Run pending migrations on a tenant's database, including manual-mode ones."""
        tenant = self.resolve_tenant(ref)
        config = self._data_config(tenant)
        if config is None:
            raise NoDBForTenant(tenant.slug)
        conn = self.pool.open(tenant.slug, config)
        executor = conn.migration_executor
        if executor is None:
            raise InvalidConfig("driver does not support migrations", {"driver": config.driver})
        return self.migrator.run(executor, tenant=tenant.slug)

    async def refresh_tenant(self, slug: str) -> None:
        """Drop the pooled connection and cache for ``slug`` after a settings change."""
        closed = self.pool.close_tenant(slug)
        await self.caches.invalidate(slug)
        logger.info("tenant_refreshed", tenant=slug, pool_closed=closed)

    def apply_change(self, kind: str, tenant: str, mutate: Callable[[], Any], **payload: Any) -> Any:
        """Route a control-plane write through the cluster hook."""
        return self.cluster.apply(Change(kind=kind, tenant=tenant, payload=payload), mutate)

    # control-plane writes; followers refuse each of these with NotLeader

    def create_tenant(self, tenant: Tenant) -> Tenant:
        return self.apply_change(
            "tenant.create", tenant.slug, lambda: self.control.tenants.create(tenant), tenant_id=tenant.id
        )

    def update_tenant(self, tenant: Tenant, *, if_match: Optional[str] = None) -> Tenant:
        return self.apply_change(
            "tenant.update",
            tenant.slug,
            lambda: self.control.tenants.update(tenant, if_match=if_match),
            tenant_id=tenant.id,
        )

    def update_tenant_settings(
        self, slug: str, settings: TenantSettings, *, if_match: Optional[str] = None
    ) -> Tenant:
        return self.apply_change(
            "tenant.update_settings",
            slug,
            lambda: self.control.tenants.update_settings(slug, settings, if_match=if_match),
        )

    def delete_tenant(self, slug: str) -> None:
        self.apply_change("tenant.delete", slug, lambda: self.control.tenants.delete(slug))

    def create_client(self, slug: str, client: OIDCClient) -> OIDCClient:
        return self.apply_change(
            "client.create", slug, lambda: self.control.clients.create(slug, client), client_id=client.client_id
        )

    def update_client(self, slug: str, client: OIDCClient) -> OIDCClient:
        return self.apply_change(
            "client.update", slug, lambda: self.control.clients.update(slug, client), client_id=client.client_id
        )

    def delete_client(self, slug: str, client_id: str) -> None:
        self.apply_change(
            "client.delete", slug, lambda: self.control.clients.delete(slug, client_id), client_id=client_id
        )

    def upsert_scope(self, slug: str, scope: Scope) -> Scope:
        return self.apply_change(
            "scope.upsert", slug, lambda: self.control.scopes.upsert(slug, scope), scope=scope.name
        )

    def delete_scope(self, slug: str, name: str) -> None:
        self.apply_change("scope.delete", slug, lambda: self.control.scopes.delete(slug, name), scope=name)

    def record_admin_login(self, admin_id: str) -> None:
        self.apply_change(
            "admin.last_seen", "", lambda: self.control.admins.update_last_seen(admin_id), admin_id=admin_id
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "drivers": self.registry.names(),
            "pools": self.pool.stats(),
        }

    async def close(self) -> None:
        self.pool.close()
        await self.caches.close()
        self.control.close()
