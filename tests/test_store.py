"""Unit tests for the storage layer: fs control plane, memory data plane,
tenant pool, migrations, modes, caches and the DAL factory."""

import time
from datetime import timedelta

import pytest
import yaml

from hellojohn.config import Settings
from hellojohn.security.secretbox import SecretBox
from hellojohn.store.adapters.fs import is_valid_slug, validate_redirect_uri
from hellojohn.store.adapters.memory import MemoryAdapter
from hellojohn.store.cache import CacheProvisioner, MemoryCache, PrefixedCache, build_cache
from hellojohn.store.cluster import Change, SingleNodeCluster, StaticFollowerCluster
from hellojohn.store.errors import (
    ClientNotFound,
    ConstraintViolation,
    InvalidConfig,
    MigrationError,
    NoDBForTenant,
    NotFound,
    NotLeader,
    PreconditionFailed,
    TenantNotFound,
    UnknownDriver,
)
from hellojohn.store.factory import DALFactory
from hellojohn.store.migrate import Migrator, embedded_migrations, parse_migrations
from hellojohn.store.mode import OperationalMode, capabilities_for, detect_mode, parse_mode
from hellojohn.store.models import (
    AdminUser,
    CacheSettings,
    OIDCClient,
    Scope,
    SigningKey,
    Tenant,
    TenantSettings,
    UserDBSettings,
    utcnow,
)
from hellojohn.store.pool import TenantPool
from hellojohn.store.registry import AdapterConfig, AdapterRegistry, build_default_registry, normalize_driver

BOX_KEY = "b2" * 32
PHC = "$argon2id$v=19$m=65536,t=3,p=4$c2FsdA$aGFzaA"


@pytest.fixture
def control(tmp_path):
    registry = build_default_registry()
    return registry.connect(
        AdapterConfig(driver="fs", fs_root=str(tmp_path), options={"secretbox": SecretBox(BOX_KEY)})
    )


@pytest.fixture
def memory_conn():
    return MemoryAdapter().connect(
        AdapterConfig(driver="memory", dsn="memory://unit", options={"tenant_id": "t1"})
    )


def _client(client_id="web1", **overrides):
    fields = {"client_id": client_id, "redirect_uris": ["https://app.acme.test/cb"]}
    fields.update(overrides)
    return OIDCClient(**fields)


def _factory(tmp_path, **settings):
    values = {"fs_root": str(tmp_path), "secretbox_master_key": BOX_KEY}
    values.update(settings)
    return DALFactory.from_settings(Settings(**values), shared_cache=MemoryCache())


class TestSlugAndRedirects:
    """Slug and redirect URI validation."""

    @pytest.mark.parametrize("slug", ["acme", "a-1", "x" * 64])
    def test_valid_slugs(self, slug):
        assert is_valid_slug(slug)

    @pytest.mark.parametrize("slug", ["", "Acme", "a_b", "a/b", "x" * 65])
    def test_invalid_slugs(self, slug):
        assert not is_valid_slug(slug)

    @pytest.mark.parametrize(
        "uri",
        ["https://app.acme.test/cb", "http://localhost:3000/cb", "http://127.0.0.1/cb"],
    )
    def test_accepted_redirects(self, uri):
        validate_redirect_uri(uri)

    @pytest.mark.parametrize(
        "uri",
        ["/cb", "http://app.acme.test/cb", "https://app.acme.test/cb#frag"],
    )
    def test_rejected_redirects(self, uri):
        with pytest.raises(InvalidConfig):
            validate_redirect_uri(uri)


class TestFSTenants:
    """Tenant documents on disk."""

    def test_create_writes_yaml_and_system_scopes(self, control, tmp_path):
        tenant = control.tenants.create(Tenant.new("acme", "Acme"))
        doc = yaml.safe_load((tmp_path / "tenants" / "acme" / "tenant.yaml").read_text())
        assert doc["slug"] == "acme"
        assert doc["settings"]["issuerMode"] == "path"
        names = {s.name for s in control.scopes.list("acme")}
        assert {"openid", "email", "profile"} <= names
        assert control.tenants.get_by_id(tenant.id).slug == "acme"

    def test_invalid_slug(self, control):
        with pytest.raises(InvalidConfig):
            control.tenants.create(Tenant.new("Bad Slug"))

    def test_duplicate_slug(self, control):
        control.tenants.create(Tenant.new("acme"))
        with pytest.raises(ConstraintViolation):
            control.tenants.create(Tenant.new("acme"))

    def test_list_and_lookup(self, control):
        control.tenants.create(Tenant.new("beta"))
        control.tenants.create(Tenant.new("acme"))
        assert [t.slug for t in control.tenants.list()] == ["acme", "beta"]
        assert control.tenants.get_by_slug("missing") is None
        assert control.tenants.get_by_slug("../etc") is None

    def test_secrets_are_sealed_on_disk(self, control, tmp_path):
        settings = TenantSettings(
            user_db=UserDBSettings(driver="postgres", dsn="postgres://u:pw@db/acme"),
            cache=CacheSettings(enabled=True, driver="redis", host="cache", password="s3cret"),
        )
        control.tenants.create(Tenant.new("acme", settings=settings))
        raw = (tmp_path / "tenants" / "acme" / "tenant.yaml").read_text()
        assert "postgres://u:pw@db/acme" not in raw
        assert "s3cret" not in raw

        loaded = control.tenants.get_by_slug("acme").settings
        assert loaded.user_db.dsn == ""
        assert SecretBox(BOX_KEY).decrypt(loaded.user_db.dsn_enc) == "postgres://u:pw@db/acme"
        assert SecretBox(BOX_KEY).decrypt(loaded.cache.password_enc) == "s3cret"

    def test_caller_settings_keep_plaintext(self, control):
        settings = TenantSettings(
            user_db=UserDBSettings(driver="postgres", dsn="postgres://u:pw@db/acme"),
            cache=CacheSettings(enabled=True, driver="redis", host="cache", password="s3cret"),
        )
        control.tenants.create(Tenant.new("acme", settings=settings))
        assert settings.user_db.dsn == "postgres://u:pw@db/acme"
        assert settings.user_db.dsn_enc == ""
        assert settings.cache.password == "s3cret"

    def test_secret_without_box_is_rejected(self, tmp_path):
        conn = build_default_registry().connect(AdapterConfig(driver="fs", fs_root=str(tmp_path)))
        settings = TenantSettings(user_db=UserDBSettings(driver="postgres", dsn="postgres://x"))
        with pytest.raises(InvalidConfig):
            conn.tenants.create(Tenant.new("acme", settings=settings))

    def test_update_with_etag(self, control):
        tenant = control.tenants.create(Tenant.new("acme", "Acme"))
        etag = control.tenants.etag("acme")
        tenant.name = "Acme Corp"
        control.tenants.update(tenant, if_match=etag)
        assert control.tenants.get_by_slug("acme").name == "Acme Corp"
        with pytest.raises(PreconditionFailed):
            control.tenants.update(tenant, if_match=etag)

    def test_update_settings(self, control):
        control.tenants.create(Tenant.new("acme"))
        updated = control.tenants.update_settings("acme", TenantSettings(mfa_enabled=True))
        assert updated.settings.mfa_enabled
        with pytest.raises(TenantNotFound):
            control.tenants.update_settings("nope", TenantSettings())

    def test_logo_file_becomes_data_url(self, control, tmp_path):
        control.tenants.create(Tenant.new("acme"))
        (tmp_path / "tenants" / "acme" / "logo.png").write_bytes(b"\x89PNG")
        assert control.tenants.get_by_slug("acme").settings.logo_url.startswith(
            "data:image/png;base64,"
        )

    def test_delete(self, control):
        control.tenants.create(Tenant.new("acme"))
        control.tenants.delete("acme")
        assert control.tenants.get_by_slug("acme") is None
        with pytest.raises(TenantNotFound):
            control.tenants.delete("acme")


class TestFSClients:
    """Client validation and global client_id uniqueness."""

    @pytest.fixture(autouse=True)
    def _tenants(self, control):
        control.tenants.create(Tenant.new("acme"))
        control.tenants.create(Tenant.new("beta"))

    def test_create_and_get(self, control):
        control.clients.create("acme", _client(scopes=["openid", "email"]))
        client = control.clients.get("acme", "web1")
        assert client.redirect_uris == ["https://app.acme.test/cb"]
        assert client.providers == ["password"]
        assert [c.client_id for c in control.clients.list("acme")] == ["web1"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"client_id": ""},
            {"type": "spa"},
            {"redirect_uris": []},
            {"redirect_uris": ["http://evil.test/cb"]},
            {"scopes": ["email"]},
            {"secret": "shh"},
        ],
    )
    def test_validation(self, control, overrides):
        fields = {"client_id": "web1", "redirect_uris": ["https://app.acme.test/cb"]}
        fields.update(overrides)
        with pytest.raises(InvalidConfig):
            control.clients.create("acme", OIDCClient(**fields))

    def test_client_id_is_unique_across_tenants(self, control):
        control.clients.create("acme", _client())
        with pytest.raises(ConstraintViolation):
            control.clients.create("acme", _client())
        with pytest.raises(ConstraintViolation):
            control.clients.create("beta", _client())

    def test_unknown_tenant(self, control):
        with pytest.raises(TenantNotFound):
            control.clients.create("nope", _client())

    def test_confidential_secret_is_sealed_and_kept_on_update(self, control, tmp_path):
        control.clients.create("acme", _client("svc", type="confidential", secret="top-secret"))
        raw = (tmp_path / "tenants" / "acme" / "clients.yaml").read_text()
        assert "top-secret" not in raw
        sealed = control.clients.get("acme", "svc").secret_enc

        control.clients.update("acme", _client("svc", type="confidential", name="Service"))
        updated = control.clients.get("acme", "svc")
        assert updated.name == "Service"
        assert updated.secret_enc == sealed

    def test_caller_client_keeps_secret(self, control):
        client = _client("svc", type="confidential", secret="top-secret")
        control.clients.create("acme", client)
        assert client.secret == "top-secret"
        assert client.secret_enc == ""

    def test_update_and_delete_missing(self, control):
        with pytest.raises(ClientNotFound):
            control.clients.update("acme", _client("ghost"))
        with pytest.raises(ClientNotFound):
            control.clients.delete("acme", "ghost")

    def test_delete(self, control):
        control.clients.create("acme", _client())
        control.clients.delete("acme", "web1")
        assert control.clients.get("acme", "web1") is None


class TestFSScopes:
    """Scope catalog with protected system scopes."""

    def test_upsert_and_delete(self, control):
        control.tenants.create(Tenant.new("acme"))
        control.scopes.upsert("acme", Scope(name="orders:read", description="Read orders"))
        assert control.scopes.get("acme", "orders:read").description == "Read orders"
        control.scopes.delete("acme", "orders:read")
        assert control.scopes.get("acme", "orders:read") is None

    def test_invalid_name(self, control):
        control.tenants.create(Tenant.new("acme"))
        with pytest.raises(InvalidConfig):
            control.scopes.upsert("acme", Scope(name="two words"))

    def test_system_scope_cannot_be_deleted(self, control):
        control.tenants.create(Tenant.new("acme"))
        with pytest.raises(ConstraintViolation):
            control.scopes.delete("acme", "openid")
        with pytest.raises(NotFound):
            control.scopes.delete("acme", "missing")


class TestFSKeys:
    """Signing key documents."""

    def test_save_and_list(self, control, tmp_path):
        key = SigningKey(kid="fs-20240101T000000Z", tenant="", public_pem="PUB", private_pem_enc="GCMV1:x")
        control.keys.save(key)
        assert (tmp_path / "keys" / "global" / "fs-20240101T000000Z.json").exists()
        (loaded,) = control.keys.list("")
        assert loaded.kid == key.kid
        assert loaded.status == "active"
        assert loaded.not_after is None

    def test_not_after_round_trips(self, control):
        expiry = utcnow() + timedelta(hours=1)
        control.keys.save(
            SigningKey(kid="k1", tenant="acme", public_pem="PUB", status="grace", not_after=expiry)
        )
        (loaded,) = control.keys.list("acme")
        assert loaded.status == "grace"
        assert loaded.not_after == expiry

    def test_invalid_kid_and_owner(self, control):
        with pytest.raises(InvalidConfig):
            control.keys.save(SigningKey(kid="../escape", public_pem="PUB"))
        with pytest.raises(InvalidConfig):
            control.keys.list("Not A Slug")


class TestFSAdmins:
    """Admin accounts."""

    def test_create_normalizes_email(self, control):
        admin = control.admins.create(AdminUser(id="", email=" Root@Acme.Test ", password_hash=PHC))
        assert admin.id
        assert control.admins.get_by_email("root@acme.test").id == admin.id
        assert control.admins.get_by_id(admin.id).email == "root@acme.test"

    def test_plaintext_password_rejected(self, control):
        with pytest.raises(InvalidConfig):
            control.admins.create(AdminUser(id="", email="a@acme.test", password_hash="plain"))

    def test_duplicate_email(self, control):
        control.admins.create(AdminUser(id="", email="a@acme.test", password_hash=PHC))
        with pytest.raises(ConstraintViolation):
            control.admins.create(AdminUser(id="", email="A@acme.test", password_hash=PHC))

    def test_last_seen_and_tenant_assignment(self, control):
        admin = control.admins.create(AdminUser(id="", email="a@acme.test", password_hash=PHC, type="tenant"))
        control.admins.update_last_seen(admin.id)
        assert control.admins.get_by_id(admin.id).last_seen_at is not None
        updated = control.admins.assign_tenants(admin.id, ["t2", "t1", "t2"])
        assert updated.assigned_tenants == ["t1", "t2"]
        with pytest.raises(NotFound):
            control.admins.assign_tenants("missing", [])


class TestFSConnection:
    """Adapter wiring."""

    def test_ping(self, control):
        control.ping()

    def test_fs_root_required(self):
        with pytest.raises(InvalidConfig):
            build_default_registry().connect(AdapterConfig(driver="fs"))

    def test_data_plane_repositories_absent(self, control):
        assert control.users is None
        assert control.tokens is None
        assert control.migration_executor is None


class TestMemoryDataPlane:
    """Users, tokens, MFA, consents and RBAC kept in process."""

    def test_same_dsn_shares_rows(self):
        adapter = MemoryAdapter()
        first = adapter.connect(AdapterConfig(driver="memory", dsn="memory://shared"))
        second = adapter.connect(AdapterConfig(driver="memory", dsn="memory://shared"))
        other = adapter.connect(AdapterConfig(driver="memory", dsn="memory://other"))
        user = first.users.create("t1", "a@acme.test")
        assert second.users.get_by_id(user.id) is not None
        assert other.users.get_by_id(user.id) is None

    def test_user_lifecycle(self, memory_conn):
        users = memory_conn.users
        user = users.create("t1", " A@Acme.Test ", password_hash="$h1", name="A")
        assert user.email == "a@acme.test"
        with pytest.raises(ConstraintViolation):
            users.create("t1", "a@acme.test")
        users.create("t2", "a@acme.test")

        assert users.get_by_email("t1", "A@ACME.TEST").id == user.id
        assert users.get_password_hash(user.id) == "$h1"
        users.update_password(user.id, "$h2")
        assert users.get_password_hash(user.id) == "$h2"

        users.disable(user.id, reason="abuse")
        assert users.get_by_id(user.id).disabled_reason == "abuse"
        users.enable(user.id)
        assert users.get_by_id(user.id).disabled_at is None

        users.set_email_verified(user.id)
        assert users.get_by_id(user.id).email_verified

    def test_returned_users_are_copies(self, memory_conn):
        user = memory_conn.users.create("t1", "a@acme.test")
        user.name = "changed"
        assert memory_conn.users.get_by_id(user.id).name == ""

    def test_refresh_tokens(self, memory_conn):
        tokens = memory_conn.tokens
        first = tokens.create("t1", "web1", "u1", "hash-1", 60)
        tokens.create("t1", "web2", "u1", "hash-2", 60)
        with pytest.raises(ConstraintViolation):
            tokens.create("t1", "web1", "u1", "hash-1", 60)

        assert tokens.get_by_hash("hash-1").id == first.id
        assert tokens.revoke(first.id)
        assert not tokens.revoke(first.id)
        assert tokens.revoke_all_for_user("u1") == 1
        assert tokens.get_by_hash("hash-2").revoked_at is not None

    def test_revoke_all_scoped_to_client(self, memory_conn):
        tokens = memory_conn.tokens
        tokens.create("t1", "web1", "u1", "h1", 60)
        tokens.create("t1", "web2", "u1", "h2", 60)
        assert tokens.revoke_all_for_user("u1", client_id="web2") == 1
        assert tokens.get_by_hash("h1").revoked_at is None

    def test_mfa_records(self, memory_conn):
        mfa = memory_conn.mfa
        now = utcnow()
        mfa.upsert_totp("u1", "GCMV1-MFA:aa")
        mfa.confirm_totp("u1", now)
        assert mfa.get_totp("u1").confirmed_at == now

        mfa.replace_recovery_codes("u1", ["c1", "c2"])
        assert mfa.use_recovery_code("u1", "c1", now)
        assert not mfa.use_recovery_code("u1", "c1", now)
        assert mfa.count_unused_recovery_codes("u1") == 1

        mfa.add_trusted_device("u1", "dev", now + timedelta(days=1))
        assert mfa.is_trusted_device("u1", "dev", now)
        assert not mfa.is_trusted_device("u1", "dev", now + timedelta(days=2))

        mfa.disable_totp("u1")
        assert mfa.get_totp("u1") is None
        assert mfa.count_unused_recovery_codes("u1") == 0
        assert not mfa.is_trusted_device("u1", "dev", now)

    def test_reenrollment_clears_confirmation(self, memory_conn):
        mfa = memory_conn.mfa
        mfa.upsert_totp("u1", "s1")
        mfa.confirm_totp("u1", utcnow())
        mfa.upsert_totp("u1", "s2")
        record = mfa.get_totp("u1")
        assert record.secret_encrypted == "s2"
        assert record.confirmed_at is None

    def test_consents_merge_scopes(self, memory_conn):
        consents = memory_conn.consents
        consents.upsert("u1", "web1", ["openid", "email"])
        merged = consents.upsert("u1", "web1", ["profile", "openid"])
        assert merged.scopes == ["email", "openid", "profile"]
        assert consents.revoke("u1", "web1")
        assert consents.list_by_user("u1") == []
        assert consents.upsert("u1", "web1", ["openid"]).scopes == ["openid"]

    def test_rbac(self, memory_conn):
        rbac = memory_conn.rbac
        rbac.assign_role("u1", "editor")
        rbac.set_role_permissions("editor", ["posts:write", "posts:read"])
        assert rbac.get_user_roles("u1") == ["editor"]
        assert rbac.get_user_permissions("u1") == ["posts:read", "posts:write"]
        rbac.remove_role("u1", "editor")
        assert rbac.get_user_permissions("u1") == []

    def test_migration_executor(self, memory_conn):
        executor = memory_conn.migration_executor
        executor.apply(1, "init", "CREATE TABLE x ();")
        assert executor.current_version() == 1
        with pytest.raises(MigrationError):
            executor.apply(1, "init", "CREATE TABLE x ();")
        with pytest.raises(MigrationError):
            executor.apply(2, "empty", "   ")


class TestMigrations:
    """Ordered, stop-at-first-failure migrations."""

    def test_parse_sorts_and_ignores_other_files(self):
        migrations = parse_migrations(
            [("0002_b.sql", "B"), ("README.md", "x"), ("0001_a.sql", "A"), ("x_0003.sql", "C")]
        )
        assert [(m.version, m.name) for m in migrations] == [(1, "a"), (2, "b")]

    def test_duplicate_versions(self):
        with pytest.raises(MigrationError):
            parse_migrations([("0001_a.sql", "A"), ("0001_b.sql", "B")])

    def test_embedded_migrations(self):
        migrations = embedded_migrations()
        assert migrations[0].version == 1
        assert "refresh_token" in migrations[0].sql.lower()

    def test_run_is_idempotent(self, memory_conn):
        migrator = Migrator(parse_migrations([("0001_a.sql", "A"), ("0002_b.sql", "B")]))
        executor = memory_conn.migration_executor
        assert migrator.has_pending(executor)
        first = migrator.run(executor, tenant="acme")
        assert first.ok
        assert first.applied == [1, 2]
        second = migrator.run(executor, tenant="acme")
        assert second.applied == []
        assert second.skipped == [1, 2]
        assert not migrator.has_pending(executor)

    def test_stops_at_first_failure(self, memory_conn):
        migrator = Migrator(
            parse_migrations([("0001_a.sql", "A"), ("0002_b.sql", " "), ("0003_c.sql", "C")])
        )
        result = migrator.run(memory_conn.migration_executor)
        assert not result.ok
        assert result.applied == [1]
        assert result.failed == 2
        assert isinstance(result.error, MigrationError)
        assert memory_conn.migration_executor.current_version() == 1


class TestTenantPool:
    """Per-tenant connection reuse."""

    def test_reuses_connection_for_same_config(self):
        pool = TenantPool(build_default_registry())
        config = AdapterConfig(driver="memory", dsn="memory://p1")
        first = pool.open("acme", config)
        assert pool.open("acme", AdapterConfig(driver="memory", dsn="memory://p1")) is first
        assert pool.get("acme") is first
        assert pool.stats()["tenants"]["acme"]["uses"] == 3

    def test_changed_config_replaces_connection(self):
        pool = TenantPool(build_default_registry())
        first = pool.open("acme", AdapterConfig(driver="memory", dsn="memory://p1"))
        second = pool.open("acme", AdapterConfig(driver="memory", dsn="memory://p2"))
        assert second is not first
        assert pool.slugs() == ["acme"]

    def test_failed_initialize_is_not_pooled(self):
        pool = TenantPool(build_default_registry())

        def initialize(conn):
            raise MigrationError("boom")

        with pytest.raises(MigrationError):
            pool.open("acme", AdapterConfig(driver="memory", dsn="memory://p1"), initialize=initialize)
        assert pool.get("acme") is None

    def test_connect_hook_and_close(self):
        seen = []
        pool = TenantPool(build_default_registry(), on_tenant_connect=lambda s, d: seen.append((s, d)))
        pool.open("acme", AdapterConfig(driver="memory", dsn="memory://p1"))
        pool.open("beta", AdapterConfig(driver="memory", dsn="memory://p2"))
        assert seen == [("acme", "memory"), ("beta", "memory")]
        assert pool.close_tenant("acme")
        assert not pool.close_tenant("acme")
        pool.close()
        assert pool.stats() == {"open": 0, "tenants": {}}

    def test_hook_failure_does_not_break_open(self):
        def hook(slug, driver):
            raise RuntimeError("hook down")

        pool = TenantPool(build_default_registry(), on_tenant_connect=hook)
        assert pool.open("acme", AdapterConfig(driver="memory", dsn="memory://p1")) is not None


class TestModesAndCluster:
    """Operational modes, capability sets and the leader hook."""

    @pytest.mark.parametrize(
        "value,mode",
        [
            ("fs", OperationalMode.FS_ONLY),
            ("1", OperationalMode.FS_ONLY),
            ("FS+GlobalDB", OperationalMode.FS_GLOBAL_DB),
            ("fs-tenant-db", OperationalMode.FS_TENANT_DB),
            ("full", OperationalMode.FULL_DB),
        ],
    )
    def test_parse_mode(self, value, mode):
        assert parse_mode(value) is mode

    def test_parse_unknown(self):
        assert parse_mode("") is None
        assert parse_mode("cloud") is None

    def test_detect_mode(self):
        assert detect_mode(False, False) is OperationalMode.FS_ONLY
        assert detect_mode(True, False) is OperationalMode.FS_GLOBAL_DB
        assert detect_mode(False, True) is OperationalMode.FS_TENANT_DB
        assert detect_mode(True, True) is OperationalMode.FULL_DB

    def test_capabilities(self):
        fs_only = capabilities_for(OperationalMode.FS_ONLY)
        assert fs_only.tenants and not fs_only.users
        assert capabilities_for(OperationalMode.FS_ONLY, tenant_has_db=True).data_plane
        full = capabilities_for(OperationalMode.FULL_DB).as_dict()
        assert full["mfa"] and full["global_db_sync"]

    def test_single_node_applies(self):
        cluster = SingleNodeCluster()
        assert cluster.apply(Change("tenant.update", "acme"), lambda: 42) == 42
        assert cluster.status() == {"mode": "single", "role": "leader", "leader_id": "local"}

    def test_follower_refuses(self):
        cluster = StaticFollowerCluster(leader="node-a")
        calls = []
        with pytest.raises(NotLeader) as excinfo:
            cluster.apply(Change("tenant.update", "acme"), lambda: calls.append(1))
        assert excinfo.value.leader_id == "node-a"
        assert calls == []
        assert cluster.status()["role"] == "follower"


class TestRegistry:
    """Driver registry."""

    def test_default_drivers(self):
        registry = build_default_registry()
        assert registry.names() == ["fs", "memory", "postgres"]
        with pytest.raises(UnknownDriver):
            registry.get("mongo")

    def test_frozen_registry(self):
        registry = build_default_registry()
        with pytest.raises(InvalidConfig):
            registry.register(MemoryAdapter())

    def test_duplicate_registration(self):
        registry = AdapterRegistry()
        registry.register(MemoryAdapter())
        with pytest.raises(InvalidConfig):
            registry.register(MemoryAdapter())

    @pytest.mark.parametrize("name,expected", [("pg", "postgres"), (" PGX ", "postgres"), ("mysql", "mysql")])
    def test_normalize_driver(self, name, expected):
        assert normalize_driver(name) == expected


class TestCaches:
    """TTL cache, prefixing and per-tenant provisioning."""

    async def test_memory_cache_ttl_and_getdel(self, monkeypatch):
        cache = MemoryCache()
        await cache.set_json("k", {"v": 1}, 10)
        assert await cache.get_json("k") == {"v": 1}
        assert await cache.pop_json("k") == {"v": 1}
        assert await cache.pop_json("k") is None

        await cache.set("short", "x", 1)
        real = time.monotonic
        monkeypatch.setattr(time, "monotonic", lambda: real() + 5)
        assert await cache.get("short") is None

    async def test_writes_sweep_expired_unread_keys(self, monkeypatch):
        cache = MemoryCache(sweep_every=3)
        await cache.set("code:abandoned", "x", 1)
        await cache.set("session:abandoned", "y", 1)
        assert len(cache) == 2

        real = time.monotonic
        monkeypatch.setattr(time, "monotonic", lambda: real() + 5)
        await cache.set("code:fresh", "z", 60)
        assert len(cache) == 1
        assert await cache.get("code:fresh") == "z"

    async def test_sweep_waits_for_write_count(self, monkeypatch):
        cache = MemoryCache(sweep_every=10)
        await cache.set("stale", "x", 1)
        real = time.monotonic
        monkeypatch.setattr(time, "monotonic", lambda: real() + 5)
        await cache.set("other", "y", 60)
        assert len(cache) == 2

    async def test_corrupt_json_is_ignored(self):
        cache = MemoryCache()
        await cache.set("k", "not json", 10)
        assert await cache.get_json("k") is None

    async def test_prefixed_cache_namespaces_keys(self):
        shared = MemoryCache()
        acme = PrefixedCache(shared, "acme:")
        beta = PrefixedCache(shared, "beta:")
        await acme.set("code:x", "1", 10)
        assert await shared.get("acme:code:x") == "1"
        assert await beta.get("code:x") is None
        await acme.close()
        assert await shared.get("acme:code:x") == "1"

    def test_build_cache_without_url(self):
        assert isinstance(build_cache(None), MemoryCache)

    async def test_provisioner_prefixes(self):
        shared = MemoryCache()
        provisioner = CacheProvisioner(shared)
        cache = provisioner.for_tenant(Tenant.new("acme"))
        assert cache.prefix == "acme:"
        custom = Tenant.new("beta", settings=TenantSettings(cache=CacheSettings(prefix="b/")))
        assert provisioner.for_tenant(custom).prefix == "b/"
        await provisioner.invalidate("acme")
        await provisioner.close()

    def test_unreadable_password_falls_back_to_shared(self):
        shared = MemoryCache()
        provisioner = CacheProvisioner(shared)
        settings = TenantSettings(
            cache=CacheSettings(enabled=True, driver="redis", host="cache", password_enc="GCMV1:zz")
        )
        cache = provisioner.for_tenant(Tenant.new("acme", settings=settings))
        assert cache.inner is shared


class TestDALFactory:
    """Tenant resolution and data-plane wiring."""

    def test_mode_detection(self, tmp_path):
        assert _factory(tmp_path).mode is OperationalMode.FS_ONLY
        factory = _factory(tmp_path, default_tenant_db_driver="memory")
        assert factory.mode is OperationalMode.FS_TENANT_DB
        assert _factory(tmp_path, mode="full").mode is OperationalMode.FULL_DB
        with pytest.raises(InvalidConfig):
            _factory(tmp_path, mode="cloud")

    def test_resolve_by_id_or_slug(self, tmp_path):
        factory = _factory(tmp_path)
        tenant = factory.control.tenants.create(Tenant.new("acme"))
        assert factory.resolve_tenant(tenant.id).slug == "acme"
        assert factory.resolve_tenant(" ACME ").id == tenant.id
        with pytest.raises(TenantNotFound):
            factory.resolve_tenant("")
        with pytest.raises(TenantNotFound):
            factory.resolve_tenant("missing")

    def test_find_client(self, tmp_path):
        factory = _factory(tmp_path)
        factory.control.tenants.create(Tenant.new("acme"))
        factory.control.clients.create("acme", _client())
        tenant, client = factory.find_client("web1")
        assert tenant.slug == "acme"
        assert client.client_id == "web1"
        with pytest.raises(ClientNotFound):
            factory.find_client("ghost")

    def test_tenant_without_db(self, tmp_path):
        factory = _factory(tmp_path)
        factory.control.tenants.create(Tenant.new("acme"))
        factory.control.clients.create("acme", _client())
        tda = factory.for_tenant("acme")
        assert not tda.has_db
        assert tda.users is None
        assert not tda.capabilities.users
        assert tda.get_client("web1") is not None
        with pytest.raises(NoDBForTenant):
            tda.require_db()
        with pytest.raises(NoDBForTenant):
            factory.migrate_tenant("acme")

    def test_tenant_with_db_is_migrated(self, tmp_path):
        factory = _factory(tmp_path)
        factory.control.tenants.create(
            Tenant.new("acme", settings=TenantSettings(user_db=UserDBSettings(driver="memory")))
        )
        tda = factory.for_tenant("acme")
        assert tda.has_db
        assert tda.driver == "memory"
        assert tda.capabilities.mfa
        assert tda.cache.prefix == "acme:"
        result = factory.migrate_tenant("acme")
        assert result.ok
        assert result.applied == []
        assert factory.stats()["pools"]["open"] == 1

    def test_sealed_dsn_is_decrypted(self, tmp_path):
        factory = _factory(tmp_path)
        for slug in ("acme", "beta"):
            factory.control.tenants.create(
                Tenant.new(
                    slug,
                    settings=TenantSettings(user_db=UserDBSettings(driver="memory", dsn="memory://shared-db")),
                )
            )
        acme = factory.for_tenant("acme")
        user = acme.users.create(acme.id, "a@acme.test")
        assert factory.for_tenant("beta").users.get_by_id(user.id) is not None

    def test_default_tenant_db(self, tmp_path):
        factory = _factory(tmp_path, default_tenant_db_driver="memory", default_tenant_db_dsn="memory://dflt")
        factory.control.tenants.create(Tenant.new("acme"))
        assert factory.for_tenant("acme").has_db

    async def test_refresh_tenant_closes_pool(self, tmp_path):
        factory = _factory(tmp_path)
        factory.control.tenants.create(
            Tenant.new("acme", settings=TenantSettings(user_db=UserDBSettings(driver="memory")))
        )
        factory.for_tenant("acme")
        await factory.refresh_tenant("acme")
        assert factory.pool.slugs() == []
        await factory.close()

    def test_apply_change_routes_through_cluster(self, tmp_path):
        factory = _factory(tmp_path)
        assert factory.apply_change("scope.upsert", "acme", lambda: "done", scope="x") == "done"
        factory.cluster = StaticFollowerCluster(leader="node-a")
        with pytest.raises(NotLeader):
            factory.apply_change("scope.upsert", "acme", lambda: "done")

    def test_control_plane_writes_on_leader(self, tmp_path):
        factory = _factory(tmp_path)
        tenant = factory.create_tenant(Tenant.new("acme"))
        factory.create_client("acme", _client())
        factory.upsert_scope("acme", Scope(name="orders:read"))
        factory.update_tenant_settings("acme", TenantSettings(mfa_enabled=True))
        assert factory.control.clients.get("acme", "web1") is not None
        assert factory.control.scopes.get("acme", "orders:read") is not None
        assert factory.resolve_tenant(tenant.id).settings.mfa_enabled
        factory.delete_scope("acme", "orders:read")
        factory.delete_client("acme", "web1")
        factory.delete_tenant("acme")
        assert factory.control.tenants.get_by_slug("acme") is None

    def test_follower_refuses_control_plane_writes(self, tmp_path):
        factory = _factory(tmp_path)
        factory.create_tenant(Tenant.new("acme"))
        admin = factory.control.admins.create(AdminUser(id="", email="a@acme.test", password_hash=PHC))
        factory.cluster = StaticFollowerCluster(leader="node-a")

        with pytest.raises(NotLeader) as excinfo:
            factory.create_client("acme", _client())
        assert excinfo.value.leader_id == "node-a"
        with pytest.raises(NotLeader):
            factory.record_admin_login(admin.id)
        with pytest.raises(NotLeader):
            factory.create_tenant(Tenant.new("beta"))
        with pytest.raises(NotLeader):
            factory.upsert_scope("acme", Scope(name="orders:read"))
        with pytest.raises(NotLeader):
            factory.delete_tenant("acme")

        assert factory.control.clients.get("acme", "web1") is None
        assert factory.control.admins.get_by_id(admin.id).last_seen_at is None
        assert factory.control.tenants.get_by_slug("beta") is None
        assert factory.control.tenants.get_by_slug("acme") is not None
