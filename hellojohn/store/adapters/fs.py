"""Filesystem control plane: tenants, clients, scopes, signing keys and admins.

Layout under the data root::

    tenants/<slug>/tenant.yaml
    tenants/<slug>/clients.yaml
    tenants/<slug>/scopes.yaml
    tenants/<slug>/logo.png        (optional)
    keys/<slug|global>/<kid>.json
    admins/admins.yaml

YAML keys are camelCase. Writes go through a temp file and ``os.replace`` under
a per-connection lock, so readers always see a complete file without taking
the lock.
"""

from __future__ import annotations

import base64
import dataclasses
import hashlib
import json
import os
import re
import shutil
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from hellojohn.logging import get_logger
from hellojohn.security.secretbox import SecretBox
from hellojohn.store.errors import (
    ClientNotFound,
    ConstraintViolation,
    InvalidConfig,
    NotFound,
    PreconditionFailed,
    TenantNotFound,
)
from hellojohn.store.models import (
    SYSTEM_SCOPES,
    AdminUser,
    CacheSettings,
    EmailTemplate,
    OIDCClient,
    Scope,
    SigningKey,
    SMTPSettings,
    SocialProvider,
    Tenant,
    TenantSettings,
    UserDBSettings,
    UserFieldDefinition,
    utcnow,
)
from hellojohn.store.registry import Adapter, AdapterConfig, Connection

logger = get_logger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9-]{1,64}$")
_KID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1", "[::1]"}
GLOBAL_KEYS_DIR = "global"


def is_valid_slug(slug: str) -> bool:
    return bool(slug) and bool(SLUG_RE.match(slug))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _dump_flat(obj: Any, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    skip = set(exclude)
    out: Dict[str, Any] = {}
    for f in dataclasses.fields(obj):
        if f.name in skip:
            continue
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        out[_camel(f.name)] = value
    return out


def _load_flat(cls, data: Optional[Dict[str, Any]], **overrides: Any):
    data = data or {}
    kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(cls):
        camel = _camel(f.name)
        if camel in data:
            kwargs[f.name] = data[camel]
        elif f.name in data:
            kwargs[f.name] = data[f.name]
    kwargs.update(overrides)
    return cls(**kwargs)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def validate_redirect_uri(uri: str) -> None:
    """Redirect URIs must be absolute, fragment-free and HTTPS unless loopback."""
    from urllib.parse import urlsplit

    parts = urlsplit(uri)
    if not parts.scheme or not parts.netloc:
        raise InvalidConfig("redirect_uri must be absolute", {"redirect_uri": uri})
    if parts.fragment:
        raise InvalidConfig("redirect_uri must not contain a fragment", {"redirect_uri": uri})
    host = (parts.hostname or "").lower()
    if parts.scheme.lower() != "https" and host not in _LOOPBACK_HOSTS:
        raise InvalidConfig("redirect_uri must use https", {"redirect_uri": uri})


class _Encryptor:
    """Moves plaintext mirror fields into their ``*_enc`` counterparts."""

    def __init__(self, box: Optional[SecretBox]):
        self.box = box

    def seal(self, plaintext: str, current_enc: str, *, field_name: str) -> str:
        if not plaintext:
            return current_enc
        if self.box is None:
            raise InvalidConfig(
                "secretbox master key required to store secrets", {"field": field_name}
            )
        return self.box.encrypt(plaintext)


class _FSBase:
    def __init__(self, root: Path, lock: threading.RLock, encryptor: _Encryptor):
        self.root = root
        self._lock = lock
        self._enc = encryptor

    def _tenant_dir(self, slug: str) -> Path:
        if not is_valid_slug(slug):
            raise TenantNotFound(slug)
        return self.root / "tenants" / slug

    def _read_yaml(self, path: Path) -> Any:
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as fh:
            return yaml.safe_load(fh)

    def _write_atomic(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _write_yaml(self, path: Path, data: Any) -> None:
        self._write_atomic(
            path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
        )


class FSTenantRepository(_FSBase):
    def _dump_settings(self, settings: TenantSettings) -> Dict[str, Any]:
        out = _dump_flat(
            settings,
            exclude=("smtp", "user_db", "cache", "social_providers", "user_fields", "mailing"),
        )
        # sealed copies; the caller keeps its plaintext
        if settings.smtp is not None:
            smtp = dataclasses.replace(
                settings.smtp,
                password_enc=self._enc.seal(
                    settings.smtp.password, settings.smtp.password_enc, field_name="smtp.password"
                ),
                password="",
            )
            out["smtp"] = _dump_flat(smtp, exclude=("password",))
        if settings.user_db is not None:
            udb = dataclasses.replace(
                settings.user_db,
                dsn_enc=self._enc.seal(settings.user_db.dsn, settings.user_db.dsn_enc, field_name="userDb.dsn"),
                dsn="",
            )
            out["userDb"] = _dump_flat(udb, exclude=("dsn",))
        if settings.cache is not None:
            cache = dataclasses.replace(
                settings.cache,
                password_enc=self._enc.seal(
                    settings.cache.password, settings.cache.password_enc, field_name="cache.password"
                ),
                password="",
            )
            out["cache"] = _dump_flat(cache, exclude=("password",))
        if settings.social_providers:
            providers: Dict[str, Any] = {}
            for name, provider in settings.social_providers.items():
                sealed = dataclasses.replace(
                    provider,
                    client_secret_enc=self._enc.seal(
                        provider.client_secret,
                        provider.client_secret_enc,
                        field_name=f"socialProviders.{name}.clientSecret",
                    ),
                    client_secret="",
                )
                providers[name] = _dump_flat(sealed, exclude=("client_secret",))
            out["socialProviders"] = providers
        if settings.user_fields:
            out["userFields"] = [_dump_flat(f) for f in settings.user_fields]
        if settings.mailing:
            out["mailing"] = {
                "templates": {
                    lang: {tid: _dump_flat(tpl) for tid, tpl in templates.items()}
                    for lang, templates in settings.mailing.items()
                }
            }
        return out

    def _load_settings(self, data: Optional[Dict[str, Any]]) -> TenantSettings:
        data = data or {}
        settings = _load_flat(
            TenantSettings,
            {
                k: v
                for k, v in data.items()
                if k not in {"smtp", "userDb", "cache", "socialProviders", "userFields", "mailing"}
            },
        )
        if data.get("smtp"):
            settings.smtp = _load_flat(SMTPSettings, data["smtp"], password="")
        if data.get("userDb"):
            settings.user_db = _load_flat(UserDBSettings, data["userDb"], dsn="")
        if data.get("cache"):
            settings.cache = _load_flat(CacheSettings, data["cache"], password="")
        for name, raw in (data.get("socialProviders") or {}).items():
            settings.social_providers[name] = _load_flat(SocialProvider, raw, client_secret="")
        settings.user_fields = [_load_flat(UserFieldDefinition, raw) for raw in data.get("userFields") or []]
        templates = (data.get("mailing") or {}).get("templates") or {}
        settings.mailing = {
            lang: {tid: _load_flat(EmailTemplate, raw) for tid, raw in (by_id or {}).items()}
            for lang, by_id in templates.items()
        }
        return settings

    def _dump(self, tenant: Tenant) -> Dict[str, Any]:
        return {
            "id": tenant.id,
            "slug": tenant.slug,
            "name": tenant.name,
            "language": tenant.language,
            "createdAt": tenant.created_at.isoformat(),
            "updatedAt": tenant.updated_at.isoformat(),
            "settings": self._dump_settings(tenant.settings),
        }

    def _load(self, slug: str, data: Dict[str, Any]) -> Tenant:
        tenant = Tenant(
            id=str(data.get("id") or ""),
            slug=data.get("slug") or slug,
            name=data.get("name") or slug,
            language=data.get("language") or "en",
            settings=self._load_settings(data.get("settings")),
            created_at=_parse_dt(data.get("createdAt")) or utcnow(),
            updated_at=_parse_dt(data.get("updatedAt")) or utcnow(),
        )
        if not tenant.settings.logo_url:
            logo = self.root / "tenants" / tenant.slug / "logo.png"
            if logo.exists():
                encoded = base64.b64encode(logo.read_bytes()).decode("ascii")
                tenant.settings.logo_url = f"data:image/png;base64,{encoded}"
        return tenant

    def list(self) -> List[Tenant]:
        base = self.root / "tenants"
        if not base.exists():
            return []
        tenants = []
        for entry in sorted(base.iterdir()):
            if not entry.is_dir() or not is_valid_slug(entry.name):
                continue
            data = self._read_yaml(entry / "tenant.yaml")
            if data:
                tenants.append(self._load(entry.name, data))
        return tenants

    def get_by_slug(self, slug: str) -> Optional[Tenant]:
        if not is_valid_slug(slug):
            return None
        data = self._read_yaml(self.root / "tenants" / slug / "tenant.yaml")
        if not data:
            return None
        return self._load(slug, data)

    def get_by_id(self, tenant_id: str) -> Optional[Tenant]:
        for tenant in self.list():
            if tenant.id == tenant_id:
                return tenant
        return None

    def etag(self, slug: str) -> str:
        path = self._tenant_dir(slug) / "tenant.yaml"
        if not path.exists():
            raise TenantNotFound(slug)
        return hashlib.sha256(path.read_bytes()).hexdigest()[:32]

    def create(self, tenant: Tenant) -> Tenant:
        if not is_valid_slug(tenant.slug):
            raise InvalidConfig("invalid tenant slug", {"slug": tenant.slug})
        with self._lock:
            path = self._tenant_dir(tenant.slug) / "tenant.yaml"
            if path.exists():
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            if not tenant.id:
                tenant.id = str(uuid.uuid4())
            if self.get_by_id(tenant.id) is not None:
                raise ConstraintViolation("tenant id already exists", {"field": "id"})
            tenant.created_at = tenant.updated_at = utcnow()
            self._write_yaml(path, self._dump(tenant))
            scopes_path = path.parent / "scopes.yaml"
            if not scopes_path.exists():
                self._write_yaml(
                    scopes_path,
                    {"scopes": [_dump_flat(Scope(name=s, system=True)) for s in SYSTEM_SCOPES]},
                )
        logger.info("tenant_created", tenant=tenant.slug, tenant_id=tenant.id)
        return self.get_by_slug(tenant.slug) or tenant

    def update(self, tenant: Tenant, *, if_match: Optional[str] = None) -> Tenant:
        with self._lock:
            path = self._tenant_dir(tenant.slug) / "tenant.yaml"
            if not path.exists():
                raise TenantNotFound(tenant.slug)
            if if_match is not None and if_match != self.etag(tenant.slug):
                raise PreconditionFailed("tenant was modified", {"tenant": tenant.slug})
            tenant.updated_at = utcnow()
            self._write_yaml(path, self._dump(tenant))
        return self.get_by_slug(tenant.slug) or tenant

    def update_settings(
        self, slug: str, settings: TenantSettings, *, if_match: Optional[str] = None
    ) -> Tenant:
        tenant = self.get_by_slug(slug)
        if tenant is None:
            raise TenantNotFound(slug)
        tenant.settings = settings
        return self.update(tenant, if_match=if_match)

    def delete(self, slug: str) -> None:
        with self._lock:
            directory = self._tenant_dir(slug)
            if not directory.exists():
                raise TenantNotFound(slug)
            shutil.rmtree(directory)
        logger.info("tenant_deleted", tenant=slug)


class FSClientRepository(_FSBase):
    def _path(self, slug: str) -> Path:
        return self._tenant_dir(slug) / "clients.yaml"

    def _load_all(self, slug: str) -> List[OIDCClient]:
        data = self._read_yaml(self._path(slug)) or {}
        return [
            _load_flat(OIDCClient, raw, secret="")
            for raw in data.get("clients") or []
        ]

    def _save_all(self, slug: str, clients: List[OIDCClient]) -> None:
        dumped = []
        for client in clients:
            sealed = dataclasses.replace(
                client,
                secret_enc=self._enc.seal(client.secret, client.secret_enc, field_name="client.secret"),
                secret="",
            )
            dumped.append(_dump_flat(sealed, exclude=("secret",)))
        self._write_yaml(self._path(slug), {"clients": dumped})

    def _validate(self, client: OIDCClient) -> None:
        if not client.client_id:
            raise InvalidConfig("client_id is required")
        if client.type not in {"public", "confidential"}:
            raise InvalidConfig("client type must be public or confidential", {"type": client.type})
        if not client.redirect_uris:
            raise InvalidConfig("redirect_uris must not be empty", {"client_id": client.client_id})
        for uri in client.redirect_uris:
            validate_redirect_uri(uri)
        if "openid" not in client.scopes:
            raise InvalidConfig("client scopes must include openid", {"client_id": client.client_id})
        if client.type == "public" and (client.secret or client.secret_enc):
            raise InvalidConfig("public clients cannot hold a secret", {"client_id": client.client_id})

    def list(self, slug: str) -> List[OIDCClient]:
        return self._load_all(slug)

    def get(self, slug: str, client_id: str) -> Optional[OIDCClient]:
        for client in self._load_all(slug):
            if client.client_id == client_id:
                return client
        return None

    def _owned_elsewhere(self, slug: str, client_id: str) -> Optional[str]:
        base = self.root / "tenants"
        if not base.exists():
            return None
        for entry in base.iterdir():
            if entry.name == slug or not is_valid_slug(entry.name):
                continue
            data = self._read_yaml(entry / "clients.yaml") or {}
            if any((raw or {}).get("clientId") == client_id for raw in data.get("clients") or []):
                return entry.name
        return None

    def create(self, slug: str, client: OIDCClient) -> OIDCClient:
        self._validate(client)
        with self._lock:
            if not (self._tenant_dir(slug) / "tenant.yaml").exists():
                raise TenantNotFound(slug)
            clients = self._load_all(slug)
            if any(c.client_id == client.client_id for c in clients):
                raise ConstraintViolation("client_id already exists", {"field": "client_id"})
            other = self._owned_elsewhere(slug, client.client_id)
            if other:
                raise ConstraintViolation(
                    "client_id already used by another tenant", {"field": "client_id"}
                )
            clients.append(client)
            self._save_all(slug, clients)
        logger.info("client_created", tenant=slug, client_id=client.client_id)
        return self.get(slug, client.client_id) or client

    def update(self, slug: str, client: OIDCClient) -> OIDCClient:
        self._validate(client)
        with self._lock:
            clients = self._load_all(slug)
            for idx, existing in enumerate(clients):
                if existing.client_id == client.client_id:
                    if not client.secret and not client.secret_enc:
                        client = dataclasses.replace(client, secret_enc=existing.secret_enc)
                    clients[idx] = client
                    break
            else:
                raise ClientNotFound(client.client_id)
            self._save_all(slug, clients)
        return self.get(slug, client.client_id) or client

    def delete(self, slug: str, client_id: str) -> None:
        with self._lock:
            clients = self._load_all(slug)
            remaining = [c for c in clients if c.client_id != client_id]
            if len(remaining) == len(clients):
                raise ClientNotFound(client_id)
            self._save_all(slug, remaining)


class FSScopeRepository(_FSBase):
    def _path(self, slug: str) -> Path:
        return self._tenant_dir(slug) / "scopes.yaml"

    def list(self, slug: str) -> List[Scope]:
        data = self._read_yaml(self._path(slug)) or {}
        scopes = [_load_flat(Scope, raw) for raw in data.get("scopes") or []]
        for scope in scopes:
            if scope.name in SYSTEM_SCOPES:
                scope.system = True
        return scopes

    def get(self, slug: str, name: str) -> Optional[Scope]:
        return next((s for s in self.list(slug) if s.name == name), None)

    def upsert(self, slug: str, scope: Scope) -> Scope:
        if not scope.name or " " in scope.name:
            raise InvalidConfig("invalid scope name", {"scope": scope.name})
        with self._lock:
            scopes = [s for s in self.list(slug) if s.name != scope.name]
            scope.system = scope.system or scope.name in SYSTEM_SCOPES
            scopes.append(scope)
            self._write_yaml(self._path(slug), {"scopes": [_dump_flat(s) for s in scopes]})
        return scope

    def delete(self, slug: str, name: str) -> None:
        with self._lock:
            scopes = self.list(slug)
            target = next((s for s in scopes if s.name == name), None)
            if target is None:
                raise NotFound("scope not found", {"scope": name})
            if target.system:
                raise ConstraintViolation("system scopes cannot be deleted", {"scope": name})
            self._write_yaml(
                self._path(slug), {"scopes": [_dump_flat(s) for s in scopes if s.name != name]}
            )


class FSKeyRepository(_FSBase):
    """One JSON document per signing key; private material is already encrypted."""

    def _dir(self, owner: str) -> Path:
        owner = owner or GLOBAL_KEYS_DIR
        if owner != GLOBAL_KEYS_DIR and not is_valid_slug(owner):
            raise InvalidConfig("invalid key owner", {"tenant": owner})
        return self.root / "keys" / owner

    def list(self, owner: str) -> List[SigningKey]:
        directory = self._dir(owner)
        if not directory.exists():
            return []
        keys = []
        for path in sorted(directory.glob("*.json")):
            raw = json.loads(path.read_text(encoding="utf-8"))
            keys.append(
                SigningKey(
                    kid=raw["kid"],
                    tenant=raw.get("tenant") or "",
                    alg=raw.get("alg") or "EdDSA",
                    public_pem=raw["publicPem"],
                    private_pem_enc=raw.get("privatePemEnc") or "",
                    status=raw.get("status") or "active",
                    created_at=_parse_dt(raw.get("createdAt")) or utcnow(),
                    not_after=_parse_dt(raw.get("notAfter")),
                )
            )
        return keys

    def save(self, key: SigningKey) -> None:
        if not _KID_RE.match(key.kid):
            raise InvalidConfig("invalid kid", {"kid": key.kid})
        doc = {
            "kid": key.kid,
            "tenant": key.tenant,
            "alg": key.alg,
            "status": key.status,
            "createdAt": key.created_at.isoformat(),
            "notAfter": key.not_after.isoformat() if key.not_after else None,
            "publicPem": key.public_pem,
            "privatePemEnc": key.private_pem_enc,
        }
        with self._lock:
            self._write_atomic(self._dir(key.tenant) / f"{key.kid}.json", json.dumps(doc, indent=2))

    def delete(self, owner: str, kid: str) -> None:
        with self._lock:
            (self._dir(owner) / f"{kid}.json").unlink(missing_ok=True)


class FSAdminRepository(_FSBase):
    def _path(self) -> Path:
        return self.root / "admins" / "admins.yaml"

    def _load(self, raw: Dict[str, Any]) -> AdminUser:
        admin = _load_flat(AdminUser, raw)
        admin.created_at = _parse_dt(admin.created_at) or utcnow()
        admin.updated_at = _parse_dt(admin.updated_at) or utcnow()
        admin.last_seen_at = _parse_dt(admin.last_seen_at)
        admin.disabled_at = _parse_dt(admin.disabled_at)
        admin.assigned_tenants = list(admin.assigned_tenants or [])
        return admin

    def list(self) -> List[AdminUser]:
        data = self._read_yaml(self._path()) or {}
        return [self._load(raw) for raw in data.get("admins") or []]

    def _save_all(self, admins: List[AdminUser]) -> None:
        self._write_yaml(self._path(), {"admins": [_dump_flat(a) for a in admins]})

    def get_by_id(self, admin_id: str) -> Optional[AdminUser]:
        return next((a for a in self.list() if a.id == admin_id), None)

    def get_by_email(self, email: str) -> Optional[AdminUser]:
        email = email.strip().lower()
        return next((a for a in self.list() if a.email == email), None)

    def create(self, admin: AdminUser) -> AdminUser:
        if not admin.password_hash or not admin.password_hash.startswith("$"):
            raise InvalidConfig("admin password must be stored as a PHC hash")
        admin.email = admin.email.strip().lower()
        with self._lock:
            admins = self.list()
            if any(a.email == admin.email for a in admins):
                raise ConstraintViolation("admin email already exists", {"field": "email"})
            admin.id = admin.id or str(uuid.uuid4())
            admin.created_at = admin.updated_at = utcnow()
            admins.append(admin)
            self._save_all(admins)
        logger.info("admin_created", admin_id=admin.id, admin_type=admin.type)
        return admin

    def update(self, admin: AdminUser) -> AdminUser:
        with self._lock:
            admins = self.list()
            for idx, existing in enumerate(admins):
                if existing.id == admin.id:
                    admin.updated_at = utcnow()
                    admins[idx] = admin
                    break
            else:
                raise NotFound("admin not found", {"admin_id": admin.id})
            self._save_all(admins)
        return admin

    def delete(self, admin_id: str) -> None:
        with self._lock:
            admins = self.list()
            remaining = [a for a in admins if a.id != admin_id]
            if len(remaining) == len(admins):
                raise NotFound("admin not found", {"admin_id": admin_id})
            self._save_all(remaining)

    def update_last_seen(self, admin_id: str) -> None:
        admin = self.get_by_id(admin_id)
        if admin is None:
            return
        admin.last_seen_at = utcnow()
        self.update(admin)

    def assign_tenants(self, admin_id: str, tenant_ids: List[str]) -> AdminUser:
        admin = self.get_by_id(admin_id)
        if admin is None:
            raise NotFound("admin not found", {"admin_id": admin_id})
        admin.assigned_tenants = sorted(set(tenant_ids))
        return self.update(admin)


class FSConnection(Connection):
    driver = "fs"

    def __init__(self, root: Path, box: Optional[SecretBox]):
        self.root = root
        lock = threading.RLock()
        encryptor = _Encryptor(box)
        self._tenants = FSTenantRepository(root, lock, encryptor)
        self._clients = FSClientRepository(root, lock, encryptor)
        self._scopes = FSScopeRepository(root, lock, encryptor)
        self._keys = FSKeyRepository(root, lock, encryptor)
        self._admins = FSAdminRepository(root, lock, encryptor)

    def ping(self) -> None:
        if not self.root.is_dir():
            raise FileNotFoundError(self.root)
        probe = self.root / ".ping"
        probe.write_text(utcnow().isoformat())
        probe.unlink(missing_ok=True)

    @property
    def tenants(self) -> FSTenantRepository:
        return self._tenants

    @property
    def clients(self) -> FSClientRepository:
        return self._clients

    @property
    def scopes(self) -> FSScopeRepository:
        return self._scopes

    @property
    def keys(self) -> FSKeyRepository:
        return self._keys

    @property
    def admins(self) -> FSAdminRepository:
        return self._admins


class FSAdapter(Adapter):
    name = "fs"

    def __init__(self) -> None:
        self._connections: Dict[str, FSConnection] = {}
        self._lock = threading.Lock()

    def connect(self, config: AdapterConfig) -> FSConnection:
        if not config.fs_root:
            raise InvalidConfig("fs adapter requires fs_root")
        root = Path(config.fs_root).resolve()
        box = config.options.get("secretbox")
        with self._lock:
            conn = self._connections.get(str(root))
            if conn is None:
                (root / "tenants").mkdir(parents=True, exist_ok=True)
                (root / "keys").mkdir(parents=True, exist_ok=True)
                conn = FSConnection(root, box)
                self._connections[str(root)] = conn
                logger.info("fs_control_plane_opened", fs_root=str(root))
            return conn
