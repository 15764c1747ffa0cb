"""In-process data plane used for development and tests.

Each distinct DSN (``memory://<name>``) maps to one shared database object,
so tenants configured with the same DSN see the same rows, exactly like a
shared SQL database would behave.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from hellojohn.logging import get_logger
from hellojohn.store.errors import ConstraintViolation, MigrationError, UserNotFound
from hellojohn.store.models import (
    MFATOTP,
    Consent,
    EmailToken,
    Identity,
    RefreshToken,
    TrustedDevice,
    User,
    utcnow,
)
from hellojohn.store.registry import Adapter, AdapterConfig, Connection

logger = get_logger(__name__)


class _MemoryDatabase:
    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.email_tokens: Dict[str, EmailToken] = {}
        self.totp: Dict[str, MFATOTP] = {}
        # user_id -> {code_hash: used_at}
        self.recovery_codes: Dict[str, Dict[str, Optional[datetime]]] = {}
        self.trusted_devices: Dict[Tuple[str, str], TrustedDevice] = {}
        self.consents: Dict[Tuple[str, str], Consent] = {}
        # (tenant_id, user_id) -> roles
        self.user_roles: Dict[Tuple[str, str], Set[str]] = {}
        # (tenant_id, role) -> perms
        self.role_perms: Dict[Tuple[str, str], Set[str]] = {}
        self.migrations: Dict[int, Tuple[str, datetime]] = {}


class MemoryUserRepository:
    def __init__(self, db: _MemoryDatabase):
        self._db = db

    def create(
        self,
        tenant_id: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        name: str = "",
        email_verified: bool = False,
        custom_fields: Optional[dict] = None,
    ) -> User:
        email = email.strip().lower()
        with self._db.lock:
            if any(u.tenant_id == tenant_id and u.email == email for u in self._db.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                email=email,
                email_verified=email_verified,
                name=name,
                custom_fields=dict(custom_fields or {}),
            )
            self._db.users[user.id] = user
            if password_hash is not None:
                identity = Identity(
                    id=str(uuid.uuid4()),
                    user_id=user.id,
                    provider="password",
                    provider_user_id=email,
                    email=email,
                    email_verified=email_verified,
                    password_hash=password_hash,
                )
                self._db.identities[identity.id] = identity
        return replace(user)

    def get_by_id(self, user_id: str) -> Optional[User]:
        with self._db.lock:
            user = self._db.users.get(user_id)
            return replace(user) if user else None

    def get_by_email(self, tenant_id: str, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._db.lock:
            for user in self._db.users.values():
                if user.tenant_id == tenant_id and user.email == email:
                    return replace(user)
        return None

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._db.lock:
            for identity in self._db.identities.values():
                if identity.user_id == user_id and identity.provider == "password":
                    return identity.password_hash
        return None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._db.lock:
            for identity in self._db.identities.values():
                if identity.user_id == user_id and identity.provider == "password":
                    identity.password_hash = password_hash
                    return
            user = self._db.users.get(user_id)
            if user is None:
                raise UserNotFound("user not found", {"user_id": user_id})
            identity = Identity(
                id=str(uuid.uuid4()),
                user_id=user_id,
                provider="password",
                provider_user_id=user.email,
                email=user.email,
                password_hash=password_hash,
            )
            self._db.identities[identity.id] = identity

    def list(self, tenant_id: str, *, limit: int = 50, offset: int = 0) -> List[User]:
        with self._db.lock:
            users = sorted(
                (u for u in self._db.users.values() if u.tenant_id == tenant_id),
                key=lambda u: u.created_at,
            )
            return [replace(u) for u in users[offset : offset + limit]]

    def set_email_verified(self, user_id: str, verified: bool = True) -> None:
        with self._db.lock:
            user = self._db.users.get(user_id)
            if user is None:
                raise UserNotFound("user not found", {"user_id": user_id})
            user.email_verified = verified
            user.updated_at = utcnow()

    def update_profile(self, user_id: str, **fields) -> User:
        allowed = {"name", "given_name", "family_name", "picture", "locale", "custom_fields"}
        with self._db.lock:
            user = self._db.users.get(user_id)
            if user is None:
                raise UserNotFound("user not found", {"user_id": user_id})
            for key, value in fields.items():
                if key in allowed:
                    setattr(user, key, value)
            user.updated_at = utcnow()
            return replace(user)

    def disable(self, user_id: str, *, until: Optional[datetime] = None, reason: str = "") -> None:
        with self._db.lock:
            user = self._db.users.get(user_id)
            if user is None:
                raise UserNotFound("user not found", {"user_id": user_id})
            user.disabled_at = utcnow()
            user.disabled_until = until
            user.disabled_reason = reason

    def enable(self, user_id: str) -> None:
        with self._db.lock:
            user = self._db.users.get(user_id)
            if user is None:
                raise UserNotFound("user not found", {"user_id": user_id})
            user.disabled_at = None
            user.disabled_until = None
            user.disabled_reason = ""

    def delete(self, user_id: str) -> None:
        with self._db.lock:
            self._db.users.pop(user_id, None)
            for key in [k for k, i in self._db.identities.items() if i.user_id == user_id]:
                del self._db.identities[key]
            for key in [k for k, t in self._db.email_tokens.items() if t.user_id == user_id]:
                del self._db.email_tokens[key]


class MemoryTokenRepository:
    def __init__(self, db: _MemoryDatabase):
        self._db = db

    def create(
        self,
        tenant_id: str,
        client_id: str,
        user_id: str,
        token_hash: str,
        ttl_seconds: int,
        *,
        rotated_from: Optional[str] = None,
        scope: str = "",
    ) -> RefreshToken:
        now = utcnow()
        token = RefreshToken(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            client_id=client_id,
            user_id=user_id,
            token_hash=token_hash,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            rotated_from=rotated_from,
            scope=scope,
        )
        with self._db.lock:
            if any(t.token_hash == token_hash for t in self._db.refresh_tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            self._db.refresh_tokens[token.id] = token
        return replace(token)

    def get_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._db.lock:
            for token in self._db.refresh_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def revoke(self, token_id: str) -> bool:
        with self._db.lock:
            token = self._db.refresh_tokens.get(token_id)
            if token is None or token.revoked_at is not None:
                return False
            token.revoked_at = utcnow()
            return True

    def revoke_all_for_user(self, user_id: str, client_id: Optional[str] = None) -> int:
        count = 0
        now = utcnow()
        with self._db.lock:
            for token in self._db.refresh_tokens.values():
                if token.user_id != user_id or token.revoked_at is not None:
                    continue
                if client_id and token.client_id != client_id:
                    continue
                token.revoked_at = now
                count += 1
        return count


class MemoryEmailTokenRepository:
    def __init__(self, db: _MemoryDatabase):
        self._db = db

    def create(
        self,
        tenant_id: str,
        user_id: str,
        kind: str,
        token_hash: str,
        sent_to: str,
        ttl_seconds: int,
    ) -> EmailToken:
        """Store a new link token; earlier unused tokens of the same kind stop working."""
        now = utcnow()
        token = EmailToken(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            user_id=user_id,
            kind=kind,
            token_hash=token_hash,
            sent_to=sent_to,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        with self._db.lock:
            if any(t.token_hash == token_hash for t in self._db.email_tokens.values()):
                raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
            for existing in self._db.email_tokens.values():
                if existing.user_id == user_id and existing.kind == kind and existing.used_at is None:
                    existing.used_at = now
            self._db.email_tokens[token.id] = token
        return replace(token)

    def get_by_hash(self, token_hash: str) -> Optional[EmailToken]:
        with self._db.lock:
            for token in self._db.email_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def use(self, token_id: str) -> bool:
        with self._db.lock:
            token = self._db.email_tokens.get(token_id)
            if token is None or token.used_at is not None:
                return False
            token.used_at = utcnow()
            return True


class MemoryMFARepository:
    def __init__(self, db: _MemoryDatabase):
        self._db = db

    def upsert_totp(self, user_id: str, secret_encrypted: str) -> None:
        with self._db.lock:
            now = utcnow()
            existing = self._db.totp.get(user_id)
            if existing is None:
                self._db.totp[user_id] = MFATOTP(user_id=user_id, secret_encrypted=secret_encrypted)
            else:
                existing.secret_encrypted = secret_encrypted
                existing.confirmed_at = None
                existing.last_used_at = None
                existing.updated_at = now

    def get_totp(self, user_id: str) -> Optional[MFATOTP]:
        with self._db.lock:
            record = self._db.totp.get(user_id)
            return replace(record) if record else None

    def confirm_totp(self, user_id: str, at: datetime) -> None:
        with self._db.lock:
            record = self._db.totp.get(user_id)
            if record is not None:
                record.confirmed_at = at
                record.updated_at = at

    def update_totp_used_at(self, user_id: str, at: datetime) -> None:
        with self._db.lock:
            record = self._db.totp.get(user_id)
            if record is not None:
                record.last_used_at = at
                record.updated_at = at

    def disable_totp(self, user_id: str) -> None:
        with self._db.lock:
            self._db.totp.pop(user_id, None)
            self._db.recovery_codes.pop(user_id, None)
            for key in [k for k in self._db.trusted_devices if k[0] == user_id]:
                del self._db.trusted_devices[key]

    def replace_recovery_codes(self, user_id: str, code_hashes: List[str]) -> None:
        with self._db.lock:
            self._db.recovery_codes[user_id] = {h: None for h in code_hashes}

    def use_recovery_code(self, user_id: str, code_hash: str, at: datetime) -> bool:
        with self._db.lock:
            codes = self._db.recovery_codes.get(user_id) or {}
            if code_hash not in codes or codes[code_hash] is not None:
                return False
            codes[code_hash] = at
            return True

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._db.lock:
            codes = self._db.recovery_codes.get(user_id) or {}
            return sum(1 for used in codes.values() if used is None)

    def add_trusted_device(self, user_id: str, device_hash: str, expires_at: datetime) -> None:
        with self._db.lock:
            self._db.trusted_devices[(user_id, device_hash)] = TrustedDevice(
                user_id=user_id, device_hash=device_hash, expires_at=expires_at
            )

    def is_trusted_device(self, user_id: str, device_hash: str, now: datetime) -> bool:
        with self._db.lock:
            device = self._db.trusted_devices.get((user_id, device_hash))
            return device is not None and now < device.expires_at


class MemoryConsentRepository:
    def __init__(self, db: _MemoryDatabase):
        self._db = db

    def upsert(self, user_id: str, client_id: str, scopes: List[str]) -> Consent:
        now = utcnow()
        with self._db.lock:
            consent = self._db.consents.get((user_id, client_id))
            if consent is None or consent.revoked_at is not None:
                consent = Consent(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    client_id=client_id,
                    scopes=sorted(set(scopes)),
                )
                self._db.consents[(user_id, client_id)] = consent
            else:
                consent.scopes = sorted(set(consent.scopes) | set(scopes))
                consent.updated_at = now
            return replace(consent)

    def get(self, user_id: str, client_id: str) -> Optional[Consent]:
        with self._db.lock:
            consent = self._db.consents.get((user_id, client_id))
            return replace(consent) if consent else None

    def list_by_user(self, user_id: str, *, active_only: bool = True) -> List[Consent]:
        with self._db.lock:
            return [
                replace(c)
                for (uid, _), c in self._db.consents.items()
                if uid == user_id and (not active_only or c.revoked_at is None)
            ]

    def revoke(self, user_id: str, client_id: str) -> bool:
        with self._db.lock:
            consent = self._db.consents.get((user_id, client_id))
            if consent is None or consent.revoked_at is not None:
                return False
            consent.revoked_at = utcnow()
            return True


class MemoryRBACRepository:
    def __init__(self, db: _MemoryDatabase, tenant_id: str):
        self._db = db
        self._tenant_id = tenant_id

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._db.lock:
            return sorted(self._db.user_roles.get((self._tenant_id, user_id), set()))

    def get_user_permissions(self, user_id: str) -> List[str]:
        with self._db.lock:
            perms: Set[str] = set()
            for role in self._db.user_roles.get((self._tenant_id, user_id), set()):
                perms |= self._db.role_perms.get((self._tenant_id, role), set())
            return sorted(perms)

    def assign_role(self, user_id: str, role: str) -> None:
        with self._db.lock:
            self._db.user_roles.setdefault((self._tenant_id, user_id), set()).add(role)

    def remove_role(self, user_id: str, role: str) -> None:
        with self._db.lock:
            self._db.user_roles.get((self._tenant_id, user_id), set()).discard(role)

    def set_role_permissions(self, role: str, perms: List[str]) -> None:
        with self._db.lock:
            self._db.role_perms[(self._tenant_id, role)] = set(perms)


class MemoryMigrationExecutor:
    """Records applied versions; SQL bodies are accepted but not interpreted."""

    def __init__(self, db: _MemoryDatabase):
        self._db = db

    def ensure_migrations_table(self) -> None:
        return None

    def current_version(self) -> int:
        with self._db.lock:
            return max(self._db.migrations, default=0)

    def apply(self, version: int, name: str, sql: str) -> None:
        with self._db.lock:
            if version in self._db.migrations:
                raise MigrationError("migration already applied", {"version": version})
            if not sql.strip():
                raise MigrationError("empty migration", {"version": version})
            self._db.migrations[version] = (name, utcnow())


class MemoryConnection(Connection):
    driver = "memory"

    def __init__(self, db: _MemoryDatabase, tenant_id: str = ""):
        self._db = db
        self._users = MemoryUserRepository(db)
        self._tokens = MemoryTokenRepository(db)
        self._email_tokens = MemoryEmailTokenRepository(db)
        self._mfa = MemoryMFARepository(db)
        self._consents = MemoryConsentRepository(db)
        self._rbac = MemoryRBACRepository(db, tenant_id)
        self._executor = MemoryMigrationExecutor(db)

    @property
    def users(self) -> MemoryUserRepository:
        return self._users

    @property
    def tokens(self) -> MemoryTokenRepository:
        return self._tokens

    @property
    def email_tokens(self) -> MemoryEmailTokenRepository:
        return self._email_tokens

    @property
    def mfa(self) -> MemoryMFARepository:
        return self._mfa

    @property
    def consents(self) -> MemoryConsentRepository:
        return self._consents

    @property
    def rbac(self) -> MemoryRBACRepository:
        return self._rbac

    @property
    def migration_executor(self) -> MemoryMigrationExecutor:
        return self._executor


class MemoryAdapter(Adapter):
    name = "memory"

    def __init__(self) -> None:
        self._databases: Dict[str, _MemoryDatabase] = {}
        self._lock = threading.Lock()

    def connect(self, config: AdapterConfig) -> MemoryConnection:
        key = config.dsn or "memory://default"
        with self._lock:
            db = self._databases.get(key)
            if db is None:
                db = _MemoryDatabase()
                self._databases[key] = db
                logger.info("memory_database_created", dsn=key)
        return MemoryConnection(db, tenant_id=config.options.get("tenant_id", ""))
