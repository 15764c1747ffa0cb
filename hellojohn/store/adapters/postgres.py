from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hellojohn.logging import get_logger
from hellojohn.store.errors import ConstraintViolation, InvalidConfig, MigrationError, UserNotFound
from hellojohn.store.models import (
    MFATOTP,
    Consent,
    EmailToken,
    RefreshToken,
    User,
    utcnow,
)
from hellojohn.store.registry import Adapter, AdapterConfig, Connection

logger = get_logger(__name__)


def _row_to_user(row: Dict[str, Any]) -> User:
    custom = row.get("custom_fields") or {}
    if isinstance(custom, str):
        custom = json.loads(custom)
    return User(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        email=row["email"],
        email_verified=bool(row.get("email_verified")),
        name=row.get("name") or "",
        given_name=row.get("given_name") or "",
        family_name=row.get("family_name") or "",
        picture=row.get("picture") or "",
        locale=row.get("locale") or "",
        custom_fields=custom,
        disabled_at=row.get("disabled_at"),
        disabled_until=row.get("disabled_until"),
        disabled_reason=row.get("disabled_reason") or "",
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_refresh(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        client_id=row["client_id_text"],
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        issued_at=row["issued_at"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
        rotated_from=str(row["rotated_from"]) if row.get("rotated_from") else None,
        scope=row.get("scope") or "",
    )


def _row_to_email_token(row: Dict[str, Any]) -> EmailToken:
    return EmailToken(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        user_id=str(row["user_id"]),
        kind=row["kind"],
        token_hash=row["token_hash"],
        sent_to=row.get("sent_to") or "",
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
        used_at=row.get("used_at"),
    )


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError):
        return False
    return True


class _PostgresRepository:
    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    def _connect(self):
        return self.pool.connection()


class PostgresUserRepository(_PostgresRepository):
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
        user_id = str(uuid.uuid4())
        email = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, tenant_id, email, email_verified, name, custom_fields)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, tenant_id, email, email_verified, name, json.dumps(custom_fields or {})),
                ).fetchone()
                if password_hash is not None:
                    conn.execute(
                        """
                        INSERT INTO identity (id, user_id, provider, provider_user_id, email, email_verified, password_hash)
                        VALUES (%s, %s, 'password', %s, %s, %s, %s)
                        """,
                        (str(uuid.uuid4()), user_id, email, email, email_verified, password_hash),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def get_by_id(self, user_id: str) -> Optional[User]:
        # ids are UUID columns; anything else cannot match a row
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_by_email(self, tenant_id: str, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE tenant_id = %s AND email = %s",
                (tenant_id, email.strip().lower()),
            ).fetchone()
        return _row_to_user(row) if row else None

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM identity WHERE user_id = %s AND provider = 'password'",
                (user_id,),
            ).fetchone()
        return row["password_hash"] if row else None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE identity SET password_hash = %s WHERE user_id = %s AND provider = 'password'",
                (password_hash, user_id),
            )
            if cur.rowcount:
                return
            row = conn.execute("SELECT email FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not row:
                raise UserNotFound("user not found", {"user_id": user_id})
            conn.execute(
                """
                INSERT INTO identity (id, user_id, provider, provider_user_id, email, password_hash)
                VALUES (%s, %s, 'password', %s, %s, %s)
                """,
                (str(uuid.uuid4()), user_id, row["email"], row["email"], password_hash),
            )

    def list(self, tenant_id: str, *, limit: int = 50, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user WHERE tenant_id = %s ORDER BY created_at LIMIT %s OFFSET %s",
                (tenant_id, limit, offset),
            ).fetchall()
        return [_row_to_user(row) for row in rows]

    def set_email_verified(self, user_id: str, verified: bool = True) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET email_verified = %s, updated_at = now() WHERE id = %s",
                (verified, user_id),
            )
        if not cur.rowcount:
            raise UserNotFound("user not found", {"user_id": user_id})

    def update_profile(self, user_id: str, **fields) -> User:
        allowed = ("name", "given_name", "family_name", "picture", "locale", "custom_fields")
        assignments = []
        params: List[Any] = []
        for key in allowed:
            if key in fields:
                value = fields[key]
                assignments.append(f"{key} = %s")
                params.append(json.dumps(value) if key == "custom_fields" else value)
        if not assignments:
            user = self.get_by_id(user_id)
            if user is None:
                raise UserNotFound("user not found", {"user_id": user_id})
            return user
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)}, updated_at = now() WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        if not row:
            raise UserNotFound("user not found", {"user_id": user_id})
        return _row_to_user(row)

    def disable(self, user_id: str, *, until: Optional[datetime] = None, reason: str = "") -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user SET disabled_at = now(), disabled_until = %s, disabled_reason = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (until, reason, user_id),
            )
        if not cur.rowcount:
            raise UserNotFound("user not found", {"user_id": user_id})

    def enable(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET disabled_at = NULL, disabled_until = NULL, disabled_reason = '',
                    updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    def delete(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))


class PostgresTokenRepository(_PostgresRepository):
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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token
                        (id, tenant_id, client_id_text, user_id, token_hash, issued_at, expires_at, rotated_from, scope)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        tenant_id,
                        client_id,
                        user_id,
                        token_hash,
                        now,
                        now + timedelta(seconds=ttl_seconds),
                        rotated_from,
                        scope,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return _row_to_refresh(row)

    def get_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_refresh(row) if row else None

    def revoke(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE id = %s AND revoked_at IS NULL",
                (token_id,),
            )
        return bool(cur.rowcount)

    def revoke_all_for_user(self, user_id: str, client_id: Optional[str] = None) -> int:
        sql = "UPDATE refresh_token SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL"
        params: List[Any] = [user_id]
        if client_id:
            sql += " AND client_id_text = %s"
            params.append(client_id)
        with self._connect() as conn:
            cur = conn.execute(sql, params)
        return cur.rowcount or 0


class PostgresEmailTokenRepository(_PostgresRepository):
    def create(
        self,
        tenant_id: str,
        user_id: str,
        kind: str,
        token_hash: str,
        sent_to: str,
        ttl_seconds: int,
    ) -> EmailToken:
        now = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE email_token SET used_at = %s WHERE user_id = %s AND kind = %s AND used_at IS NULL",
                    (now, user_id, kind),
                )
                row = conn.execute(
                    """
                    INSERT INTO email_token
                        (id, tenant_id, user_id, kind, token_hash, sent_to, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        tenant_id,
                        user_id,
                        kind,
                        token_hash,
                        sent_to,
                        now + timedelta(seconds=ttl_seconds),
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return _row_to_email_token(row)

    def get_by_hash(self, token_hash: str) -> Optional[EmailToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_email_token(row) if row else None

    def use(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE email_token SET used_at = now() WHERE id = %s AND used_at IS NULL",
                (token_id,),
            )
        return bool(cur.rowcount)


class PostgresMFARepository(_PostgresRepository):
    def upsert_totp(self, user_id: str, secret_encrypted: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_mfa_totp (user_id, secret_encrypted)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET secret_encrypted = EXCLUDED.secret_encrypted,
                    confirmed_at = NULL,
                    last_used_at = NULL,
                    updated_at = now()
                """,
                (user_id, secret_encrypted),
            )

    def get_totp(self, user_id: str) -> Optional[MFATOTP]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_mfa_totp WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return MFATOTP(
            user_id=str(row["user_id"]),
            secret_encrypted=row["secret_encrypted"],
            confirmed_at=row.get("confirmed_at"),
            last_used_at=row.get("last_used_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def confirm_totp(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_mfa_totp SET confirmed_at = %s, updated_at = %s WHERE user_id = %s",
                (at, at, user_id),
            )

    def update_totp_used_at(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_mfa_totp SET last_used_at = %s, updated_at = %s WHERE user_id = %s",
                (at, at, user_id),
            )

    def disable_totp(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_mfa_totp WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM mfa_recovery_code WHERE user_id = %s", (user_id,))
            conn.execute("DELETE FROM trusted_device WHERE user_id = %s", (user_id,))

    def replace_recovery_codes(self, user_id: str, code_hashes: List[str]) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM mfa_recovery_code WHERE user_id = %s", (user_id,))
            for code_hash in code_hashes:
                conn.execute(
                    "INSERT INTO mfa_recovery_code (user_id, code_hash) VALUES (%s, %s)",
                    (user_id, code_hash),
                )

    def use_recovery_code(self, user_id: str, code_hash: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE mfa_recovery_code SET used_at = %s
                WHERE user_id = %s AND code_hash = %s AND used_at IS NULL
                """,
                (at, user_id, code_hash),
            )
        return bool(cur.rowcount)

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM mfa_recovery_code WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def add_trusted_device(self, user_id: str, device_hash: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO trusted_device (user_id, device_hash, expires_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id, device_hash) DO UPDATE SET expires_at = EXCLUDED.expires_at
                """,
                (user_id, device_hash, expires_at),
            )

    def is_trusted_device(self, user_id: str, device_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM trusted_device
                WHERE user_id = %s AND device_hash = %s AND expires_at > %s
                """,
                (user_id, device_hash, now),
            ).fetchone()
        return row is not None


def _row_to_consent(row: Dict[str, Any]) -> Consent:
    return Consent(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        client_id=row["client_id"],
        scopes=list(row.get("scopes") or []),
        granted_at=row["granted_at"],
        updated_at=row.get("updated_at") or row["granted_at"],
        revoked_at=row.get("revoked_at"),
    )


class PostgresConsentRepository(_PostgresRepository):
    def upsert(self, user_id: str, client_id: str, scopes: List[str]) -> Consent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_consent (id, user_id, client_id, scopes)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, client_id) DO UPDATE
                SET scopes = CASE
                        WHEN user_consent.revoked_at IS NULL THEN
                            ARRAY(SELECT DISTINCT unnest(user_consent.scopes || EXCLUDED.scopes) ORDER BY 1)
                        ELSE EXCLUDED.scopes
                    END,
                    granted_at = CASE WHEN user_consent.revoked_at IS NULL THEN user_consent.granted_at ELSE now() END,
                    revoked_at = NULL,
                    updated_at = now()
                RETURNING *
                """,
                (str(uuid.uuid4()), user_id, client_id, sorted(set(scopes))),
            ).fetchone()
        return _row_to_consent(row)

    def get(self, user_id: str, client_id: str) -> Optional[Consent]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_consent WHERE user_id = %s AND client_id = %s",
                (user_id, client_id),
            ).fetchone()
        return _row_to_consent(row) if row else None

    def list_by_user(self, user_id: str, *, active_only: bool = True) -> List[Consent]:
        sql = "SELECT * FROM user_consent WHERE user_id = %s"
        if active_only:
            sql += " AND revoked_at IS NULL"
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY granted_at", (user_id,)).fetchall()
        return [_row_to_consent(row) for row in rows]

    def revoke(self, user_id: str, client_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_consent SET revoked_at = now(), updated_at = now()
                WHERE user_id = %s AND client_id = %s AND revoked_at IS NULL
                """,
                (user_id, client_id),
            )
        return bool(cur.rowcount)


class PostgresRBACRepository(_PostgresRepository):
    def __init__(self, pool: ConnectionPool, tenant_id: str):
        super().__init__(pool)
        self.tenant_id = tenant_id

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM rbac_user_role WHERE tenant_id = %s AND user_id = %s ORDER BY role",
                (self.tenant_id, user_id),
            ).fetchall()
        return [row["role"] for row in rows]

    def get_user_permissions(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT p.perm FROM rbac_user_role r
                JOIN rbac_role_perm p ON p.tenant_id = r.tenant_id AND p.role = r.role
                WHERE r.tenant_id = %s AND r.user_id = %s
                ORDER BY p.perm
                """,
                (self.tenant_id, user_id),
            ).fetchall()
        return [row["perm"] for row in rows]

    def assign_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rbac_user_role (tenant_id, user_id, role) VALUES (%s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (self.tenant_id, user_id, role),
            )

    def remove_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM rbac_user_role WHERE tenant_id = %s AND user_id = %s AND role = %s",
                (self.tenant_id, user_id, role),
            )

    def set_role_permissions(self, role: str, perms: List[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM rbac_role_perm WHERE tenant_id = %s AND role = %s",
                (self.tenant_id, role),
            )
            for perm in sorted(set(perms)):
                conn.execute(
                    "INSERT INTO rbac_role_perm (tenant_id, role, perm) VALUES (%s, %s, %s)",
                    (self.tenant_id, role, perm),
                )


class PostgresMigrationExecutor(_PostgresRepository):
    def ensure_migrations_table(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _migrations (
                    version INT PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def current_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) AS version FROM _migrations"
            ).fetchone()
        return int(row["version"]) if row else 0

    def apply(self, version: int, name: str, sql: str) -> None:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(sql)
                    conn.execute(
                        "INSERT INTO _migrations (version, name) VALUES (%s, %s)",
                        (version, name),
                    )
        except errors.Error as exc:
            raise MigrationError(f"migration {version} failed", {"version": version}) from exc


class PostgresConnection(Connection):
    driver = "postgres"

    def __init__(self, pool: ConnectionPool, tenant_id: str = ""):
        self.pool = pool
        self._users = PostgresUserRepository(pool)
        self._tokens = PostgresTokenRepository(pool)
        self._email_tokens = PostgresEmailTokenRepository(pool)
        self._mfa = PostgresMFARepository(pool)
        self._consents = PostgresConsentRepository(pool)
        self._rbac = PostgresRBACRepository(pool, tenant_id)
        self._executor = PostgresMigrationExecutor(pool)

    def ping(self) -> None:
        with self.pool.connection() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @property
    def users(self) -> PostgresUserRepository:
        return self._users

    @property
    def tokens(self) -> PostgresTokenRepository:
        return self._tokens

    @property
    def email_tokens(self) -> PostgresEmailTokenRepository:
        return self._email_tokens

    @property
    def mfa(self) -> PostgresMFARepository:
        return self._mfa

    @property
    def consents(self) -> PostgresConsentRepository:
        return self._consents

    @property
    def rbac(self) -> PostgresRBACRepository:
        return self._rbac

    @property
    def migration_executor(self) -> PostgresMigrationExecutor:
        return self._executor


class PostgresAdapter(Adapter):
    name = "postgres"

    def connect(self, config: AdapterConfig) -> PostgresConnection:
        if not config.dsn:
            raise InvalidConfig("postgres adapter requires a dsn")
        kwargs: Dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if config.schema:
            kwargs["options"] = f"-c search_path={config.schema}"
        pool = ConnectionPool(
            config.dsn,
            min_size=config.min_size,
            max_size=config.max_size,
            kwargs=kwargs,
            open=True,
        )
        logger.info(
            "postgres_pool_opened",
            min_size=config.min_size,
            max_size=config.max_size,
            schema=config.schema or "public",
        )
        return PostgresConnection(pool, tenant_id=config.options.get("tenant_id", ""))
