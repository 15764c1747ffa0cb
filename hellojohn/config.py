from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hellojohn.security.secretbox import SecretBoxError, parse_master_key


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_MAX_REMEMBER_DEVICE_SECONDS = 30 * 24 * 3600


class Settings(BaseModel):
    """Process-wide settings read from the environment and an optional .env file."""

    fs_root: str = env_field("data", "FS_ROOT", description="Control-plane data root")
    signing_master_key: str | None = env_field(
        None,
        "SIGNING_MASTER_KEY",
        description="Key protecting signing private keys at rest (32 raw / 64 hex / base64)",
    )
    secretbox_master_key: str | None = env_field(
        None,
        "SECRETBOX_MASTER_KEY",
        description="Key for *Enc fields (DSNs, SMTP/cache passwords, client secrets, TOTP)",
    )
    email_master_key: str | None = env_field(
        None, "EMAIL_MASTER_KEY", description="Legacy alias for SECRETBOX_MASTER_KEY"
    )
    base_url: str = env_field("http://localhost:8082", "V2_BASE_URL")
    server_addr: str = env_field(":8082", "V2_SERVER_ADDR")
    ui_base_url: str | None = env_field(
        None, "UI_BASE_URL", description="Where NeedLogin redirects; defaults to V2_BASE_URL"
    )
    register_auto_login: bool = env_field(True, "REGISTER_AUTO_LOGIN")
    reset_auto_login: bool = env_field(
        False, "RESET_AUTO_LOGIN", description="Issue tokens after a successful password reset"
    )
    email_verify_ttl_seconds: int = env_field(48 * 3600, "EMAIL_VERIFY_TTL_SECONDS")
    password_reset_ttl_seconds: int = env_field(3600, "PASSWORD_RESET_TTL_SECONDS")
    email_from_name: str = env_field("HelloJohn", "EMAIL_FROM_NAME")
    tenant_base_host: str | None = env_field(
        None,
        "TENANT_BASE_HOST",
        description="Hosts one label under this name select a tenant; defaults to the V2_BASE_URL host",
    )
    fs_admin_enable: bool = env_field(False, "FS_ADMIN_ENABLE")
    mfa_totp_window: int = env_field(1, "MFA_TOTP_WINDOW")
    mfa_totp_issuer: str = env_field("HelloJohn", "MFA_TOTP_ISSUER")
    mfa_remember_ttl_seconds: int = env_field(
        _MAX_REMEMBER_DEVICE_SECONDS, "MFA_REMEMBER_TTL_SECONDS"
    )
    admin_subs: list[str] = env_field(
        [], "ADMIN_SUBS", description="Comma-separated user ids treated as admins"
    )
    service_version: str = env_field("dev", "SERVICE_VERSION")
    service_commit: str = env_field("unknown", "SERVICE_COMMIT")

    global_db_driver: str | None = env_field(None, "GLOBAL_DB_DRIVER")
    global_db_dsn: str | None = env_field(None, "GLOBAL_DB_DSN")
    default_tenant_db_driver: str | None = env_field(None, "DEFAULT_TENANT_DB_DRIVER")
    default_tenant_db_dsn: str | None = env_field(None, "DEFAULT_TENANT_DB_DSN")
    mode: str | None = env_field(
        None, "HELLOJOHN_MODE", description="Force an operational mode instead of detecting it"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    pool_min_size: int = env_field(1, "POOL_MIN_SIZE")
    pool_max_size: int = env_field(10, "POOL_MAX_SIZE")

    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    auth_allow_bearer_session: bool = env_field(
        False,
        "AUTH_ALLOW_BEARER_SESSION",
        description="Accept Authorization: Bearer as authentication on /oauth2/authorize",
    )
    key_rotation_grace_seconds: int = env_field(3600, "KEY_ROTATION_GRACE_SECONDS")
    cors_allow_origins: list[str] = env_field(
        [], "CORS_ALLOW_ORIGINS", description="Comma-separated origins allowed for browser calls"
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviours: runtime reset hook, synchronous Redis client",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("mfa_totp_window")
    @classmethod
    def _validate_totp_window(cls, value: int) -> int:
        if value < 0 or value > 3:
            raise ValueError("MFA_TOTP_WINDOW must be between 0 and 3")
        return value

    @field_validator("mfa_remember_ttl_seconds")
    @classmethod
    def _cap_remember_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("MFA_REMEMBER_TTL_SECONDS must be positive")
        return min(value, _MAX_REMEMBER_DEVICE_SECONDS)

    @field_validator("admin_subs", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("signing_master_key", "secretbox_master_key", "email_master_key")
    @classmethod
    def _validate_master_key(cls, value: str | None) -> str | None:
        if not value:
            return None
        try:
            parse_master_key(value)
        except SecretBoxError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("base_url", "ui_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.rstrip("/")

    @property
    def secretbox_key(self) -> str | None:
        return self.secretbox_master_key or self.email_master_key

    @property
    def login_ui_base(self) -> str:
        return self.ui_base_url or self.base_url

    @property
    def tenant_host_suffix(self) -> str:
        host = self.tenant_base_host or urlparse(self.base_url).hostname or ""
        return host.strip().strip(".").lower()


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
