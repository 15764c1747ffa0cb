from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


SYSTEM_SCOPES = ("openid", "profile", "email")


# --- control plane -------------------------------------------------------


@dataclass
class SMTPSettings:
    host: str = ""
    port: int = 587
    username: str = ""
    password_enc: str = ""
    from_email: str = ""
    use_tls: bool = True
    # plaintext mirror; only populated in memory after decryption
    password: str = ""


@dataclass
class UserDBSettings:
    driver: str = ""
    dsn_enc: str = ""
    schema: str = ""
    manual_mode: bool = False
    dsn: str = ""


@dataclass
class CacheSettings:
    enabled: bool = False
    driver: str = "memory"
    host: str = ""
    port: int = 6379
    password_enc: str = ""
    db: int = 0
    prefix: str = ""
    password: str = ""


@dataclass
class SocialProvider:
    enabled: bool = False
    client_id: str = ""
    client_secret_enc: str = ""
    client_secret: str = ""


@dataclass
class UserFieldDefinition:
    name: str
    type: str = "text"
    required: bool = False
    unique: bool = False
    indexed: bool = False
    description: str = ""


@dataclass
class EmailTemplate:
    subject: str = ""
    body: str = ""


@dataclass
class TenantSettings:
    logo_url: str = ""
    brand_color: str = ""
    session_lifetime_seconds: int = 0
    refresh_token_lifetime_seconds: int = 0
    mfa_enabled: bool = False
    social_login_enabled: bool = False
    issuer_mode: str = "path"
    issuer_override: str = ""
    smtp: Optional[SMTPSettings] = None
    user_db: Optional[UserDBSettings] = None
    cache: Optional[CacheSettings] = None
    social_providers: Dict[str, SocialProvider] = field(default_factory=dict)
    user_fields: List[UserFieldDefinition] = field(default_factory=list)
    # language -> template id -> template
    mailing: Dict[str, Dict[str, EmailTemplate]] = field(default_factory=dict)

    def template(self, language: str, template_id: str) -> Optional[EmailTemplate]:
        by_lang = self.mailing.get(language) or self.mailing.get("en") or {}
        return by_lang.get(template_id)


@dataclass
class Tenant:
    id: str
    slug: str
    name: str = ""
    language: str = "en"
    settings: TenantSettings = field(default_factory=TenantSettings)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, slug: str, name: str = "", **kwargs: Any) -> "Tenant":
        return cls(id=str(uuid.uuid4()), slug=slug, name=name or slug, **kwargs)


@dataclass
class OIDCClient:
    client_id: str
    name: str = ""
    type: str = "public"
    redirect_uris: List[str] = field(default_factory=list)
    allowed_origins: List[str] = field(default_factory=list)
    providers: List[str] = field(default_factory=lambda: ["password"])
    scopes: List[str] = field(default_factory=lambda: ["openid"])
    secret_enc: str = ""
    require_email_verification: bool = False
    reset_password_url: str = ""
    verify_email_url: str = ""
    claim_schema: Dict[str, Any] = field(default_factory=dict)
    claim_mapping: Dict[str, Any] = field(default_factory=dict)
    secret: str = ""

    @property
    def is_confidential(self) -> bool:
        return self.type == "confidential"


@dataclass
class Scope:
    name: str
    description: str = ""
    system: bool = False


@dataclass
class SigningKey:
    kid: str
    tenant: str = ""
    alg: str = "EdDSA"
    public_pem: str = ""
    private_pem_enc: str = ""
    status: str = "active"
    created_at: datetime = field(default_factory=utcnow)
    not_after: Optional[datetime] = None

    def is_published(self, now: datetime) -> bool:
        if self.status == "active":
            return True
        if self.status == "grace":
            return self.not_after is not None and now < self.not_after
        return False


@dataclass
class AdminUser:
    id: str
    email: str
    password_hash: str
    name: str = ""
    type: str = "global"
    assigned_tenants: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_seen_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None

    def has_access_to_tenant(self, tenant_id: str) -> bool:
        if self.type == "global":
            return True
        return tenant_id in self.assigned_tenants


# --- tenant data plane ---------------------------------------------------


@dataclass
class User:
    id: str
    tenant_id: str
    email: str
    email_verified: bool = False
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    picture: str = ""
    locale: str = ""
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    disabled_at: Optional[datetime] = None
    disabled_until: Optional[datetime] = None
    disabled_reason: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_disabled(self, now: Optional[datetime] = None) -> bool:
        if self.disabled_at is None:
            return False
        if self.disabled_until is None:
            return True
        return (now or utcnow()) < self.disabled_until


@dataclass
class Identity:
    id: str
    user_id: str
    provider: str
    provider_user_id: str = ""
    email: str = ""
    email_verified: bool = False
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    tenant_id: str
    client_id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    issued_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    rotated_from: Optional[str] = None
    # space-separated scopes granted when the chain started
    scope: str = ""

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.revoked_at is None and (now or utcnow()) < self.expires_at


EMAIL_TOKEN_VERIFY = "verify"
EMAIL_TOKEN_RESET = "reset"


@dataclass
class EmailToken:
    """Single-use link token for email verification or password reset."""

    id: str
    tenant_id: str
    user_id: str
    kind: str
    token_hash: str
    sent_to: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and (now or utcnow()) < self.expires_at


@dataclass
class MFATOTP:
    user_id: str
    secret_encrypted: str
    confirmed_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TrustedDevice:
    user_id: str
    device_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Consent:
    id: str
    user_id: str
    client_id: str
    scopes: List[str] = field(default_factory=list)
    granted_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None


# --- cached protocol state -----------------------------------------------


@dataclass
class AuthCodePayload:
    user_id: str
    tenant_id: str
    client_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: str
    expires_at: datetime
    nonce: str = ""
    amr: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "nonce": self.nonce,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "amr": list(self.amr),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthCodePayload":
        return cls(
            user_id=data["user_id"],
            tenant_id=data["tenant_id"],
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            scope=data.get("scope", ""),
            nonce=data.get("nonce", ""),
            code_challenge=data.get("code_challenge", ""),
            code_challenge_method=data.get("code_challenge_method", ""),
            amr=list(data.get("amr") or []),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass
class MFAChallenge:
    user_id: str
    tenant_id: str
    client_id: str
    amr: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.user_id,
            "tid": self.tenant_id,
            "cid": self.client_id,
            "amr": list(self.amr),
            "scp": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MFAChallenge":
        return cls(
            user_id=data["uid"],
            tenant_id=data["tid"],
            client_id=data.get("cid", ""),
            amr=list(data.get("amr") or []),
            scopes=list(data.get("scp") or []),
        )


@dataclass
class SessionPayload:
    user_id: str
    tenant_id: str
    expires: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "expires": self.expires.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionPayload":
        return cls(
            user_id=data["user_id"],
            tenant_id=data["tenant_id"],
            expires=datetime.fromisoformat(data["expires"]),
        )

    @classmethod
    def new(cls, user_id: str, tenant_id: str, ttl_seconds: int) -> "SessionPayload":
        return cls(user_id, tenant_id, utcnow() + timedelta(seconds=ttl_seconds))
