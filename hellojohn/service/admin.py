"""Control-plane administrators: stateless admin JWTs and signing-key rotation."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from hellojohn.config import Settings
from hellojohn.jwt import jws
from hellojohn.jwt.issuer import key_owner
from hellojohn.jwt.jwks_cache import JWKSCache
from hellojohn.jwt.keystore import GLOBAL_OWNER, Keystore
from hellojohn.logging import get_logger
from hellojohn.security.passwords import PasswordService
from hellojohn.security.tokens import opaque_token
from hellojohn.service.errors import (
    AuthenticationError,
    BadRequestError,
    ForbiddenError,
    InvalidGrantError,
    InvalidTokenError,
)
from hellojohn.service.tokens import TokenService, extract_bearer
from hellojohn.store.errors import NotLeader
from hellojohn.store.factory import DALFactory

logger = get_logger(__name__)

ADMIN_AUDIENCE = "hellojohn:admin"
TOKEN_USE_REFRESH = "refresh"


@dataclass
class AdminPrincipal:
    sub: str
    admin_type: str = "global"
    tenants: List[str] = field(default_factory=list)

    def can_manage(self, tenant_id: str) -> bool:
        return self.admin_type == "global" or tenant_id in self.tenants


class AdminService:
    def __init__(
        self,
        dal: DALFactory,
        keystore: Keystore,
        jwks_cache: JWKSCache,
        tokens: TokenService,
        passwords: PasswordService,
        settings: Settings,
    ):
        self.dal = dal
        self.keystore = keystore
        self.jwks_cache = jwks_cache
        self.tokens = tokens
        self.passwords = passwords
        self.settings = settings

    def _mint(self, claims: Dict[str, Any]) -> str:
        key = self.keystore.active(GLOBAL_OWNER)
        return jws.sign(claims, key.private_key, key.kid)

    def _issue_pair(self, admin_id: str, admin_type: str, tenants: List[str]) -> Dict[str, Any]:
        now = int(time.time())
        base = {
            "iss": self.settings.base_url,
            "sub": admin_id,
            "aud": ADMIN_AUDIENCE,
            "iat": now,
            "nbf": now,
            "admin_type": admin_type,
            "tenants": list(tenants),
        }
        access = self._mint({**base, "exp": now + self.settings.access_token_ttl_seconds})
        refresh = self._mint(
            {
                **base,
                "exp": now + self.settings.refresh_token_ttl_seconds,
                "token_use": TOKEN_USE_REFRESH,
                "jti": opaque_token(16),
            }
        )
        return {
            "access_token": access,
            "token_type": "Bearer",
            "expires_in": self.settings.access_token_ttl_seconds,
            "refresh_token": refresh,
        }

    def _verify(self, token: str) -> Dict[str, Any]:
        return jws.verify(
            token,
            lambda kid: self.keystore.public_key(GLOBAL_OWNER, kid),
            issuer=self.settings.base_url,
            audience=ADMIN_AUDIENCE,
        )

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        email = (email or "").strip().lower()
        if not email or not password:
            raise BadRequestError("invalid request", detail="email and password are required")
        admin = self.dal.control.admins.get_by_email(email)
        if admin is None or not self.passwords.verify(admin.password_hash, password):
            logger.warning("admin_login_failed")
            raise AuthenticationError("invalid credentials", error_code="invalid_credentials")
        if admin.disabled_at is not None:
            raise ForbiddenError("admin disabled", error_code="user_disabled")
        try:
            self.dal.record_admin_login(admin.id)
        except NotLeader as exc:
            logger.warning("admin_last_seen_skipped", admin_id=admin.id, leader_id=exc.leader_id)
        logger.info("admin_login", admin_id=admin.id, admin_type=admin.type)
        return self._issue_pair(admin.id, admin.type, admin.assigned_tenants)

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        """Stateless rotation: verify the refresh JWT and mint a fresh pair."""
        if not refresh_token:
            raise BadRequestError("invalid request", detail="refresh_token is required")
        try:
            claims = self._verify(refresh_token)
        except jws.JWTError as exc:
            raise InvalidGrantError("invalid refresh token", detail=str(exc)) from exc
        if claims.get("token_use") != TOKEN_USE_REFRESH:
            raise InvalidGrantError("invalid refresh token", detail="not a refresh token")
        admin = self.dal.control.admins.get_by_id(str(claims.get("sub")))
        if admin is None or admin.disabled_at is not None:
            raise InvalidGrantError("admin is not active")
        logger.info("admin_refresh", admin_id=admin.id)
        return self._issue_pair(admin.id, admin.type, admin.assigned_tenants)

    def authenticate(self, authorization: Optional[str]) -> AdminPrincipal:
        """Accept an admin access token, or a tenant access token whose subject is in ``ADMIN_SUBS``."""
        token = extract_bearer(authorization)
        if not token:
            raise InvalidTokenError("missing bearer token")
        try:
            unverified = jws.unverified_claims(token)
        except jws.JWTError as exc:
            raise InvalidTokenError("invalid token", detail=str(exc)) from exc
        if unverified.get("aud") == ADMIN_AUDIENCE:
            try:
                claims = self._verify(token)
            except jws.JWTError as exc:
                raise InvalidTokenError("invalid token", detail=str(exc)) from exc
            if claims.get("token_use") == TOKEN_USE_REFRESH:
                raise InvalidTokenError("invalid token", detail="refresh token presented as access token")
            return AdminPrincipal(
                sub=claims["sub"],
                admin_type=claims.get("admin_type", "global"),
                tenants=list(claims.get("tenants") or []),
            )
        _, claims = self.tokens.authenticate_bearer(authorization)
        if claims.get("sub") not in self.settings.admin_subs:
            raise ForbiddenError("admin privileges required")
        return AdminPrincipal(sub=claims["sub"])

    def rotate_keys(
        self, principal: AdminPrincipal, *, tenant: Optional[str] = None, grace_seconds: Optional[int] = None
    ) -> Dict[str, Any]:
        grace = self.settings.key_rotation_grace_seconds if grace_seconds is None else grace_seconds
        if grace < 0:
            raise BadRequestError("invalid request", detail="grace_seconds must not be negative")
        if tenant:
            record = self.dal.resolve_tenant(tenant)
            if not principal.can_manage(record.id):
                raise ForbiddenError("tenant not assigned to admin")
            slug = record.slug
            owner = key_owner(record.slug, record.settings)
        else:
            if principal.admin_type != "global":
                raise ForbiddenError("global admin required")
            slug = ""
            owner = GLOBAL_OWNER
        kid = self.dal.apply_change(
            "key_rotate",
            slug,
            lambda: self.keystore.rotate(owner, grace),
            owner=owner,
            grace_seconds=grace,
        )
        self.jwks_cache.invalidate(owner)
        logger.info("admin_key_rotated", admin_id=principal.sub, tenant=slug or "global", kid=kid)
        return {"kid": kid, "tenant": slug or None, "grace_seconds": grace}
