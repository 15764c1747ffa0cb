"""Password login, registration and browser sessions for a tenant's clients."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from hellojohn.config import Settings
from hellojohn.logging import get_logger
from hellojohn.security.passwords import PasswordService
from hellojohn.security.tokens import opaque_token, sha256_b64url
from hellojohn.service.authorize import SESSION_KEY_PREFIX
from hellojohn.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidClientError,
)
from hellojohn.service.mfa import MFAService
from hellojohn.service.tokens import TokenService
from hellojohn.store.errors import ConstraintViolation
from hellojohn.store.factory import DALFactory, TenantDataAccess
from hellojohn.store.models import MFAChallenge, OIDCClient, SessionPayload, User

logger = get_logger(__name__)

PASSWORD_PROVIDER = "password"
SESSION_COOKIE = "sid"
SESSION_TTL_SECONDS = 24 * 3600


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class LoginService:
    def __init__(
        self,
        dal: DALFactory,
        tokens: TokenService,
        mfa: MFAService,
        passwords: PasswordService,
        settings: Settings,
    ):
        self.dal = dal
        self.tokens = tokens
        self.mfa = mfa
        self.passwords = passwords
        self.settings = settings

    def _gate(self, tenant_ref: str, client_id: str) -> Tuple[TenantDataAccess, OIDCClient]:
        if not tenant_ref or not client_id:
            raise BadRequestError("invalid request", detail="tenant_id and client_id are required")
        tda = self.dal.for_tenant(tenant_ref)
        client = tda.get_client(client_id)
        if client is None:
            raise InvalidClientError("unknown client", detail=client_id)
        if PASSWORD_PROVIDER not in client.providers:
            raise ForbiddenError("provider not allowed", detail=PASSWORD_PROVIDER)
        tda.require_db()
        return tda, client

    def _authenticate(
        self, tda: TenantDataAccess, client: OIDCClient, email: str, password: str
    ) -> User:
        email = _normalize_email(email)
        if not email or not password:
            raise BadRequestError("invalid request", detail="email and password are required")
        user = tda.users.get_by_email(tda.id, email)
        stored = tda.users.get_password_hash(user.id) if user is not None else None
        if user is None or not self.passwords.verify(stored or "", password):
            logger.warning("login_failed", tenant=tda.slug, client_id=client.client_id)
            raise AuthenticationError("invalid credentials", error_code="invalid_credentials")
        if user.is_disabled():
            logger.warning("login_user_disabled", tenant=tda.slug, user_id=user.id)
            raise ForbiddenError("user disabled", error_code="user_disabled")
        if client.require_email_verification and not user.email_verified:
            raise ForbiddenError("email not verified", error_code="email_not_verified")
        if self.passwords.needs_rehash(stored):
            tda.users.update_password(user.id, self.passwords.hash(password))
            logger.info("password_rehashed", tenant=tda.slug, user_id=user.id)
        return user

    async def login(
        self,
        *,
        tenant_ref: str,
        client_id: str,
        email: str,
        password: str,
        trust_cookie: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Tokens for valid credentials, or a pending MFA step-up."""
        tda, client = self._gate(tenant_ref, client_id)
        user = self._authenticate(tda, client, email, password)
        amr = ["pwd"]
        if self.mfa.requires_step_up(tda, user.id):
            if not self.mfa.is_trusted(tda, user.id, trust_cookie):
                mfa_token = await self.mfa.start_challenge(
                    MFAChallenge(
                        user_id=user.id,
                        tenant_id=tda.id,
                        client_id=client.client_id,
                        amr=amr,
                        scopes=list(client.scopes),
                    )
                )
                return {"status": "mfa_required", "mfa_required": True, "mfa_token": mfa_token}
            amr = ["pwd", "mfa"]
        issued = await self.tokens.issue(
            tda, user=user, client_id=client.client_id, scopes=client.scopes, amr=amr
        )
        logger.info("login_succeeded", tenant=tda.slug, client_id=client.client_id, user_id=user.id)
        return issued.as_dict()

    async def register(
        self,
        *,
        tenant_ref: str,
        client_id: str,
        email: str,
        password: str,
        name: str = "",
        custom_fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        tda, client = self._gate(tenant_ref, client_id)
        email = _normalize_email(email)
        if not email or "@" not in email or not password:
            raise BadRequestError("invalid request", detail="a valid email and a password are required")
        if self.passwords.is_blacklisted(password):
            raise BadRequestError("password too weak", error_code="weak_password")
        try:
            user = tda.users.create(
                tda.id,
                email,
                password_hash=self.passwords.hash(password),
                name=name,
                custom_fields=custom_fields,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        logger.info("user_registered", tenant=tda.slug, client_id=client.client_id, user_id=user.id)

        if not self.settings.register_auto_login or client.require_email_verification:
            return {"user_id": user.id}
        issued = await self.tokens.issue(
            tda, user=user, client_id=client.client_id, scopes=client.scopes, amr=["pwd"]
        )
        return {"user_id": user.id, **issued.as_dict()}

    async def session_login(
        self, *, tenant_ref: str, client_id: str, email: str, password: str
    ) -> Tuple[str, int]:
        """Open a cookie session the authorize endpoint recognizes; returns ``(sid, max_age)``."""
        tda, client = self._gate(tenant_ref, client_id)
        user = self._authenticate(tda, client, email, password)
        sid = opaque_token(32)
        payload = SessionPayload.new(user.id, tda.id, SESSION_TTL_SECONDS)
        await tda.cache.set_json(SESSION_KEY_PREFIX + sha256_b64url(sid), payload.to_dict(), SESSION_TTL_SECONDS)
        logger.info("session_opened", tenant=tda.slug, client_id=client.client_id, user_id=user.id)
        return sid, SESSION_TTL_SECONDS

    async def session_logout(self, *, tenant_ref: str, sid: Optional[str]) -> None:
        if not sid:
            return
        tda = self.dal.for_tenant(tenant_ref)
        await tda.cache.delete(SESSION_KEY_PREFIX + sha256_b64url(sid))
        logger.info("session_closed", tenant=tda.slug)
