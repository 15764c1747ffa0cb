"""Email verification and password reset links.

Starting either flow answers the same way whether or not the address belongs
to a user; only the mailbox owner learns the difference.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from hellojohn.config import Settings
from hellojohn.logging import get_logger
from hellojohn.security.passwords import PasswordService
from hellojohn.security.tokens import opaque_token, sha256_hex
from hellojohn.service.email import EmailService, redact_email
from hellojohn.service.errors import BadRequestError, InvalidClientError
from hellojohn.service.tokens import TokenService
from hellojohn.store.factory import DALFactory, TenantDataAccess
from hellojohn.store.models import EMAIL_TOKEN_RESET, EMAIL_TOKEN_VERIFY, EmailToken, OIDCClient, User

logger = get_logger(__name__)

VERIFY_PATH = "/v2/auth/verify-email"
RESET_PATH = "/v2/auth/reset"


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def with_query(url: str, **params: str) -> str:
    """Append ``params`` to ``url`` keeping any query it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _invalid_link() -> BadRequestError:
    return BadRequestError("invalid or expired token", error_code="invalid_token")


class EmailFlowService:
    def __init__(
        self,
        dal: DALFactory,
        tokens: TokenService,
        passwords: PasswordService,
        email: EmailService,
        settings: Settings,
    ):
        self.dal = dal
        self.tokens = tokens
        self.passwords = passwords
        self.email = email
        self.settings = settings

    def _gate(self, tenant_ref: str, client_id: str) -> Tuple[TenantDataAccess, OIDCClient]:
        if not tenant_ref or not client_id:
            raise BadRequestError("invalid request", detail="tenant_id and client_id are required")
        tda = self.dal.for_tenant(tenant_ref)
        client = tda.get_client(client_id)
        if client is None:
            raise InvalidClientError("unknown client", detail=client_id)
        tda.require_db()
        return tda, client

    @staticmethod
    def _check_redirect(client: OIDCClient, redirect_uri: str) -> None:
        if redirect_uri and redirect_uri not in client.redirect_uris:
            raise BadRequestError("invalid request", detail="redirect_uri not allowed")

    def _new_link_token(self, tda: TenantDataAccess, user: User, kind: str, ttl_seconds: int) -> str:
        raw = opaque_token(32)
        tda.email_tokens.create(tda.id, user.id, kind, sha256_hex(raw), user.email, ttl_seconds)
        return raw

    def _consume(self, tda: TenantDataAccess, token: str, kind: str) -> EmailToken:
        if not token:
            raise BadRequestError("invalid request", detail="token is required")
        row = tda.email_tokens.get_by_hash(sha256_hex(token))
        if row is None or row.kind != kind or row.tenant_id != tda.id or not row.is_usable():
            raise _invalid_link()
        if not tda.email_tokens.use(row.id):
            raise _invalid_link()
        return row

    # verification
    async def start_verification(
        self,
        *,
        tenant_ref: Optional[str],
        client_id: Optional[str],
        email: Optional[str] = None,
        authorization: Optional[str] = None,
        redirect_uri: str = "",
    ) -> None:
        """Mail a verification link to the bearer's user, or to ``email`` when unauthenticated."""
        if authorization:
            tda, claims = self.tokens.authenticate_bearer(authorization, tenant_hint=tenant_ref)
            client_id = client_id or str(claims.get("aud") or "")
            tda, client = self._gate(tda.id, client_id)
            self._check_redirect(client, redirect_uri)
            user = tda.users.get_by_id(str(claims["sub"]))
        else:
            tda, client = self._gate(tenant_ref or "", client_id or "")
            self._check_redirect(client, redirect_uri)
            address = _normalize_email(email)
            if "@" not in address:
                raise BadRequestError("invalid request", detail="a valid email is required")
            user = tda.users.get_by_email(tda.id, address)

        if user is None or user.is_disabled() or user.email_verified:
            logger.info("verify_email_skipped", tenant=tda.slug, client_id=client.client_id)
            return
        ttl = self.settings.email_verify_ttl_seconds
        raw = self._new_link_token(tda, user, EMAIL_TOKEN_VERIFY, ttl)
        base = client.verify_email_url or f"{self.settings.base_url}{VERIFY_PATH}"
        link = with_query(
            base, token=raw, tenant_id=tda.id, client_id=client.client_id, redirect_uri=redirect_uri
        )
        if not self.email.send_email_verification(tda.tenant, user.email, link, ttl):
            logger.warning("verify_email_send_failed", tenant=tda.slug, to=redact_email(user.email))
            return
        logger.info("verify_email_sent", tenant=tda.slug, client_id=client.client_id, user_id=user.id)

    async def confirm_verification(
        self,
        *,
        token: str,
        tenant_ref: Optional[str],
        client_id: Optional[str] = None,
        redirect_uri: str = "",
    ) -> Optional[str]:
        """Mark the link's user verified; returns where to send the browser, if anywhere."""
        if not tenant_ref:
            raise BadRequestError("invalid request", detail="tenant_id is required")
        tda = self.dal.for_tenant(tenant_ref)
        tda.require_db()
        client = None
        if redirect_uri:
            client = tda.get_client(client_id or "")
            if client is None:
                raise BadRequestError("invalid request", detail="redirect_uri requires a known client_id")
            self._check_redirect(client, redirect_uri)
        row = self._consume(tda, token, EMAIL_TOKEN_VERIFY)
        tda.users.set_email_verified(row.user_id, True)
        logger.info("email_verified", tenant=tda.slug, user_id=row.user_id)
        if client is None:
            return None
        return with_query(redirect_uri, status="verified")

    # password reset
    async def forgot_password(self, *, tenant_ref: Optional[str], client_id: Optional[str], email: str) -> None:
        tda, client = self._gate(tenant_ref or "", client_id or "")
        address = _normalize_email(email)
        if "@" not in address:
            raise BadRequestError("invalid request", detail="a valid email is required")
        user = tda.users.get_by_email(tda.id, address)
        if user is None or user.is_disabled():
            logger.info("password_reset_skipped", tenant=tda.slug, client_id=client.client_id)
            return
        ttl = self.settings.password_reset_ttl_seconds
        raw = self._new_link_token(tda, user, EMAIL_TOKEN_RESET, ttl)
        if client.reset_password_url:
            link = with_query(client.reset_password_url, token=raw)
        else:
            link = with_query(
                f"{self.settings.base_url}{RESET_PATH}", token=raw, tenant_id=tda.id, client_id=client.client_id
            )
        if not self.email.send_password_reset(tda.tenant, user.email, link, ttl):
            logger.warning("password_reset_send_failed", tenant=tda.slug, to=redact_email(user.email))
            return
        logger.info("password_reset_sent", tenant=tda.slug, client_id=client.client_id, user_id=user.id)

    async def reset_password(
        self, *, tenant_ref: Optional[str], client_id: Optional[str], token: str, new_password: str
    ) -> Dict[str, Any]:
        """Set a new password from a reset link; every refresh token of the user is revoked.

        Returns a token response when ``RESET_AUTO_LOGIN`` is on, an empty dict otherwise.
        """
        tda, client = self._gate(tenant_ref or "", client_id or "")
        if not new_password:
            raise BadRequestError("invalid request", detail="new_password is required")
        if self.passwords.is_blacklisted(new_password):
            raise BadRequestError("password too weak", error_code="weak_password")
        row = self._consume(tda, token, EMAIL_TOKEN_RESET)
        user = tda.users.get_by_id(row.user_id)
        if user is None or user.is_disabled():
            raise _invalid_link()
        tda.users.update_password(user.id, self.passwords.hash(new_password))
        revoked = tda.tokens.revoke_all_for_user(user.id)
        logger.info("password_reset", tenant=tda.slug, client_id=client.client_id, user_id=user.id, revoked=revoked)
        if not self.settings.reset_auto_login:
            return {}
        issued = await self.tokens.issue(
            tda, user=user, client_id=client.client_id, scopes=client.scopes, amr=["pwd"]
        )
        return issued.as_dict()
