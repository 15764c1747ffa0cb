"""Authorization-code flow with mandatory PKCE (S256).

``AuthorizeService.authorize`` validates the request, authenticates the
caller from the session cookie (or a bearer token when allowed), applies the
MFA step-up gate and issues a one-shot authorization code. Every outcome is an
:class:`AuthorizeResult`; validation failures that happen before the redirect
URI is trusted are raised as :class:`BadRequestError` instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

from hellojohn.config import Settings
from hellojohn.logging import get_logger
from hellojohn.security.tokens import opaque_token, sha256_b64url
from hellojohn.service.errors import BadRequestError, InvalidClientError, ServiceError
from hellojohn.service.mfa import MFAService
from hellojohn.service.tokens import CODE_KEY_PREFIX, TokenService, extract_bearer
from hellojohn.store.errors import ClientNotFound, StoreError
from hellojohn.store.factory import DALFactory, TenantDataAccess
from hellojohn.store.models import AuthCodePayload, MFAChallenge, OIDCClient, SessionPayload, utcnow

logger = get_logger(__name__)

AUTH_CODE_TTL_SECONDS = 10 * 60
SESSION_KEY_PREFIX = "sid:"

_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

SUCCESS = "success"
NEED_LOGIN = "need_login"
MFA_REQUIRED = "mfa_required"
REDIRECT_ERROR = "redirect_error"


@dataclass
class AuthorizeRequest:
    response_type: str = ""
    client_id: str = ""
    redirect_uri: str = ""
    scope: str = ""
    state: str = ""
    nonce: str = ""
    code_challenge: str = ""
    code_challenge_method: str = ""
    prompt: str = ""

    @property
    def scopes(self) -> List[str]:
        return self.scope.split()


@dataclass
class AuthorizeResult:
    kind: str
    redirect_uri: str = ""
    state: str = ""
    code: str = ""
    error: str = ""
    login_url: str = ""
    mfa_token: str = ""
    amr: List[str] = field(default_factory=list)

    def location(self) -> str:
        """Redirect target for ``success``/``redirect_error``, or the login URL."""
        if self.kind == NEED_LOGIN:
            return self.login_url
        params = {"code": self.code} if self.kind == SUCCESS else {"error": self.error}
        if self.state:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)


def append_query(uri: str, params: dict) -> str:
    parsed = urlparse(uri)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunparse(parsed._replace(query=urlencode(query)))


def normalize_redirect_uri(uri: str) -> Optional[str]:
    """Lowercase scheme and host, keep the rest verbatim; None for unusable URIs."""
    parsed = urlparse(uri)
    if not parsed.scheme or not parsed.netloc or parsed.fragment or "#" in uri:
        return None
    host = (parsed.hostname or "").lower()
    scheme = parsed.scheme.lower()
    if scheme != "https" and not (scheme == "http" and host in _LOOPBACK_HOSTS):
        return None
    return urlunparse(parsed._replace(scheme=scheme, netloc=parsed.netloc.lower()))


def redirect_allowed(client: OIDCClient, redirect_uri: str) -> bool:
    wanted = normalize_redirect_uri(redirect_uri)
    if wanted is None:
        return False
    return any(normalize_redirect_uri(allowed) == wanted for allowed in client.redirect_uris)


def _validate(req: AuthorizeRequest) -> None:
    if req.response_type != "code":
        raise BadRequestError("invalid authorization request", detail="response_type must be code")
    if not req.client_id or not req.redirect_uri or not req.scope:
        raise BadRequestError(
            "invalid authorization request", detail="client_id, redirect_uri and scope are required"
        )
    if "openid" not in req.scopes:
        raise BadRequestError("invalid authorization request", detail="scope must include openid")
    if req.code_challenge_method != "S256" or not req.code_challenge:
        raise BadRequestError("invalid authorization request", detail="PKCE S256 required")


class AuthorizeService:
    def __init__(self, dal: DALFactory, tokens: TokenService, mfa: MFAService, settings: Settings):
        self.dal = dal
        self.tokens = tokens
        self.mfa = mfa
        self.settings = settings

    async def _session_user(self, tda: TenantDataAccess, cookie: Optional[str]) -> Optional[str]:
        if not cookie:
            return None
        raw = await tda.cache.get_json(SESSION_KEY_PREFIX + sha256_b64url(cookie))
        if raw is None:
            return None
        try:
            session = SessionPayload.from_dict(raw)
        except (KeyError, ValueError):
            logger.warning("session_payload_invalid", tenant=tda.slug)
            return None
        if session.expires <= utcnow():
            return None
        if session.tenant_id != tda.id:
            logger.warning("session_tenant_mismatch", tenant=tda.slug)
            return None
        return session.user_id

    def _bearer_user(self, tda: TenantDataAccess, authorization: Optional[str]):
        if not self.settings.auth_allow_bearer_session or not extract_bearer(authorization):
            return None
        try:
            claims = self.tokens.verify_access(tda, extract_bearer(authorization))
        except ServiceError:
            return None
        return claims.get("sub"), list(claims.get("amr") or ["pwd"])

    async def authorize(
        self,
        req: AuthorizeRequest,
        *,
        session_cookie: Optional[str] = None,
        authorization: Optional[str] = None,
        trust_cookie: Optional[str] = None,
        request_url: str = "",
    ) -> AuthorizeResult:
        _validate(req)
        try:
            tenant, client = self.dal.find_client(req.client_id)
        except ClientNotFound as exc:
            raise InvalidClientError("unknown client", detail=req.client_id) from exc
        if not redirect_allowed(client, req.redirect_uri):
            raise BadRequestError("invalid authorization request", detail="redirect_uri not allowed")
        tda = self.dal.for_tenant(tenant.id)

        def redirect_error(error: str) -> AuthorizeResult:
            return AuthorizeResult(
                kind=REDIRECT_ERROR, redirect_uri=req.redirect_uri, state=req.state, error=error
            )

        not_allowed = [s for s in req.scopes if s not in client.scopes]
        if not_allowed:
            logger.info("authorize_scope_rejected", tenant=tda.slug, client_id=client.client_id, scopes=not_allowed)
            return redirect_error("invalid_scope")

        prompt_none = req.prompt.strip() == "none"
        user_id = await self._session_user(tda, session_cookie)
        amr = ["pwd"]
        if user_id is None:
            bearer = self._bearer_user(tda, authorization)
            if bearer is not None:
                user_id, amr = bearer
        if not user_id:
            if prompt_none:
                return redirect_error("login_required")
            login_url = f"{self.settings.login_ui_base}/login?return_to={quote(request_url, safe='')}"
            return AuthorizeResult(kind=NEED_LOGIN, login_url=login_url, state=req.state)

        if amr == ["pwd"] and self.mfa.requires_step_up(tda, user_id):
            if self.mfa.is_trusted(tda, user_id, trust_cookie):
                amr = ["pwd", "mfa"]
            elif prompt_none:
                return redirect_error("interaction_required")
            else:
                mfa_token = await self.mfa.start_challenge(
                    MFAChallenge(
                        user_id=user_id,
                        tenant_id=tda.id,
                        client_id=client.client_id,
                        amr=amr,
                        scopes=req.scopes,
                    )
                )
                return AuthorizeResult(kind=MFA_REQUIRED, mfa_token=mfa_token, state=req.state)

        code = opaque_token(32)
        payload = AuthCodePayload(
            user_id=user_id,
            tenant_id=tda.id,
            client_id=client.client_id,
            redirect_uri=req.redirect_uri,
            scope=" ".join(req.scopes),
            nonce=req.nonce,
            code_challenge=req.code_challenge,
            code_challenge_method=req.code_challenge_method,
            amr=amr,
            expires_at=utcnow() + timedelta(seconds=AUTH_CODE_TTL_SECONDS),
        )
        await tda.cache.set_json(CODE_KEY_PREFIX + sha256_b64url(code), payload.to_dict(), AUTH_CODE_TTL_SECONDS)
        if tda.consents is not None:
            try:
                tda.consents.upsert(user_id, client.client_id, req.scopes)
            except StoreError as exc:
                logger.warning("consent_record_failed", tenant=tda.slug, client_id=client.client_id, error=exc.message)
        logger.info("authorization_code_issued", tenant=tda.slug, client_id=client.client_id, user_id=user_id)
        return AuthorizeResult(
            kind=SUCCESS, redirect_uri=req.redirect_uri, state=req.state, code=code, amr=amr
        )

