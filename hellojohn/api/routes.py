from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Cookie, Depends, Form, Header, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from hellojohn.api.deps import (
    get_admin,
    get_token_user,
    header_tenant_ref,
    require_tenant_ref,
    resolve_tenant_ref,
)
from hellojohn.api.schemas import (
    AdminLoginRequest,
    AdminRefreshRequest,
    ForgotPasswordRequest,
    KeyRotateRequest,
    KeyRotateResponse,
    LoginRequest,
    LogoutAllRequest,
    MFAChallengeRequest,
    MFAEnrollResponse,
    MFARequiredResponse,
    MFASecondFactorRequest,
    MFAVerifyRequest,
    MFAVerifyResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionLoginRequest,
    VerifyEmailStartRequest,
)
from hellojohn.jwt.issuer import key_owner
from hellojohn.jwt.keystore import GLOBAL_OWNER
from hellojohn.logging import get_logger
from hellojohn.service import authorize as authz
from hellojohn.service.admin import AdminPrincipal
from hellojohn.service.errors import BadRequestError, UnsupportedGrantTypeError
from hellojohn.service.login import SESSION_COOKIE
from hellojohn.service.mfa import TRUST_COOKIE
from hellojohn.service.runtime import get_runtime
from hellojohn.store.adapters.fs import is_valid_slug
from hellojohn.store.factory import TenantDataAccess

logger = get_logger(__name__)

router = APIRouter()

DISCOVERY_CACHE_CONTROL = "public, max-age=600"
NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

TokenUser = Tuple[TenantDataAccess, Dict[str, Any]]


def _secure_cookies() -> bool:
    return get_runtime().settings.base_url.startswith("https://")


def _set_cookie(response: Response, name: str, value: str, *, max_age: int) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=_secure_cookies(),
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _no_store_json(content: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=content, status_code=status_code, headers=dict(NO_STORE))


def _jwks_response(body: bytes) -> Response:
    return Response(content=body, media_type="application/json", headers={"Cache-Control": "no-store"})


# discovery


@router.api_route("/.well-known/openid-configuration", methods=["GET", "HEAD"], tags=["discovery"])
async def openid_configuration():
    runtime = get_runtime()
    return JSONResponse(
        runtime.discovery.global_document(),
        headers={"Cache-Control": DISCOVERY_CACHE_CONTROL},
    )


@router.api_route(
    "/t/{slug}/.well-known/openid-configuration", methods=["GET", "HEAD"], tags=["discovery"]
)
async def tenant_openid_configuration(slug: str = Path(..., max_length=64)):
    """Tenant discovery document.

    Raises:
        404: If the tenant does not exist
    """
    runtime = get_runtime()
    return JSONResponse(
        runtime.discovery.tenant_document(slug), headers={"Cache-Control": "no-store"}
    )


@router.api_route("/.well-known/jwks.json", methods=["GET", "HEAD"], tags=["discovery"])
async def global_jwks():
    runtime = get_runtime()
    return _jwks_response(runtime.jwks.get(GLOBAL_OWNER))


@router.api_route("/.well-known/jwks/{slug}.json", methods=["GET", "HEAD"], tags=["discovery"])
async def tenant_jwks(slug: str):
    """Published keys for a tenant, including grace keys.

    Raises:
        400: If the slug is malformed
        404: If the tenant does not exist
    """
    if not is_valid_slug(slug):
        raise BadRequestError("invalid slug", detail=slug[:64])
    runtime = get_runtime()
    tenant = runtime.dal.resolve_tenant(slug)
    return _jwks_response(runtime.jwks.get(key_owner(tenant.slug, tenant.settings)))


# oauth2


@router.get("/oauth2/authorize", tags=["oauth2"])
async def authorize(
    request: Request,
    response_type: str = Query(""),
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
    scope: str = Query(""),
    state: str = Query(""),
    nonce: str = Query(""),
    code_challenge: str = Query(""),
    code_challenge_method: str = Query(""),
    prompt: str = Query(""),
    authorization: Optional[str] = Header(None),
    sid: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    mfa_trust: Optional[str] = Cookie(None, alias=TRUST_COOKIE),
):
    """Authorization-code endpoint with mandatory PKCE S256.

    Redirects back to the client with ``code`` and ``state``, redirects to the
    login UI when no session is present, or answers with a JSON
    ``mfa_required`` body when a second factor is needed.

    Raises:
        400: If the request fails validation before the redirect URI is trusted
    """
    runtime = get_runtime()
    req = authz.AuthorizeRequest(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
        nonce=nonce,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        prompt=prompt,
    )
    result = await runtime.authorize.authorize(
        req,
        session_cookie=sid,
        authorization=authorization,
        trust_cookie=mfa_trust,
        request_url=str(request.url),
    )
    if result.kind == authz.MFA_REQUIRED:
        body = MFARequiredResponse(mfa_token=result.mfa_token)
        return _no_store_json(body.model_dump())
    return RedirectResponse(result.location(), status_code=302, headers={"Cache-Control": "no-store"})


@router.post("/oauth2/token", tags=["oauth2"])
async def token(
    grant_type: str = Form(""),
    code: str = Form(""),
    redirect_uri: str = Form(""),
    client_id: str = Form(""),
    code_verifier: str = Form(""),
    refresh_token: str = Form(""),
    client_secret: str = Form(""),
    scope: str = Form(""),
):
    """Token endpoint for the ``authorization_code``, ``refresh_token`` and
    ``client_credentials`` grants.

    Raises:
        400: ``invalid_request``, ``invalid_client``, ``invalid_grant``, ``invalid_scope``
            or ``unsupported_grant_type``
        401: If a confidential client fails to authenticate, or a public client asks
            for ``client_credentials``
    """
    runtime = get_runtime()
    if grant_type == "authorization_code":
        issued = await runtime.tokens.exchange_code(
            code=code,
            redirect_uri=redirect_uri,
            client_id=client_id,
            code_verifier=code_verifier,
        )
    elif grant_type == "refresh_token":
        issued = await runtime.tokens.refresh(refresh_token=refresh_token, client_id=client_id)
    elif grant_type == "client_credentials":
        issued = await runtime.tokens.client_credentials(
            client_id=client_id, client_secret=client_secret, scope=scope
        )
    else:
        raise UnsupportedGrantTypeError("unsupported grant_type", detail=grant_type[:64] or None)
    return _no_store_json(issued.as_dict())


@router.post("/oauth2/introspect", tags=["oauth2"])
async def introspect(
    request: Request,
    token: str = Form(""),
    token_type_hint: str = Form(""),
    client_id: str = Form(""),
    include_sys: bool = Query(False),
):
    runtime = get_runtime()
    body = await runtime.introspection.introspect(
        token,
        client_id=client_id or None,
        include_sys=include_sys,
        tenant_hint=header_tenant_ref(request),
    )
    return _no_store_json(body)


@router.post("/oauth2/revoke", tags=["oauth2"])
async def revoke(
    token: str = Form(""),
    token_type_hint: str = Form(""),
    client_id: str = Form(""),
):
    """Revoke a refresh token; the answer is 200 whether or not the token existed."""
    runtime = get_runtime()
    await runtime.tokens.revoke(token, client_id=client_id or None)
    return Response(status_code=200)


@router.api_route("/userinfo", methods=["GET", "POST"], tags=["oauth2"])
async def userinfo(request: Request, authorization: Optional[str] = Header(None)):
    """OIDC userinfo for the bearer access token.

    Raises:
        401: With a ``WWW-Authenticate`` challenge if the token is missing or invalid
    """
    runtime = get_runtime()
    claims = await runtime.userinfo.userinfo(authorization, tenant_hint=header_tenant_ref(request))
    return _no_store_json(claims)


# password login and registration


@router.post("/v2/auth/login", tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    mfa_trust: Optional[str] = Cookie(None, alias=TRUST_COOKIE),
):
    """Password login returning tokens, or ``mfa_required`` with an ``mfa_token``.

    Raises:
        401: If credentials are invalid
        403: If the user is disabled or the client does not allow password login
        503: If the tenant has no database
    """
    runtime = get_runtime()
    tenant_ref = await require_tenant_ref(request, body.tenant_id)
    result = await runtime.login.login(
        tenant_ref=tenant_ref,
        client_id=body.client_id,
        email=body.email,
        password=body.password,
        trust_cookie=mfa_trust,
    )
    return _no_store_json(result)


@router.post("/v2/auth/register", tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a user with a password identity.

    Raises:
        400: If the password is rejected
        409: If the email is already registered
    """
    runtime = get_runtime()
    tenant_ref = await require_tenant_ref(request, body.tenant_id)
    result = await runtime.login.register(
        tenant_ref=tenant_ref,
        client_id=body.client_id,
        email=body.email,
        password=body.password,
        name=body.name,
        custom_fields=body.custom_fields,
    )
    return _no_store_json(result, status_code=201)


@router.post("/v2/auth/logout-all", tags=["auth"])
async def logout_all(body: LogoutAllRequest, principal: TokenUser = Depends(get_token_user)):
    runtime = get_runtime()
    tda, claims = principal
    revoked = await runtime.tokens.logout_all(tda, claims["sub"], body.client_id or None)
    return _no_store_json({"revoked": revoked})


# email verification and password reset


@router.post("/v2/auth/forgot", tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    """Mail a password reset link; answers the same whether or not the email is registered."""
    runtime = get_runtime()
    tenant_ref = await require_tenant_ref(request, body.tenant_id)
    await runtime.email_flows.forgot_password(tenant_ref=tenant_ref, client_id=body.client_id, email=body.email)
    return _no_store_json({"status": "ok"})


@router.post("/v2/auth/reset", tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    """Set a new password from a reset link.

    Raises:
        400: ``invalid_token`` if the link is unknown, used or expired, ``weak_password``
            if the password is rejected
    """
    runtime = get_runtime()
    tenant_ref = await require_tenant_ref(request, body.tenant_id)
    issued = await runtime.email_flows.reset_password(
        tenant_ref=tenant_ref,
        client_id=body.client_id,
        token=body.token,
        new_password=body.new_password,
    )
    if not issued:
        return Response(status_code=204, headers={"Cache-Control": "no-store"})
    return _no_store_json(issued)


@router.post("/v2/auth/verify-email/start", tags=["auth"])
async def verify_email_start(
    body: VerifyEmailStartRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    tenant_ref = await resolve_tenant_ref(request, body.tenant_id)
    await runtime.email_flows.start_verification(
        tenant_ref=tenant_ref,
        client_id=body.client_id,
        email=body.email,
        authorization=authorization,
        redirect_uri=body.redirect_uri,
    )
    return Response(status_code=204)


@router.get("/v2/auth/verify-email", tags=["auth"])
async def verify_email_confirm(
    request: Request,
    token: str = Query(""),
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
):
    """Confirm an email verification link, redirecting back to the client when asked to."""
    runtime = get_runtime()
    tenant_ref = await require_tenant_ref(request)
    location = await runtime.email_flows.confirm_verification(
        token=token,
        tenant_ref=tenant_ref,
        client_id=client_id or None,
        redirect_uri=redirect_uri,
    )
    if location:
        return RedirectResponse(location, status_code=302, headers={"Cache-Control": "no-store"})
    return _no_store_json({"status": "verified"})


@router.post("/v2/session/login", tags=["auth"])
async def session_login(body: SessionLoginRequest, request: Request):
    """Open a browser session and set the ``sid`` cookie read by the authorize endpoint."""
    runtime = get_runtime()
    tenant_ref = await require_tenant_ref(request, body.tenant_id)
    sid, max_age = await runtime.login.session_login(
        tenant_ref=tenant_ref,
        client_id=body.client_id,
        email=body.email,
        password=body.password,
    )
    response = Response(status_code=204, headers={"Cache-Control": "no-store"})
    _set_cookie(response, SESSION_COOKIE, sid, max_age=max_age)
    return response


@router.post("/v2/session/logout", tags=["auth"])
async def session_logout(
    request: Request,
    sid: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    tenant_ref = await require_tenant_ref(request)
    await runtime.login.session_logout(tenant_ref=tenant_ref, sid=sid)
    response = Response(status_code=204)
    response.delete_cookie(SESSION_COOKIE, path="/")
    return response


# mfa


@router.post("/v2/mfa/totp/enroll", tags=["mfa"])
async def mfa_enroll(principal: TokenUser = Depends(get_token_user)):
    runtime = get_runtime()
    tda, claims = principal
    result = await runtime.mfa.enroll(tda, claims["sub"])
    return _no_store_json(MFAEnrollResponse(**result).model_dump())


@router.post("/v2/mfa/totp/verify", tags=["mfa"])
async def mfa_verify(body: MFAVerifyRequest, principal: TokenUser = Depends(get_token_user)):
    """Confirm enrollment; recovery codes are returned on the first success only.

    Raises:
        400: If no enrollment exists
        401: If the code is wrong or replayed
    """
    runtime = get_runtime()
    tda, claims = principal
    result = await runtime.mfa.verify(tda, claims["sub"], body.code)
    return _no_store_json(MFAVerifyResponse(**result).model_dump(exclude_none=True))


@router.post("/v2/mfa/totp/challenge", tags=["mfa"])
async def mfa_challenge(body: MFAChallengeRequest):
    """Complete a pending MFA step-up and issue tokens.

    Raises:
        400: Unless exactly one of ``code`` or ``recovery`` is supplied
        401: ``invalid_mfa_code`` for a wrong code or an unknown or consumed ``mfa_token``
    """
    runtime = get_runtime()
    outcome = await runtime.mfa.challenge(
        body.mfa_token,
        code=body.code,
        recovery=body.recovery,
        remember_device=body.remember_device,
    )
    response = _no_store_json(outcome.tokens.as_dict())
    if outcome.trust_token:
        _set_cookie(response, TRUST_COOKIE, outcome.trust_token, max_age=outcome.trust_max_age)
    return response


@router.post("/v2/mfa/totp/disable", tags=["mfa"])
async def mfa_disable(body: MFASecondFactorRequest, principal: TokenUser = Depends(get_token_user)):
    runtime = get_runtime()
    tda, claims = principal
    result = await runtime.mfa.disable(
        tda, claims["sub"], password=body.password, code=body.code, recovery=body.recovery
    )
    return _no_store_json(result)


@router.post("/v2/mfa/recovery/rotate", tags=["mfa"])
async def mfa_rotate_recovery(
    body: MFASecondFactorRequest, principal: TokenUser = Depends(get_token_user)
):
    runtime = get_runtime()
    tda, claims = principal
    result = await runtime.mfa.rotate_recovery(
        tda, claims["sub"], password=body.password, code=body.code, recovery=body.recovery
    )
    return _no_store_json(result)


# admin


@router.post("/v2/admin/login", tags=["admin"])
async def admin_login(body: AdminLoginRequest):
    runtime = get_runtime()
    return _no_store_json(await runtime.admin.login(body.email, body.password))


@router.post("/v2/admin/refresh", tags=["admin"])
async def admin_refresh(body: AdminRefreshRequest):
    runtime = get_runtime()
    return _no_store_json(await runtime.admin.refresh(body.refresh_token))


@router.post("/v2/admin/keys/rotate", tags=["admin"])
async def admin_rotate_keys(body: KeyRotateRequest, principal: AdminPrincipal = Depends(get_admin)):
    """Rotate a signing key; the previous key stays in JWKS for ``grace_seconds``.

    Raises:
        403: If the caller may not manage the tenant
        503: If this node is not the cluster leader
    """
    runtime = get_runtime()
    result = runtime.admin.rotate_keys(principal, tenant=body.tenant, grace_seconds=body.grace_seconds)
    return _no_store_json(KeyRotateResponse(**result).model_dump())


# health


@router.get("/readyz", tags=["health"])
async def readyz():
    runtime = get_runtime()
    status_code, body = await runtime.readiness.check()
    headers = {
        "Cache-Control": "no-store",
        "X-Service-Version": runtime.settings.service_version,
        "X-Service-Commit": runtime.settings.service_commit,
    }
    return JSONResponse(content=body, status_code=status_code, headers=headers)
