"""Access/ID token minting, opaque refresh-token rotation and revocation."""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hellojohn.config import Settings
from hellojohn.jwt import jws
from hellojohn.jwt.issuer import key_owner, resolve_issuer
from hellojohn.jwt.keystore import Keystore
from hellojohn.logging import get_logger
from hellojohn.security.secretbox import SecretBoxError
from hellojohn.security.tokens import b64url, opaque_token, pkce_s256, sha256_b64url, sha256_hex
from hellojohn.service.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    InvalidTokenError,
    UnauthorizedClientError,
)
from hellojohn.store.errors import ClientNotFound, NotFound, StoreError
from hellojohn.store.factory import DALFactory, TenantDataAccess
from hellojohn.store.models import AuthCodePayload, OIDCClient, User, utcnow

logger = get_logger(__name__)

ACR_PASSWORD = "urn:hellojohn:loa:1"
ACR_MFA = "urn:hellojohn:loa:2"
CODE_KEY_PREFIX = "code:"


def acr_for(amr: Sequence[str]) -> str:
    return ACR_MFA if "mfa" in amr else ACR_PASSWORD


def at_hash(access_token: str) -> str:
    """Left half of the SHA-256 of the access token, base64url (OIDC Core 3.1.3.6)."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return b64url(digest[: len(digest) // 2])


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


@dataclass
class IssuedTokens:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: str = ""
    token_type: str = "Bearer"

    def as_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        if self.id_token:
            body["id_token"] = self.id_token
        if self.scope:
            body["scope"] = self.scope
        return body


class TokenService:
    def __init__(self, dal: DALFactory, keystore: Keystore, settings: Settings):
        self.dal = dal
        self.keystore = keystore
        self.settings = settings

    # issuer and keys
    def issuer_for(self, tda: TenantDataAccess) -> str:
        return resolve_issuer(self.settings.base_url, tda.slug, tda.settings)

    def _owner(self, tda: TenantDataAccess) -> str:
        return key_owner(tda.slug, tda.settings)

    def refresh_ttl(self, tda: TenantDataAccess) -> int:
        return tda.settings.refresh_token_lifetime_seconds or self.settings.refresh_token_ttl_seconds

    def system_claims(self, tda: TenantDataAccess, user_id: str) -> Dict[str, Any]:
        roles: List[str] = []
        perms: List[str] = []
        if tda.rbac is not None:
            roles = tda.rbac.get_user_roles(user_id)
            perms = tda.rbac.get_user_permissions(user_id)
        is_admin = user_id in self.settings.admin_subs or "admin" in roles
        return {"roles": roles, "perms": perms, "is_admin": is_admin}

    def mint_access(
        self,
        tda: TenantDataAccess,
        *,
        user_id: str,
        client_id: str,
        scopes: Sequence[str],
        amr: Sequence[str],
        now: Optional[int] = None,
        with_system_claims: bool = True,
    ) -> Tuple[str, int]:
        issued = int(time.time()) if now is None else now
        iss = self.issuer_for(tda)
        claims: Dict[str, Any] = {
            "iss": iss,
            "sub": user_id,
            "aud": client_id,
            "iat": issued,
            "nbf": issued,
            "exp": issued + self.settings.access_token_ttl_seconds,
            "tid": tda.id,
            "amr": list(amr),
            "acr": acr_for(amr),
            "scp": " ".join(scopes),
        }
        if with_system_claims and (tda.has_db or user_id in self.settings.admin_subs):
            claims["custom"] = {f"{iss}/claims/sys": self.system_claims(tda, user_id)}
        key = self.keystore.active(self._owner(tda))
        return jws.sign(claims, key.private_key, key.kid), claims["exp"]

    def mint_id_token(
        self,
        tda: TenantDataAccess,
        *,
        user: User,
        client_id: str,
        access_token: str,
        amr: Sequence[str],
        nonce: str = "",
        scopes: Sequence[str] = (),
        now: Optional[int] = None,
    ) -> str:
        issued = int(time.time()) if now is None else now
        claims: Dict[str, Any] = {
            "iss": self.issuer_for(tda),
            "sub": user.id,
            "aud": client_id,
            "azp": client_id,
            "iat": issued,
            "exp": issued + self.settings.access_token_ttl_seconds,
            "at_hash": at_hash(access_token),
            "tid": tda.id,
            "amr": list(amr),
            "acr": acr_for(amr),
        }
        if nonce:
            claims["nonce"] = nonce
        if "email" in scopes:
            claims["email"] = user.email
            claims["email_verified"] = user.email_verified
        key = self.keystore.active(self._owner(tda))
        return jws.sign(claims, key.private_key, key.kid)

    async def issue(
        self,
        tda: TenantDataAccess,
        *,
        user: User,
        client_id: str,
        scopes: Sequence[str],
        amr: Sequence[str],
        nonce: str = "",
        with_id_token: bool = False,
        rotated_from: Optional[str] = None,
    ) -> IssuedTokens:
        """Mint an access token plus a persisted opaque refresh token."""
        tda.require_db()
        now = int(time.time())
        access, _ = self.mint_access(
            tda, user_id=user.id, client_id=client_id, scopes=scopes, amr=amr, now=now
        )
        raw_refresh = opaque_token(32)
        tda.tokens.create(
            tda.id,
            client_id,
            user.id,
            sha256_hex(raw_refresh),
            self.refresh_ttl(tda),
            rotated_from=rotated_from,
            scope=" ".join(scopes),
        )
        id_token = None
        if with_id_token and "openid" in scopes:
            id_token = self.mint_id_token(
                tda,
                user=user,
                client_id=client_id,
                access_token=access,
                amr=amr,
                nonce=nonce,
                scopes=scopes,
                now=now,
            )
        return IssuedTokens(
            access_token=access,
            expires_in=self.settings.access_token_ttl_seconds,
            refresh_token=raw_refresh,
            id_token=id_token,
            scope=" ".join(scopes),
        )

    def active_user(self, tda: TenantDataAccess, user_id: str) -> User:
        user = tda.users.get_by_id(user_id)
        if user is None or user.is_disabled():
            raise InvalidGrantError("user is not active")
        return user

    async def exchange_code(
        self,
        *,
        code: str,
        redirect_uri: str,
        client_id: str,
        code_verifier: str,
    ) -> IssuedTokens:
        if not code or not redirect_uri or not client_id or not code_verifier:
            raise InvalidRequestError(
                "missing parameters", detail="code, redirect_uri, client_id and code_verifier are required"
            )
        try:
            tenant, _client = self.dal.find_client(client_id)
        except ClientNotFound as exc:
            raise InvalidClientError("unknown client") from exc
        tda = self.dal.for_tenant(tenant.id)

        raw = await tda.cache.pop_json(CODE_KEY_PREFIX + sha256_b64url(code))
        if raw is None:
            raise InvalidGrantError("invalid authorization code")
        payload = AuthCodePayload.from_dict(raw)
        if payload.expires_at <= utcnow():
            raise InvalidGrantError("authorization code expired")
        if payload.client_id != client_id or payload.tenant_id != tda.id:
            raise InvalidGrantError("authorization code was not issued to this client")
        if payload.redirect_uri != redirect_uri:
            raise InvalidGrantError("redirect_uri mismatch")
        if payload.code_challenge_method != "S256" or not hmac.compare_digest(
            pkce_s256(code_verifier), payload.code_challenge
        ):
            raise InvalidGrantError("PKCE verification failed")

        tda.require_db()
        user = self.active_user(tda, payload.user_id)
        scopes = payload.scope.split()
        issued = await self.issue(
            tda,
            user=user,
            client_id=client_id,
            scopes=scopes,
            amr=payload.amr or ["pwd"],
            nonce=payload.nonce,
            with_id_token=True,
        )
        logger.info("code_exchanged", tenant=tda.slug, client_id=client_id, user_id=user.id)
        return issued

    async def refresh(
        self, *, refresh_token: str, client_id: str, tenant_hint: Optional[str] = None
    ) -> IssuedTokens:
        """Rotate an opaque refresh token.

        The presented row is claimed with a conditional revoke before anything
        is issued, so of two concurrent rotations of the same token only one
        gets a new pair. The new pair carries the scope granted when the chain
        started, never the client's full scope set.
        """
        if not refresh_token or not client_id:
            raise InvalidRequestError("missing parameters", detail="refresh_token and client_id are required")
        try:
            tenant, _client = self.dal.find_client(client_id)
        except ClientNotFound as exc:
            raise InvalidClientError("unknown client") from exc
        tda = self.dal.for_tenant(tenant_hint or tenant.id)
        tda.require_db()

        token_hash = sha256_hex(refresh_token)
        row = tda.tokens.get_by_hash(token_hash)
        if row is not None and row.tenant_id != tda.id:
            tda = self.dal.for_tenant(row.tenant_id)
            tda.require_db()
            row = tda.tokens.get_by_hash(token_hash)
        if row is None or not row.is_usable():
            raise InvalidGrantError("invalid refresh token")
        if row.client_id != client_id or row.tenant_id != tda.id:
            raise InvalidGrantError("refresh token was not issued to this client")
        if tda.get_client(client_id) is None:
            raise InvalidGrantError("refresh token was not issued to this client")
        user = self.active_user(tda, row.user_id)

        if not tda.tokens.revoke(row.id):
            logger.warning("refresh_reuse_rejected", tenant=tda.slug, client_id=client_id, token_id=row.id)
            raise InvalidGrantError("invalid refresh token")
        issued = await self.issue(
            tda,
            user=user,
            client_id=client_id,
            scopes=row.scope.split(),
            amr=["refresh"],
            rotated_from=row.id,
        )
        logger.info("refresh_rotated", tenant=tda.slug, client_id=client_id, user_id=user.id)
        return issued

    def _client_secret(self, client: OIDCClient) -> str:
        if client.secret:
            return client.secret
        if not client.secret_enc or self.dal.secretbox is None:
            return ""
        try:
            return self.dal.secretbox.decrypt(client.secret_enc)
        except SecretBoxError as exc:
            logger.error("client_secret_decrypt_failed", client_id=client.client_id, error=str(exc))
            return ""

    async def client_credentials(
        self, *, client_id: str, client_secret: str, scope: str = "", tenant_hint: Optional[str] = None
    ) -> IssuedTokens:
        """Machine-to-machine grant: an access token whose subject is the client itself.

        Only confidential clients qualify. No refresh token or ID token is
        issued and the tenant needs no user database.
        """
        if not client_id:
            raise InvalidRequestError("missing parameters", detail="client_id is required")
        try:
            tenant, client = self.dal.find_client(client_id)
        except ClientNotFound as exc:
            raise InvalidClientError("unknown client", status_code=401) from exc
        if tenant_hint and tenant_hint not in (tenant.id, tenant.slug):
            raise InvalidClientError("unknown client", status_code=401)
        if not client.is_confidential:
            raise UnauthorizedClientError("client is not allowed to use client_credentials")
        expected = self._client_secret(client)
        if not expected or not client_secret or not hmac.compare_digest(
            expected.encode("utf-8"), client_secret.encode("utf-8")
        ):
            logger.warning("client_credentials_rejected", tenant=tenant.slug, client_id=client_id)
            raise InvalidClientError("invalid client credentials", status_code=401)

        requested = scope.split()
        if requested:
            unknown = sorted(set(requested) - set(client.scopes))
            if unknown:
                raise InvalidScopeError("scope not allowed for client", detail={"scopes": unknown})
            scopes = list(dict.fromkeys(requested))
        else:
            scopes = list(client.scopes)

        tda = self.dal.for_tenant(tenant.id)
        access, _ = self.mint_access(
            tda,
            user_id=client_id,
            client_id=client_id,
            scopes=scopes,
            amr=["client"],
            with_system_claims=False,
        )
        logger.info("client_credentials_issued", tenant=tda.slug, client_id=client_id)
        return IssuedTokens(
            access_token=access,
            expires_in=self.settings.access_token_ttl_seconds,
            scope=" ".join(scopes),
        )

    async def revoke(
        self, token: str, *, client_id: Optional[str] = None, tenant_ref: Optional[str] = None
    ) -> bool:
        """Revoke an opaque refresh token; unknown tokens are silently ignored."""
        if not token or jws.looks_like_jwt(token):
            return False
        try:
            if tenant_ref:
                tda = self.dal.for_tenant(tenant_ref)
            elif client_id:
                tenant, _ = self.dal.find_client(client_id)
                tda = self.dal.for_tenant(tenant.id)
            else:
                return False
            tda.require_db()
            row = tda.tokens.get_by_hash(sha256_hex(token))
        except StoreError as exc:
            logger.info("revoke_lookup_skipped", client_id=client_id, error=exc.message)
            return False
        if row is None or (client_id and row.client_id != client_id):
            return False
        revoked = tda.tokens.revoke(row.id)
        logger.info("refresh_revoked", tenant=tda.slug, client_id=row.client_id, token_id=row.id)
        return revoked

    async def logout_all(
        self, tda: TenantDataAccess, user_id: str, client_id: Optional[str] = None
    ) -> int:
        tda.require_db()
        count = tda.tokens.revoke_all_for_user(user_id, client_id)
        logger.info("logout_all", tenant=tda.slug, user_id=user_id, client_id=client_id, revoked=count)
        return count

    # verification
    def verify_access(self, tda: TenantDataAccess, token: str) -> Dict[str, Any]:
        owner = self._owner(tda)
        try:
            claims = jws.verify(
                token,
                lambda kid: self.keystore.public_key(owner, kid),
                issuer=self.issuer_for(tda),
            )
        except jws.JWTError as exc:
            raise InvalidTokenError("invalid token", detail=str(exc)) from exc
        if claims.get("token_use") == "refresh":
            raise InvalidTokenError("invalid token", detail="refresh token presented as access token")
        if claims.get("tid") != tda.id:
            raise InvalidTokenError("invalid token", detail="tenant mismatch")
        return claims

    def authenticate_bearer(
        self, authorization: Optional[str], *, tenant_hint: Optional[str] = None
    ) -> Tuple[TenantDataAccess, Dict[str, Any]]:
        """Resolve the tenant a bearer token claims and verify the token against it."""
        token = extract_bearer(authorization)
        if not token:
            raise InvalidTokenError("missing bearer token")
        try:
            unverified = jws.unverified_claims(token)
        except jws.JWTError as exc:
            raise InvalidTokenError("invalid token", detail=str(exc)) from exc
        tenant_ref = unverified.get("tid") or tenant_hint
        if not tenant_ref:
            raise InvalidTokenError("invalid token", detail="missing tid")
        try:
            tda = self.dal.for_tenant(str(tenant_ref))
        except NotFound as exc:
            raise InvalidTokenError("invalid token", detail="unknown tenant") from exc
        if tenant_hint and tenant_hint not in (tda.id, tda.slug):
            raise InvalidTokenError("invalid token", detail="tenant mismatch")
        return tda, self.verify_access(tda, token)
