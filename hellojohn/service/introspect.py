"""RFC 7662 token introspection for access JWTs and opaque refresh tokens."""

from __future__ import annotations

from typing import Any, Dict, Optional

from hellojohn.jwt import jws
from hellojohn.logging import get_logger
from hellojohn.security.tokens import sha256_hex
from hellojohn.service.errors import InvalidTokenError
from hellojohn.service.tokens import TokenService
from hellojohn.store.errors import StoreError

logger = get_logger(__name__)

INACTIVE: Dict[str, Any] = {"active": False}


class IntrospectionService:
    def __init__(self, tokens: TokenService):
        self.tokens = tokens

    def _access(self, token: str, *, include_sys: bool, tenant_hint: Optional[str]) -> Dict[str, Any]:
        try:
            tda, claims = self.tokens.authenticate_bearer(f"Bearer {token}", tenant_hint=tenant_hint)
        except InvalidTokenError as exc:
            logger.info("introspect_inactive", kind="access", reason=str(exc.detail or exc.message))
            return dict(INACTIVE)
        body: Dict[str, Any] = {
            "active": True,
            "token_type": "access_token",
            "sub": claims.get("sub"),
            "client_id": claims.get("aud"),
            "scope": claims.get("scp", ""),
            "exp": claims.get("exp"),
            "iat": claims.get("iat"),
            "iss": claims.get("iss"),
            "tid": claims.get("tid"),
            "acr": claims.get("acr"),
            "amr": claims.get("amr", []),
        }
        if include_sys:
            sys_claims = (claims.get("custom") or {}).get(f"{claims.get('iss')}/claims/sys")
            if sys_claims is None:
                sys_claims = self.tokens.system_claims(tda, claims.get("sub", ""))
            body["roles"] = sys_claims.get("roles", [])
            body["perms"] = sys_claims.get("perms", [])
        return body

    def _refresh(
        self, token: str, *, client_id: Optional[str], include_sys: bool, tenant_hint: Optional[str]
    ) -> Dict[str, Any]:
        try:
            if tenant_hint:
                tda = self.tokens.dal.for_tenant(tenant_hint)
            elif client_id:
                tenant, _ = self.tokens.dal.find_client(client_id)
                tda = self.tokens.dal.for_tenant(tenant.id)
            else:
                return dict(INACTIVE)
            if not tda.has_db:
                return dict(INACTIVE)
            row = tda.tokens.get_by_hash(sha256_hex(token))
        except StoreError as exc:
            logger.info("introspect_inactive", kind="refresh", reason=exc.message)
            return dict(INACTIVE)
        if row is None or not row.is_usable() or (client_id and row.client_id != client_id):
            return dict(INACTIVE)
        body: Dict[str, Any] = {
            "active": True,
            "token_type": "refresh_token",
            "sub": row.user_id,
            "client_id": row.client_id,
            "scope": row.scope,
            "exp": int(row.expires_at.timestamp()),
            "iat": int(row.issued_at.timestamp()),
            "iss": self.tokens.issuer_for(tda),
            "tid": row.tenant_id,
        }
        if include_sys:
            sys_claims = self.tokens.system_claims(tda, row.user_id)
            body["roles"] = sys_claims["roles"]
            body["perms"] = sys_claims["perms"]
        return body

    async def introspect(
        self,
        token: str,
        *,
        client_id: Optional[str] = None,
        include_sys: bool = False,
        tenant_hint: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not token:
            return dict(INACTIVE)
        if jws.looks_like_jwt(token):
            return self._access(token, include_sys=include_sys, tenant_hint=tenant_hint)
        return self._refresh(token, client_id=client_id, include_sys=include_sys, tenant_hint=tenant_hint)
