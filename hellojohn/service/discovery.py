from __future__ import annotations

from typing import Any, Dict, List

from hellojohn.config import Settings
from hellojohn.jwt import jws
from hellojohn.jwt.issuer import resolve_issuer
from hellojohn.service.tokens import TokenService
from hellojohn.store.models import SYSTEM_SCOPES

CLAIMS_SUPPORTED = [
    "sub",
    "iss",
    "aud",
    "exp",
    "iat",
    "nbf",
    "azp",
    "nonce",
    "at_hash",
    "tid",
    "amr",
    "acr",
    "scp",
    "email",
    "email_verified",
    "name",
    "given_name",
    "family_name",
    "picture",
    "locale",
]


def _document(base: str, issuer: str, jwks_uri: str, scopes: List[str]) -> Dict[str, Any]:
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{base}/oauth2/authorize",
        "token_endpoint": f"{base}/oauth2/token",
        "userinfo_endpoint": f"{base}/userinfo",
        "jwks_uri": jwks_uri,
        "introspection_endpoint": f"{base}/oauth2/introspect",
        "revocation_endpoint": f"{base}/oauth2/revoke",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token", "client_credentials"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [jws.ALG],
        "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
        "code_challenge_methods_supported": ["S256"],
        "scopes_supported": scopes,
        "claims_supported": list(CLAIMS_SUPPORTED),
    }


class DiscoveryService:
    """OpenID Provider metadata; endpoints stay global, issuer and JWKS vary per tenant."""

    def __init__(self, tokens: TokenService, settings: Settings):
        self.tokens = tokens
        self.settings = settings

    def global_document(self) -> Dict[str, Any]:
        base = self.settings.base_url
        return _document(
            base,
            base,
            f"{base}/.well-known/jwks.json",
            list(SYSTEM_SCOPES) + ["offline_access"],
        )

    def tenant_document(self, slug: str) -> Dict[str, Any]:
        dal = self.tokens.dal
        tenant = dal.resolve_tenant(slug)
        base = self.settings.base_url
        scopes = list(SYSTEM_SCOPES)
        for scope in dal.control.scopes.list(tenant.slug):
            if scope.name not in scopes:
                scopes.append(scope.name)
        return _document(
            base,
            resolve_issuer(base, tenant.slug, tenant.settings),
            f"{base}/.well-known/jwks/{tenant.slug}.json",
            scopes,
        )
