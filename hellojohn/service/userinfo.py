from __future__ import annotations

from typing import Any, Dict, Optional

from hellojohn.logging import get_logger
from hellojohn.service.errors import InvalidTokenError
from hellojohn.service.tokens import TokenService

logger = get_logger(__name__)

_PROFILE_CLAIMS = ("name", "given_name", "family_name", "picture", "locale")


class UserinfoService:
    def __init__(self, tokens: TokenService):
        self.tokens = tokens

    async def userinfo(self, authorization: Optional[str], *, tenant_hint: Optional[str] = None) -> Dict[str, Any]:
        """Standard claims for the bearer's user, filtered by the token's scopes."""
        tda, claims = self.tokens.authenticate_bearer(authorization, tenant_hint=tenant_hint)
        scopes = str(claims.get("scp") or "").split()
        body: Dict[str, Any] = {"sub": claims["sub"]}
        if not tda.has_db:
            return body
        user = tda.users.get_by_id(claims["sub"])
        if user is None or user.is_disabled():
            logger.warning("userinfo_user_inactive", tenant=tda.slug, user_id=claims["sub"])
            raise InvalidTokenError("invalid token", detail="user is not active")
        if "profile" in scopes:
            for name in _PROFILE_CLAIMS:
                value = getattr(user, name)
                if value:
                    body[name] = value
        if "email" in scopes:
            body["email"] = user.email
            body["email_verified"] = user.email_verified
        return body
