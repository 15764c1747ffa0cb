"""TOTP enrollment, verification, step-up challenges and recovery codes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from hellojohn.config import Settings
from hellojohn.logging import get_logger
from hellojohn.security import totp
from hellojohn.security.passwords import PasswordService
from hellojohn.security.secretbox import MFA_PREFIX, SecretBox, SecretBoxError
from hellojohn.security.tokens import opaque_token, sha256_b64url
from hellojohn.service.errors import (
    AuthenticationError,
    BadRequestError,
    InvalidMFACodeError,
    NotFoundError,
    ServerError,
    ServiceUnavailableError,
)
from hellojohn.service.tokens import IssuedTokens, TokenService
from hellojohn.store.errors import NotFound
from hellojohn.store.factory import DALFactory, TenantDataAccess
from hellojohn.store.models import MFATOTP, MFAChallenge, User, utcnow

logger = get_logger(__name__)

MFA_CHALLENGE_TTL_SECONDS = 5 * 60
MFA_TOKEN_KEY_PREFIX = "mfa:token:"
TRUST_COOKIE = "mfa_trust"


async def create_challenge(cache, challenge: MFAChallenge) -> str:
    """Park a pending step-up in the cache and return its opaque ``mfa_token``."""
    token = opaque_token(24)
    await cache.set_json(MFA_TOKEN_KEY_PREFIX + token, challenge.to_dict(), MFA_CHALLENGE_TTL_SECONDS)
    logger.info("mfa_challenge_created", tenant_id=challenge.tenant_id, client_id=challenge.client_id)
    return token


@dataclass
class ChallengeOutcome:
    tokens: IssuedTokens
    trust_token: Optional[str] = None
    trust_max_age: int = 0


class MFAService:
    def __init__(
        self,
        dal: DALFactory,
        tokens: TokenService,
        passwords: PasswordService,
        settings: Settings,
        global_cache,
    ):
        self.dal = dal
        self.tokens = tokens
        self.passwords = passwords
        self.settings = settings
        self.global_cache = global_cache
        key = settings.secretbox_key
        self._box = SecretBox(key, prefix=MFA_PREFIX) if key else None

    def _require_box(self) -> SecretBox:
        if self._box is None:
            raise ServiceUnavailableError("mfa unavailable", detail="SECRETBOX_MASTER_KEY is not configured")
        return self._box

    @staticmethod
    def _repo(tda: TenantDataAccess):
        tda.require_db()
        return tda.mfa

    def _user(self, tda: TenantDataAccess, user_id: str) -> User:
        user = tda.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _secret(self, record: MFATOTP) -> str:
        try:
            return self._require_box().decrypt(record.secret_encrypted)
        except SecretBoxError as exc:
            logger.error("mfa_secret_decrypt_failed", user_id=record.user_id, error=str(exc))
            raise ServerError("mfa secret unreadable") from exc

    def _check_code(self, tda: TenantDataAccess, record: MFATOTP, code: str) -> None:
        """Verify a TOTP code and advance the replay marker to the matched step."""
        last_counter = -1
        if record.last_used_at is not None:
            last_counter = totp.counter_for(record.last_used_at.timestamp())
        ok, counter = totp.verify(
            self._secret(record), code, window=self.settings.mfa_totp_window, last_counter=last_counter
        )
        if not ok:
            logger.warning("mfa_code_rejected", tenant=tda.slug, user_id=record.user_id)
            raise InvalidMFACodeError("invalid code")
        used_at = datetime.fromtimestamp(counter * totp.PERIOD, tz=timezone.utc)
        tda.mfa.update_totp_used_at(record.user_id, used_at)

    def _check_second_factor(
        self, tda: TenantDataAccess, user_id: str, code: Optional[str], recovery: Optional[str]
    ) -> str:
        if bool(code) == bool(recovery):
            raise BadRequestError("invalid request", detail="exactly one of code or recovery is required")
        record = tda.mfa.get_totp(user_id)
        if record is None or record.confirmed_at is None:
            raise InvalidMFACodeError("mfa is not enabled", detail="invalid_mfa_state")
        if recovery:
            code_hash = sha256_b64url(totp.normalize_recovery_code(recovery))
            if not tda.mfa.use_recovery_code(user_id, code_hash, utcnow()):
                logger.warning("mfa_recovery_rejected", tenant=tda.slug, user_id=user_id)
                raise InvalidMFACodeError("invalid recovery code")
            return "recovery"
        self._check_code(tda, record, code or "")
        return "totp"

    def _check_password(self, tda: TenantDataAccess, user_id: str, password: str) -> None:
        if not password:
            raise BadRequestError("invalid request", detail="password is required")
        stored = tda.users.get_password_hash(user_id)
        if not stored or not self.passwords.verify(stored, password):
            raise AuthenticationError("invalid credentials", error_code="invalid_credentials")

    def _new_recovery_codes(self, tda: TenantDataAccess, user_id: str) -> List[str]:
        codes = totp.generate_recovery_codes()
        tda.mfa.replace_recovery_codes(user_id, [sha256_b64url(c) for c in codes])
        return codes

    async def enroll(self, tda: TenantDataAccess, user_id: str) -> Dict[str, str]:
        repo = self._repo(tda)
        user = self._user(tda, user_id)
        secret = totp.generate_secret()
        repo.upsert_totp(user_id, self._require_box().encrypt(secret))
        logger.info("mfa_enrolled", tenant=tda.slug, user_id=user_id)
        return {
            "secret_base32": secret,
            "otpauth_url": totp.otpauth_url(self.settings.mfa_totp_issuer, user.email, secret),
        }

    async def verify(self, tda: TenantDataAccess, user_id: str, code: str) -> Dict[str, Any]:
        """Check a code; the first success confirms enrollment and returns recovery codes once."""
        repo = self._repo(tda)
        record = repo.get_totp(user_id)
        if record is None:
            raise BadRequestError("mfa not initialized", detail="enroll first", error_code="mfa_not_initialized")
        self._check_code(tda, record, code)
        if record.confirmed_at is not None:
            return {"enabled": True}
        repo.confirm_totp(user_id, utcnow())
        codes = self._new_recovery_codes(tda, user_id)
        logger.info("mfa_confirmed", tenant=tda.slug, user_id=user_id)
        return {"enabled": True, "recovery_codes": codes}

    async def challenge(
        self,
        mfa_token: str,
        *,
        code: Optional[str] = None,
        recovery: Optional[str] = None,
        remember_device: bool = False,
    ) -> ChallengeOutcome:
        if not mfa_token:
            raise BadRequestError("invalid request", detail="mfa_token is required")
        if bool(code) == bool(recovery):
            raise BadRequestError("invalid request", detail="exactly one of code or recovery is required")
        key = MFA_TOKEN_KEY_PREFIX + mfa_token
        raw = await self.global_cache.get_json(key)
        if raw is None:
            raise InvalidMFACodeError("invalid or expired mfa_token")
        try:
            pending = MFAChallenge.from_dict(raw)
        except KeyError as exc:
            await self.global_cache.delete(key)
            raise InvalidMFACodeError("invalid or expired mfa_token") from exc
        try:
            tda = self.dal.for_tenant(pending.tenant_id)
        except NotFound as exc:
            raise InvalidMFACodeError("invalid or expired mfa_token") from exc
        self._repo(tda)
        method = self._check_second_factor(tda, pending.user_id, code, recovery)

        if await self.global_cache.pop_json(key) is None:
            raise InvalidMFACodeError("invalid or expired mfa_token")

        user = self.tokens.active_user(tda, pending.user_id)
        amr = [a for a in (pending.amr or ["pwd"]) if a != "mfa"] + ["mfa"]
        issued = await self.tokens.issue(
            tda,
            user=user,
            client_id=pending.client_id,
            scopes=pending.scopes or ["openid"],
            amr=amr,
            with_id_token=True,
        )
        outcome = ChallengeOutcome(tokens=issued)
        if remember_device:
            device = opaque_token(32)
            ttl = self.settings.mfa_remember_ttl_seconds
            tda.mfa.add_trusted_device(
                user.id, sha256_b64url(device), utcnow() + timedelta(seconds=ttl)
            )
            outcome.trust_token = device
            outcome.trust_max_age = ttl
        logger.info(
            "mfa_challenge_consumed",
            tenant=tda.slug,
            client_id=pending.client_id,
            user_id=user.id,
            method=method,
            remember_device=remember_device,
        )
        return outcome

    async def disable(
        self,
        tda: TenantDataAccess,
        user_id: str,
        *,
        password: str,
        code: Optional[str] = None,
        recovery: Optional[str] = None,
    ) -> Dict[str, bool]:
        repo = self._repo(tda)
        self._check_password(tda, user_id, password)
        self._check_second_factor(tda, user_id, code, recovery)
        repo.disable_totp(user_id)
        logger.info("mfa_disabled", tenant=tda.slug, user_id=user_id)
        return {"disabled": True}

    async def rotate_recovery(
        self,
        tda: TenantDataAccess,
        user_id: str,
        *,
        password: str,
        code: Optional[str] = None,
        recovery: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._repo(tda)
        self._check_password(tda, user_id, password)
        self._check_second_factor(tda, user_id, code, recovery)
        codes = self._new_recovery_codes(tda, user_id)
        logger.info("mfa_recovery_rotated", tenant=tda.slug, user_id=user_id)
        return {"rotated": True, "recovery_codes": codes}

    def requires_step_up(self, tda: TenantDataAccess, user_id: str) -> bool:
        if tda.mfa is None:
            return False
        record = tda.mfa.get_totp(user_id)
        return record is not None and record.confirmed_at is not None

    def is_trusted(self, tda: TenantDataAccess, user_id: str, trust_token: Optional[str]) -> bool:
        if not trust_token or tda.mfa is None:
            return False
        return tda.mfa.is_trusted_device(user_id, sha256_b64url(trust_token), utcnow())

    async def start_challenge(self, challenge: MFAChallenge) -> str:
        return await create_challenge(self.global_cache, challenge)


__all__ = ["MFAService", "ChallengeOutcome", "create_challenge", "TRUST_COOKIE"]
