"""Compact JWS with EdDSA (Ed25519) signatures."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from hellojohn.logging import get_logger
from hellojohn.security.tokens import b64url, b64url_decode

logger = get_logger(__name__)

ALG = "EdDSA"


class JWTError(Exception):
    """The token is malformed, badly signed, expired or not meant for us."""


def _segment(data: Dict[str, Any]) -> str:
    return b64url(json.dumps(data, separators=(",", ":")).encode())


def sign(claims: Dict[str, Any], private_key: Ed25519PrivateKey, kid: str, *, typ: str = "JWT") -> str:
    header = {"alg": ALG, "kid": kid, "typ": typ}
    signing_input = f"{_segment(header)}.{_segment(claims)}"
    signature = private_key.sign(signing_input.encode("ascii"))
    return f"{signing_input}.{b64url(signature)}"


def looks_like_jwt(token: str) -> bool:
    return token.count(".") == 2


def split(token: str) -> Tuple[Dict[str, Any], Dict[str, Any], bytes, bytes]:
    """Decode header and claims without verifying; returns the signing input and signature too."""
    try:
        header_b64, claims_b64, sig_b64 = token.split(".")
    except ValueError as exc:
        raise JWTError("malformed token") from exc
    try:
        header = json.loads(b64url_decode(header_b64))
        claims = json.loads(b64url_decode(claims_b64))
        signature = b64url_decode(sig_b64)
    except (ValueError, TypeError) as exc:
        raise JWTError("malformed token") from exc
    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise JWTError("malformed token")
    return header, claims, f"{header_b64}.{claims_b64}".encode("ascii"), signature


def unverified_claims(token: str) -> Dict[str, Any]:
    return split(token)[1]


def _audience_ok(aud: Any, expected: str) -> bool:
    if isinstance(aud, str):
        return aud == expected
    if isinstance(aud, list):
        return expected in aud
    return False


def verify(
    token: str,
    key_for: Callable[[str], Optional[Ed25519PublicKey]],
    *,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
    leeway: int = 30,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Verify signature and registered claims, returning the claims.

    ``key_for`` maps a ``kid`` to the public key allowed to have signed it.
    """
    header, claims, signing_input, signature = split(token)
    if header.get("alg") != ALG:
        logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
        raise JWTError("unsupported alg")
    kid = header.get("kid")
    if not kid:
        raise JWTError("missing kid")
    public_key = key_for(kid)
    if public_key is None:
        raise JWTError("unknown kid")
    try:
        public_key.verify(signature, signing_input)
    except InvalidSignature as exc:
        raise JWTError("bad signature") from exc

    current = time.time() if now is None else now
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or exp <= current - leeway:
        raise JWTError("token expired")
    nbf = claims.get("nbf")
    if isinstance(nbf, (int, float)) and nbf > current + leeway:
        raise JWTError("token not yet valid")
    if issuer is not None and claims.get("iss") != issuer:
        raise JWTError("issuer mismatch")
    if audience is not None and not _audience_ok(claims.get("aud"), audience):
        raise JWTError("audience mismatch")
    return claims


def public_jwk(public_key: Ed25519PublicKey, kid: str) -> Dict[str, str]:
    raw = public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
    return {"kty": "OKP", "crv": "Ed25519", "alg": ALG, "use": "sig", "kid": kid, "x": b64url(raw)}


def generate_keypair() -> Tuple[Ed25519PrivateKey, str, str]:
    """Fresh Ed25519 key with its PKCS8 private and SubjectPublicKeyInfo public PEMs."""
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")
    return private_key, private_pem, public_pem


def load_private_pem(pem: str) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise JWTError("signing key is not Ed25519")
    return key


def load_public_pem(pem: str) -> Ed25519PublicKey:
    key = serialization.load_pem_public_key(pem.encode("ascii"))
    if not isinstance(key, Ed25519PublicKey):
        raise JWTError("verifying key is not Ed25519")
    return key
