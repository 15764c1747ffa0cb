from __future__ import annotations

from typing import Any, Dict, Optional

from hellojohn.logging import get_logger
from hellojohn.security.passwords import PasswordService
from hellojohn.service.errors import BadRequestError, ConflictError
from hellojohn.store.errors import InvalidConfig
from hellojohn.store.models import AdminUser

logger = get_logger(__name__)

_SPECIAL = "!@#$%^&*()_+-=[]{}|;':\",./<>?"


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from 3+ character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in _SPECIAL for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    admins,
    passwords: Optional[PasswordService],
    email: str,
    password: str,
    *,
    name: str = "",
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Create the first global admin in the control plane.

    The password is hashed before anything is persisted; without a hasher the
    call fails and nothing is written.
    """
    if passwords is None:
        raise InvalidConfig("admin bootstrap requires a password hasher")
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise BadRequestError("invalid request", detail="a valid email is required")
    if not validate_password(password or ""):
        raise BadRequestError(
            "password too weak", detail="at least 12 characters with 3+ character classes"
        )
    existing = admins.get_by_email(email)
    if existing is not None:
        raise ConflictError("admin already exists", detail={"admin_id": existing.id})
    if dry_run:
        return {"admin_id": None, "email": email, "status": "dry_run"}
    admin = admins.create(
        AdminUser(id="", email=email, password_hash=passwords.hash(password), name=name, type="global")
    )
    logger.info("admin_bootstrapped", admin_id=admin.id)
    return {"admin_id": admin.id, "email": email, "status": "created"}
