from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MAX_STRING_LENGTH = 4096


def _strip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip()


class ErrorBody(BaseModel):
    """Error envelope rendered for every failed request."""

    code: str
    message: str
    detail: Optional[Any] = None


class _TenantScoped(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[str] = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("tenant_id", "tenant"),
        description="Tenant UUID or slug",
    )
    client_id: str = Field(..., min_length=1, max_length=256)

    @field_validator("tenant_id", "client_id")
    @classmethod
    def _strip_ids(cls, value: Optional[str]) -> Optional[str]:
        return _strip(value)


class LoginRequest(_TenantScoped):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class RegisterRequest(_TenantScoped):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)
    name: str = Field(default="", max_length=256)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class SessionLoginRequest(LoginRequest):
    pass


class ForgotPasswordRequest(_TenantScoped):
    email: str = Field(..., max_length=320)


class ResetPasswordRequest(_TenantScoped):
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., max_length=MAX_STRING_LENGTH)


class VerifyEmailStartRequest(BaseModel):
    """Either a bearer token or ``tenant_id``, ``client_id`` and ``email``."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: Optional[str] = Field(
        default=None,
        max_length=128,
        validation_alias=AliasChoices("tenant_id", "tenant"),
    )
    client_id: Optional[str] = Field(default=None, max_length=256)
    email: Optional[str] = Field(default=None, max_length=320)
    redirect_uri: str = Field(default="", max_length=2048)


class LogoutAllRequest(BaseModel):
    client_id: Optional[str] = Field(default=None, max_length=256)


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., max_length=16)


class MFAChallengeRequest(BaseModel):
    mfa_token: str = Field(default="", max_length=512)
    code: Optional[str] = Field(default=None, max_length=16)
    recovery: Optional[str] = Field(default=None, max_length=64)
    remember_device: bool = False


class MFASecondFactorRequest(BaseModel):
    """Password plus a TOTP code or a recovery code."""

    password: str = Field(default="", max_length=MAX_STRING_LENGTH)
    code: Optional[str] = Field(default=None, max_length=16)
    recovery: Optional[str] = Field(default=None, max_length=64)


class AdminLoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=MAX_STRING_LENGTH)


class AdminRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=MAX_STRING_LENGTH)


class KeyRotateRequest(BaseModel):
    tenant: Optional[str] = Field(default=None, max_length=128)
    grace_seconds: Optional[int] = Field(default=None, ge=0)


class MFARequiredResponse(BaseModel):
    status: str = "mfa_required"
    mfa_required: bool = True
    mfa_token: str


class MFAEnrollResponse(BaseModel):
    secret_base32: str
    otpauth_url: str


class MFAVerifyResponse(BaseModel):
    enabled: bool
    recovery_codes: Optional[List[str]] = None


class KeyRotateResponse(BaseModel):
    kid: str
    tenant: Optional[str] = None
    grace_seconds: int
