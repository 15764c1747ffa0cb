from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and the stable wire
    ``error_code`` rendered in the ``{code, message, detail}`` envelope.
    """

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict | str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail


class BadRequestError(ServiceError):
    """Request is malformed or invalid (400)."""
    status_code = 400
    error_code = "bad_request"


class InvalidRequestError(BadRequestError):
    error_code = "invalid_request"


class InvalidClientError(BadRequestError):
    error_code = "invalid_client"


class InvalidGrantError(BadRequestError):
    error_code = "invalid_grant"


class UnsupportedGrantTypeError(BadRequestError):
    error_code = "unsupported_grant_type"


class InvalidScopeError(BadRequestError):
    error_code = "invalid_scope"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class InvalidMFACodeError(AuthenticationError):
    error_code = "invalid_mfa_code"


class UnauthorizedClientError(AuthenticationError):
    error_code = "unauthorized_client"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class PreconditionFailedError(ServiceError):
    status_code = 412
    error_code = "precondition_failed"


class ServiceUnavailableError(ServiceError):
    """Capability missing or node cannot serve the request (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "InvalidRequestError",
    "InvalidClientError",
    "InvalidGrantError",
    "UnsupportedGrantTypeError",
    "InvalidScopeError",
    "AuthenticationError",
    "InvalidTokenError",
    "InvalidMFACodeError",
    "UnauthorizedClientError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "PreconditionFailedError",
    "ServiceUnavailableError",
    "ServerError",
]
