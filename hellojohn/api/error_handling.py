from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from hellojohn.api.schemas import ErrorBody
from hellojohn.logging import get_logger, sanitize_error_message
from hellojohn.security.secretbox import SecretBoxError
from hellojohn.service.errors import InvalidTokenError, ServiceError
from hellojohn.store.errors import (
    ConstraintViolation,
    NoDBForTenant,
    NotFound,
    NotLeader,
    PreconditionFailed,
    StoreError,
)

logger = get_logger(__name__)

USERINFO_PATH = "/userinfo"

_STATUS_TO_CODE = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    412: "precondition_failed",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    detail: dict | list | str | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Render the ``{code, message, detail}`` error envelope."""
    body = ErrorBody(code=code or _error_code_for_status(status_code), message=message, detail=detail)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def www_authenticate(description: str) -> str:
    return f'Bearer realm="userinfo", error="invalid_token", error_description="{_quote(description)}"'


def _log(request: Request, event: str, status_code: int, **fields) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers mapping service and store errors onto the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        if request.url.path == USERINFO_PATH and exc.status_code == 401:
            detail = exc.detail if isinstance(exc.detail, str) else exc.message
            headers = {"WWW-Authenticate": www_authenticate(detail)}
            code = InvalidTokenError.error_code
        else:
            code = exc.error_code
        return error_response(exc.status_code, exc.message, exc.detail, code=code, headers=headers)

    @app.exception_handler(NoDBForTenant)
    async def handle_no_db(request: Request, exc: NoDBForTenant):
        _log(request, "tenant_without_db", 503, detail=exc.detail)
        return error_response(
            503, "service unavailable", "tenant has no database configured", code="service_unavailable"
        )

    @app.exception_handler(NotLeader)
    async def handle_not_leader(request: Request, exc: NotLeader):
        _log(request, "not_leader", 503, detail=exc.detail)
        return error_response(503, exc.message, exc.detail, code="not_leader")

    @app.exception_handler(NotFound)
    async def handle_not_found(request: Request, exc: NotFound):
        _log(request, "not_found", 404, message=exc.message, detail=exc.detail)
        return error_response(404, exc.message, exc.detail, code="not_found")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log(request, "constraint_violation", 409, message=exc.message, detail=exc.detail)
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(PreconditionFailed)
    async def handle_precondition_failed(request: Request, exc: PreconditionFailed):
        _log(request, "precondition_failed", 412, message=exc.message)
        return error_response(412, exc.message, exc.detail, code="precondition_failed")

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        logger.error(
            "store_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(exc.message),
        )
        return error_response(500, "internal server error", code="server_error")

    @app.exception_handler(SecretBoxError)
    async def handle_secretbox_error(request: Request, exc: SecretBoxError):
        logger.error("secretbox_error", path=request.url.path, method=request.method)
        return error_response(500, "internal server error", code="server_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
        ]
        _log(request, "request_validation_error", 400, errors=errors)
        return error_response(400, "invalid request", errors, code="bad_request")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        detail = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 400:
            _log(request, "http_error", exc.status_code, message=message)
        return error_response(exc.status_code, message, detail, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return error_response(500, "internal server error", code="server_error")
