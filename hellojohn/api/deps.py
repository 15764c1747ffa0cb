"""Request-scoped helpers shared by the routers: tenant resolution and principals."""

from __future__ import annotations

import ipaddress
import json
from typing import Any, Dict, Optional, Tuple

from fastapi import Header, Request

from hellojohn.config import get_settings
from hellojohn.logging import get_logger
from hellojohn.service.admin import AdminPrincipal
from hellojohn.service.errors import BadRequestError
from hellojohn.service.runtime import get_runtime
from hellojohn.store.factory import TenantDataAccess

logger = get_logger(__name__)

TENANT_BODY_FIELDS = ("tenant_id", "tenant")
TENANT_QUERY_FIELDS = ("tenant", "tenant_id")
_BODY_METHODS = {"POST", "PUT", "PATCH"}


async def _tenant_from_body(request: Request) -> Optional[str]:
    # Starlette caches body() and form(), so the endpoint can still read them.
    if request.method not in _BODY_METHODS:
        return None
    content_type = request.headers.get("content-type", "")
    values: Dict[str, Any] = {}
    if content_type.startswith("application/json"):
        raw = await request.body()
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError:
            return None
        if isinstance(parsed, dict):
            values = parsed
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        values = dict(form)
    for field in TENANT_BODY_FIELDS:
        value = values.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _tenant_from_host(host: str, base_host: str) -> Optional[str]:
    """Slug from ``<slug>.<base_host>``; any other host names no tenant."""
    host = (host or "").split(":", 1)[0].strip().rstrip(".").lower()
    if not host or not base_host:
        return None
    try:
        ipaddress.ip_address(host)
        return None
    except ValueError:
        pass
    suffix = "." + base_host
    if not host.endswith(suffix):
        return None
    label = host[: -len(suffix)]
    if not label or "." in label:
        return None
    return label


async def resolve_tenant_ref(request: Request, body_value: Optional[str] = None) -> Optional[str]:
    """Tenant reference for a request.

    Precedence: body ``tenant_id``/``tenant``, then the ``X-Tenant-Slug`` and
    ``X-Tenant-ID`` headers, then the ``tenant``/``tenant_id`` query parameters,
    then the subdomain of a host one label under the configured base host.
    """
    if body_value and body_value.strip():
        return body_value.strip()
    from_body = await _tenant_from_body(request)
    if from_body:
        return from_body
    for header in ("X-Tenant-Slug", "X-Tenant-ID"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    for field in TENANT_QUERY_FIELDS:
        value = request.query_params.get(field)
        if value and value.strip():
            return value.strip()
    return _tenant_from_host(request.headers.get("host", ""), get_settings().tenant_host_suffix)


def header_tenant_ref(request: Request) -> Optional[str]:
    return request.headers.get("X-Tenant-ID") or request.headers.get("X-Tenant-Slug") or None


async def require_tenant_ref(request: Request, body_value: Optional[str] = None) -> str:
    ref = await resolve_tenant_ref(request, body_value)
    if not ref:
        raise BadRequestError("invalid request", detail="tenant_id is required")
    return ref


async def get_token_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Tuple[TenantDataAccess, Dict[str, Any]]:
    """Verify the bearer access token; returns the tenant handle and the token claims."""
    runtime = get_runtime()
    return runtime.tokens.authenticate_bearer(authorization, tenant_hint=header_tenant_ref(request))


async def get_admin(authorization: Optional[str] = Header(None)) -> AdminPrincipal:
    runtime = get_runtime()
    return runtime.admin.authenticate(authorization)
