import json

import pytest
from starlette.requests import Request

from hellojohn.api.deps import _tenant_from_host, require_tenant_ref, resolve_tenant_ref
from hellojohn.config import reset_settings_cache
from hellojohn.service.errors import BadRequestError


def _request(method="GET", *, headers=None, query="", body=b""):
    headers = dict(headers or {})
    headers.setdefault("host", "localhost:8082")
    scope = {
        "type": "http",
        "method": method,
        "path": "/v2/auth/login",
        "query_string": query.encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    }
    sent = {"done": False}

    async def receive():
        if sent["done"]:
            return {"type": "http.disconnect"}
        sent["done"] = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def _json(payload):
    return {"headers": {"content-type": "application/json"}, "body": json.dumps(payload).encode()}


class TestTenantFromHost:
    """Only a single label directly under the base host names a tenant."""

    @pytest.mark.parametrize(
        "host,expected",
        [
            ("acme.id.example.com", "acme"),
            ("Acme.ID.example.com:8443", "acme"),
            ("id.example.com", None),
            ("a.b.id.example.com", None),
            ("api.example.com", None),
            ("acme.id.example.com.evil.test", None),
            ("example.com", None),
            ("10.0.0.1", None),
            ("", None),
        ],
    )
    def test_host_labels(self, host, expected):
        assert _tenant_from_host(host, "id.example.com") == expected

    def test_without_base_host(self):
        assert _tenant_from_host("acme.id.example.com", "") is None


class TestResolveTenantRef:
    """Precedence: body, headers, query, host."""

    async def test_explicit_body_value_wins(self):
        request = _request("POST", headers={"X-Tenant-Slug": "beta"})
        assert await resolve_tenant_ref(request, " acme ") == "acme"

    async def test_json_body(self):
        kwargs = _json({"tenant": "acme"})
        kwargs["headers"]["X-Tenant-Slug"] = "beta"
        assert await resolve_tenant_ref(_request("POST", **kwargs)) == "acme"

    async def test_form_body(self):
        request = _request(
            "POST",
            headers={"content-type": "application/x-www-form-urlencoded"},
            body=b"tenant_id=acme&email=u1%40acme.test",
        )
        assert await resolve_tenant_ref(request) == "acme"

    async def test_body_ignored_on_get(self):
        request = _request("GET", query="tenant=acme", **_json({"tenant": "beta"}))
        assert await resolve_tenant_ref(request) == "acme"

    async def test_invalid_json_falls_through(self):
        request = _request(
            "POST", headers={"content-type": "application/json", "X-Tenant-ID": "t-1"}, body=b"{oops"
        )
        assert await resolve_tenant_ref(request) == "t-1"

    async def test_header_order(self):
        request = _request(headers={"X-Tenant-Slug": "acme", "X-Tenant-ID": "other"})
        assert await resolve_tenant_ref(request) == "acme"

    async def test_query_then_host(self, monkeypatch):
        monkeypatch.setenv("V2_BASE_URL", "https://id.example.com")
        reset_settings_cache()
        assert await resolve_tenant_ref(_request(query="tenant_id=acme")) == "acme"
        assert await resolve_tenant_ref(_request(headers={"host": "acme.id.example.com"})) == "acme"
        assert await resolve_tenant_ref(_request(headers={"host": "api.example.com"})) is None

    async def test_explicit_base_host(self, monkeypatch):
        monkeypatch.setenv("TENANT_BASE_HOST", "tenants.example.org")
        reset_settings_cache()
        request = _request(headers={"host": "acme.tenants.example.org"})
        assert await resolve_tenant_ref(request) == "acme"

    async def test_nothing(self):
        assert await resolve_tenant_ref(_request()) is None
        with pytest.raises(BadRequestError):
            await require_tenant_ref(_request())
