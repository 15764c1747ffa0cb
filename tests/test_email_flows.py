"""HTTP tests for password reset, email verification and the client_credentials grant."""

from urllib.parse import parse_qs, urlparse

import pytest

from hellojohn.jwt import jws
from hellojohn.store.models import OIDCClient

from conftest import REDIRECT_URI, USER_EMAIL, USER_PASSWORD

NEW_PASSWORD = "Brand-New-Pass-93"
SERVICE_SECRET = "s3cret-value-for-svc"


@pytest.fixture
def outbox(seeded, monkeypatch):
    """Messages handed to the mailer, as ``(to, subject, body)`` tuples."""
    sent = []

    def _capture(smtp, to_email, subject, text_body):
        sent.append((to_email, subject, text_body))
        return True

    monkeypatch.setattr(seeded.runtime.email, "_send_email", _capture)
    return sent


def _link(body):
    return next(line.strip() for line in body.splitlines() if line.strip().startswith("http"))


def _link_params(body):
    return {k: v[0] for k, v in parse_qs(urlparse(_link(body)).query).items()}


def _forgot(client, email):
    return client.post("/v2/auth/forgot", json={"tenant_id": "acme", "client_id": "web1", "email": email})


def _login(client, password=USER_PASSWORD):
    return client.post(
        "/v2/auth/login",
        json={"tenant_id": "acme", "client_id": "web1", "email": USER_EMAIL, "password": password},
    )


class TestForgotPassword:
    """Starting a password reset."""

    def test_known_and_unknown_addresses_answer_alike(self, client, outbox):
        known = _forgot(client, USER_EMAIL)
        unknown = _forgot(client, "nobody@acme.test")
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json() == {"status": "ok"}
        assert [to for to, _, _ in outbox] == [USER_EMAIL]

    def test_disabled_user_gets_no_mail(self, client, seeded, outbox):
        seeded.tda.users.disable(seeded.user.id)
        response = _forgot(client, USER_EMAIL)
        assert response.status_code == 200
        assert outbox == []

    def test_unknown_client(self, client, outbox):
        response = client.post(
            "/v2/auth/forgot", json={"tenant_id": "acme", "client_id": "nope", "email": USER_EMAIL}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_client"

    def test_tenant_without_database(self, client, outbox):
        response = client.post(
            "/v2/auth/forgot", json={"tenant_id": "readonly", "client_id": "ro-web1", "email": USER_EMAIL}
        )
        assert response.status_code == 503

    def test_client_reset_url_is_used(self, client, seeded, outbox):
        seeded.runtime.dal.update_client(
            "acme",
            OIDCClient(
                client_id="web1",
                name="Acme Web",
                redirect_uris=[REDIRECT_URI],
                scopes=["openid", "email", "profile"],
                reset_password_url="https://app.acme.test/reset",
            ),
        )
        _forgot(client, USER_EMAIL)
        link = _link(outbox[0][2])
        assert link.startswith("https://app.acme.test/reset?token=")


class TestResetPassword:
    """Completing a password reset from the mailed link."""

    def test_reset_changes_password_and_revokes_sessions(self, client, outbox):
        refresh = _login(client).json()["refresh_token"]
        _forgot(client, USER_EMAIL)
        token = _link_params(outbox[0][2])["token"]

        response = client.post(
            "/v2/auth/reset",
            json={"tenant_id": "acme", "client_id": "web1", "token": token, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 204

        assert _login(client).status_code == 401
        assert _login(client, NEW_PASSWORD).status_code == 200
        stale = client.post(
            "/oauth2/token", data={"grant_type": "refresh_token", "refresh_token": refresh, "client_id": "web1"}
        )
        assert stale.status_code == 400
        assert stale.json()["code"] == "invalid_grant"

    def test_link_works_once(self, client, outbox):
        _forgot(client, USER_EMAIL)
        token = _link_params(outbox[0][2])["token"]
        payload = {"tenant_id": "acme", "client_id": "web1", "token": token, "new_password": NEW_PASSWORD}
        assert client.post("/v2/auth/reset", json=payload).status_code == 204
        again = client.post("/v2/auth/reset", json={**payload, "new_password": "Yet-Another-Pass-55"})
        assert again.status_code == 400
        assert again.json()["code"] == "invalid_token"

    def test_new_request_retires_older_link(self, client, outbox):
        _forgot(client, USER_EMAIL)
        _forgot(client, USER_EMAIL)
        first = _link_params(outbox[0][2])["token"]
        response = client.post(
            "/v2/auth/reset",
            json={"tenant_id": "acme", "client_id": "web1", "token": first, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 400

    def test_unknown_token(self, client, outbox):
        response = client.post(
            "/v2/auth/reset",
            json={"tenant_id": "acme", "client_id": "web1", "token": "not-a-real-token", "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_token"

    def test_auto_login_returns_tokens(self, client, seeded, outbox, monkeypatch):
        monkeypatch.setattr(seeded.runtime.settings, "reset_auto_login", True)
        _forgot(client, USER_EMAIL)
        token = _link_params(outbox[0][2])["token"]
        response = client.post(
            "/v2/auth/reset",
            json={"tenant_id": "acme", "client_id": "web1", "token": token, "new_password": NEW_PASSWORD},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["access_token"]
        assert body["refresh_token"]


class TestVerifyEmail:
    """Email verification start and confirm."""

    @pytest.fixture
    def pending(self, seeded):
        return seeded.tda.users.create(
            seeded.tda.id,
            "new@acme.test",
            password_hash=seeded.runtime.passwords.hash(NEW_PASSWORD),
            email_verified=False,
        )

    def _start(self, client, email, **extra):
        payload = {"tenant_id": "acme", "client_id": "web1", "email": email, **extra}
        return client.post("/v2/auth/verify-email/start", json=payload)

    def test_start_answers_alike(self, client, pending, outbox):
        assert self._start(client, "new@acme.test").status_code == 204
        assert self._start(client, "ghost@acme.test").status_code == 204
        assert self._start(client, USER_EMAIL).status_code == 204
        assert [to for to, _, _ in outbox] == ["new@acme.test"]

    def test_confirm_marks_user_verified(self, client, seeded, pending, outbox):
        self._start(client, "new@acme.test")
        link = urlparse(_link(outbox[0][2]))
        assert link.path == "/v2/auth/verify-email"

        response = client.get(f"{link.path}?{link.query}")
        assert response.status_code == 200
        assert response.json() == {"status": "verified"}
        assert seeded.tda.users.get_by_id(pending.id).email_verified is True

        again = client.get(f"{link.path}?{link.query}")
        assert again.status_code == 400

    def test_confirm_redirects_back_to_client(self, client, pending, outbox):
        self._start(client, "new@acme.test", redirect_uri=REDIRECT_URI)
        link = urlparse(_link(outbox[0][2]))
        response = client.get(f"{link.path}?{link.query}", follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(REDIRECT_URI)
        assert parse_qs(urlparse(location).query)["status"] == ["verified"]

    def test_foreign_redirect_is_refused(self, client, pending, outbox):
        response = self._start(client, "new@acme.test", redirect_uri="https://evil.test/cb")
        assert response.status_code == 400
        assert outbox == []

    def test_start_with_bearer(self, client, seeded, pending, outbox):
        login = client.post(
            "/v2/auth/login",
            json={"tenant_id": "acme", "client_id": "web1", "email": "new@acme.test", "password": NEW_PASSWORD},
        )
        token = login.json()["access_token"]
        response = client.post(
            "/v2/auth/verify-email/start", json={}, headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 204
        assert [to for to, _, _ in outbox] == ["new@acme.test"]


class TestClientCredentials:
    """Machine-to-machine tokens for confidential clients."""

    @pytest.fixture
    def service_client(self, seeded):
        seeded.runtime.dal.create_client(
            "acme",
            OIDCClient(
                client_id="svc",
                name="Orders Service",
                type="confidential",
                secret=SERVICE_SECRET,
                redirect_uris=[REDIRECT_URI],
                scopes=["openid", "orders:read", "orders:write"],
            ),
        )
        return "svc"

    def _grant(self, client, **overrides):
        form = {"grant_type": "client_credentials", "client_id": "svc", "client_secret": SERVICE_SECRET}
        form.update(overrides)
        return client.post("/oauth2/token", data=form)

    def test_issues_access_token_only(self, client, seeded, service_client):
        response = self._grant(client, scope="orders:read")
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert "refresh_token" not in body
        assert "id_token" not in body
        assert body["scope"] == "orders:read"
        claims = jws.unverified_claims(body["access_token"])
        assert claims["sub"] == "svc"
        assert claims["aud"] == "svc"
        assert claims["amr"] == ["client"]
        assert claims["tid"] == seeded.tda.id
        assert "custom" not in claims

    def test_userinfo_rejects_client_token(self, client, service_client):
        token = self._grant(client).json()["access_token"]
        response = client.get("/userinfo", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_defaults_to_client_scopes(self, client, service_client):
        body = self._grant(client).json()
        assert body["scope"] == "openid orders:read orders:write"

    def test_wrong_secret(self, client, service_client):
        response = self._grant(client, client_secret="guess")
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_client"

    def test_public_client_is_refused(self, client, seeded):
        response = self._grant(client, client_id="web1", client_secret="anything")
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized_client"

    def test_scope_outside_client(self, client, service_client):
        response = self._grant(client, scope="orders:read admin")
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_scope"

    def test_discovery_lists_grant(self, client, seeded):
        doc = client.get("/.well-known/openid-configuration").json()
        assert "client_credentials" in doc["grant_types_supported"]
        assert "client_secret_post" in doc["token_endpoint_auth_methods_supported"]
