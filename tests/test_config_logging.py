import contextvars

import pytest
from pydantic import ValidationError

from hellojohn.__main__ import parse_listen_addr
from hellojohn.config import Settings, get_settings, reset_settings_cache
from hellojohn.logging import (
    _add_correlation_id,
    _redact_secrets,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


class TestSettings:
    """Environment-driven settings."""

    def test_defaults(self):
        settings = Settings()
        assert settings.base_url == "http://localhost:8082"
        assert settings.access_token_ttl_seconds == 900
        assert settings.mfa_totp_window == 1
        assert settings.mfa_totp_issuer == "HelloJohn"
        assert settings.register_auto_login
        assert not settings.auth_allow_bearer_session
        assert settings.login_ui_base == settings.base_url

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("V2_BASE_URL", "https://id.acme.test/")
        monkeypatch.setenv("ADMIN_SUBS", " u1, ,u2 ")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.acme.test")
        monkeypatch.setenv("REGISTER_AUTO_LOGIN", "false")
        settings = Settings.from_env()
        assert settings.base_url == "https://id.acme.test"
        assert settings.admin_subs == ["u1", "u2"]
        assert settings.cors_allow_origins == ["https://app.acme.test"]
        assert not settings.register_auto_login

    def test_dotenv_file_fills_gaps(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("MFA_TOTP_ISSUER", raising=False)
        monkeypatch.setenv("V2_SERVER_ADDR", ":9000")
        (tmp_path / ".env").write_text("MFA_TOTP_ISSUER=Acme ID\nV2_SERVER_ADDR=:7000\n")
        settings = Settings.from_env()
        assert settings.mfa_totp_issuer == "Acme ID"
        assert settings.server_addr == ":9000"

    @pytest.mark.parametrize("window", [-1, 4])
    def test_totp_window_bounds(self, window):
        with pytest.raises(ValidationError):
            Settings(mfa_totp_window=window)

    def test_remember_ttl_is_capped(self):
        assert Settings(mfa_remember_ttl_seconds=10**9).mfa_remember_ttl_seconds == 30 * 24 * 3600
        with pytest.raises(ValidationError):
            Settings(mfa_remember_ttl_seconds=0)

    def test_master_key_validation(self):
        assert Settings(signing_master_key="a1" * 32).signing_master_key == "a1" * 32
        assert Settings(signing_master_key="").signing_master_key is None
        with pytest.raises(ValidationError):
            Settings(secretbox_master_key="too-short")

    def test_legacy_email_key_alias(self):
        assert Settings(email_master_key="c3" * 32).secretbox_key == "c3" * 32
        both = Settings(secretbox_master_key="b2" * 32, email_master_key="c3" * 32)
        assert both.secretbox_key == "b2" * 32

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first


class TestListenAddr:
    """V2_SERVER_ADDR parsing."""

    @pytest.mark.parametrize(
        "addr,expected",
        [
            (":8082", ("0.0.0.0", 8082)),
            ("127.0.0.1:9000", ("127.0.0.1", 9000)),
            ("[::1]:8443", ("::1", 8443)),
            ("", ("0.0.0.0", 8082)),
        ],
    )
    def test_parse(self, addr, expected):
        assert parse_listen_addr(addr) == expected


class TestLogging:
    """structlog processors."""

    def test_redacts_credentials(self):
        event = _redact_secrets(
            None,
            "info",
            {
                "event": "x",
                "password": "hunter2222",
                "refresh_token": "abcdefghij",
                "Authorization": "Bearer xyz123",
                "token_count": "123456",
                "code_ttl": "3000000",
                "secret": "abc",
                "token_id": "5b0c9a3e-1111",
                "client_secret_enc_version": "GCMV1-xyz",
            },
        )
        assert event["password"] == "hu***22"
        assert event["refresh_token"] == "ab***ij"
        assert event["Authorization"] == "Be***23"
        assert event["token_count"] == "123456"
        assert event["code_ttl"] == "3000000"
        assert event["secret"] == "abc"
        assert event["token_id"] == "5b0c9a3e-1111"
        assert event["client_secret_enc_version"] == "GCMV1-xyz"

    def test_correlation_id(self):
        def run():
            assert get_correlation_id() is None
            assert _add_correlation_id(None, "info", {}) == {}
            cid = set_correlation_id("req-1")
            assert cid == "req-1"
            assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-1"
            assert len(set_correlation_id()) == 36

        contextvars.Context().run(run)


class TestSanitizeErrorMessage:
    """Error text scrubbing."""

    def test_strips_dsn_and_paths(self):
        result = sanitize_error_message("cannot open postgres://u:pw@db/acme or /var/lib/hj/tenants")
        assert "pw@db" not in result
        assert "/var/lib" not in result

    def test_strips_credentials(self):
        assert "s3cr3t" not in sanitize_error_message("bad password=s3cr3t given")

    def test_empty(self):
        assert sanitize_error_message("") == "An error occurred"
        assert sanitize_error_message(None) == "An error occurred"

    def test_truncates(self):
        result = sanitize_error_message("x" * 600)
        assert len(result) == 500
        assert result.endswith("...")
