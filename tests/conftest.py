import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hellojohn_test_")
os.environ.setdefault("FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
# Deterministic master keys (64 hex chars); never use these outside tests
os.environ.setdefault("SIGNING_MASTER_KEY", "a1" * 32)
os.environ.setdefault("SECRETBOX_MASTER_KEY", "b2" * 32)
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hellojohn.service.runtime import reset_runtime_for_tests  # noqa: E402
from hellojohn.store.models import (  # noqa: E402
    OIDCClient,
    Tenant,
    TenantSettings,
    UserDBSettings,
)

USER_EMAIL = "u1@acme.test"
USER_PASSWORD = "Correct-Horse-42!"
REDIRECT_URI = "https://app.acme.test/cb"
# RFC 7636 appendix B
PKCE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
PKCE_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def seeded(tmp_path, monkeypatch):
    """Fresh control plane with tenant ``acme`` (memory DB, client ``web1``, user ``u1``)
    and tenant ``readonly`` (no DB, client ``ro-web1``)."""
    monkeypatch.setenv("FS_ROOT", str(tmp_path))
    runtime = reset_runtime_for_tests()

    acme = runtime.dal.create_tenant(
        Tenant.new("acme", "Acme", settings=TenantSettings(user_db=UserDBSettings(driver="memory")))
    )
    runtime.dal.create_client(
        "acme",
        OIDCClient(
            client_id="web1",
            name="Acme Web",
            redirect_uris=[REDIRECT_URI],
            scopes=["openid", "email", "profile"],
        ),
    )
    readonly = runtime.dal.create_tenant(Tenant.new("readonly", "Read Only"))
    runtime.dal.create_client(
        "readonly",
        OIDCClient(client_id="ro-web1", redirect_uris=["https://ro.acme.test/cb"], scopes=["openid"]),
    )

    tda = runtime.dal.for_tenant("acme")
    user = tda.users.create(
        tda.id,
        USER_EMAIL,
        password_hash=runtime.passwords.hash(USER_PASSWORD),
        name="User One",
        email_verified=True,
    )
    return SimpleNamespace(runtime=runtime, acme=acme, readonly=readonly, tda=tda, user=user)


@pytest.fixture
def client(seeded):
    from fastapi.testclient import TestClient

    from hellojohn import app as app_module

    return TestClient(app_module.app)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
