from __future__ import annotations

from urllib.parse import urlparse

from hellojohn.store.models import TenantSettings

GLOBAL = "global"
PATH = "path"
DOMAIN = "domain"


def resolve_issuer(base_url: str, slug: str, settings: TenantSettings) -> str:
    """Effective ``iss`` for a tenant.

    An override wins verbatim; otherwise ``global`` is the base URL, ``path``
    appends ``/t/<slug>`` and ``domain`` uses ``https://<slug>.<base host>``.
    """
    if settings.issuer_override:
        return settings.issuer_override
    base = base_url.rstrip("/")
    mode = (settings.issuer_mode or PATH).lower()
    if mode == GLOBAL:
        return base
    if mode == DOMAIN:
        host = urlparse(base).netloc or base
        return f"https://{slug}.{host}"
    return f"{base}/t/{slug}"


def key_owner(slug: str, settings: TenantSettings) -> str:
    """Keystore owner signing for a tenant: the global set in ``global`` mode, the tenant otherwise."""
    if (settings.issuer_mode or PATH).lower() == GLOBAL:
        return ""
    return slug
