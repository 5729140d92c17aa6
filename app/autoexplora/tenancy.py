"""
Hostname based tenant routing.

Requests for a dealer subdomain (`<slug>.<ROOT_DOMAIN>`) or a dealer's custom
domain are rewritten to `/microsite/<key><path>` before Flask routes them; the
microsite blueprint then resolves `<key>` against the database. Platform hosts
(MAIN_DOMAINS) pass through untouched.
"""
from __future__ import annotations

from typing import Iterable

PASSTHROUGH_PREFIXES = ("/static", "/api", "/favicon.ico", "/health", "/media")
ENVIRON_KEY = "autoexplora.dealer_key"


def strip_port(host: str) -> str:
    host = (host or "").strip().lower()
    if host.startswith("["):  # IPv6 literal
        return host.split("]")[0] + "]"
    return host.split(":")[0]


def tenant_key_for_host(host: str, root_domain: str, main_domains: Iterable[str]) -> str | None:
    """
    Return the dealer key for `host`, or None when the host belongs to the platform.
    """
    hostname = strip_port(host)
    if not hostname or hostname in set(main_domains):
        return None
    suffix = f".{root_domain}"
    if hostname.endswith(suffix):
        sub = hostname[: -len(suffix)]
        # nested subdomains are not tenants
        if not sub or "." in sub or sub == "www":
            return None
        return sub
    return hostname


def should_rewrite(path: str) -> bool:
    if path.startswith("/microsite/"):
        return False
    return not path.startswith(PASSTHROUGH_PREFIXES)


class TenantMiddleware:
    """WSGI middleware in the style of werkzeug's ProxyFix; wraps `app.wsgi_app`."""

    def __init__(self, wsgi_app, root_domain: str, main_domains: Iterable[str]) -> None:
        self.wsgi_app = wsgi_app
        self.root_domain = root_domain.lower()
        self.main_domains = tuple(d.lower() for d in main_domains)

    def __call__(self, environ, start_response):
        host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")
        key = tenant_key_for_host(host, self.root_domain, self.main_domains)
        path = environ.get("PATH_INFO") or "/"
        if key and should_rewrite(path):
            environ[ENVIRON_KEY] = key
            environ["autoexplora.original_path"] = path
            suffix = "" if path == "/" else path
            environ["PATH_INFO"] = f"/microsite/{key}{suffix}"
        return self.wsgi_app(environ, start_response)
