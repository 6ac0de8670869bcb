from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

from fastapi import Request

from twitchspeak.auth.config import AuthConfig
from twitchspeak.auth.models import RequestOrigin
from twitchspeak.auth.session import SESSION_COOKIE_NAME
from twitchspeak.auth.util import strip_scheme


def _first_header_value(request: Request, name: str) -> str:
    return (request.headers.get(name) or "").split(",")[0].strip()


def _last_header_value(request: Request, name: str) -> str:
    return (request.headers.get(name) or "").split(",")[-1].strip()


def client_key(request: Request, cfg: AuthConfig) -> str:
    """
    Correlation key for login attempts and the rate limiter: the client address.

    Everyone behind one NAT/proxy shares it (see DESIGN.md). Behind a trusted proxy the
    rightmost X-Forwarded-For entry is used: it is the one the proxy appended, every
    entry left of it is client-supplied.
    """
    if cfg.trust_proxy:
        forwarded = _last_header_value(request, "x-forwarded-for")
        if forwarded:
            return forwarded
    return request.client.host if request.client else "unknown"


def request_origin(request: Request, cfg: AuthConfig) -> RequestOrigin:
    scheme = (request.url.scheme or "http").lower()
    host = request.url.hostname or ""
    if cfg.trust_proxy:
        proto = _first_header_value(request, "x-forwarded-proto").lower()
        if proto in ("http", "https"):
            scheme = proto
        fwd_host = _first_header_value(request, "x-forwarded-host")
        if fwd_host:
            host = urlparse("//" + strip_scheme(fwd_host)).hostname or host
    return RequestOrigin(scheme=scheme, host=host.lower())


def session_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE_NAME)
