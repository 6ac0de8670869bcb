from __future__ import annotations

import base64
import os
from typing import Optional, Tuple
from urllib.parse import urlparse

STATE_LENGTH = 16
NONCE_LENGTH = 32

_DEFAULT_PORTS = {"http": 80, "https": 443}


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def random_token(length: int) -> str:
    """
    Fixed-length token over the URL-safe base64 alphabet from the OS CSPRNG.

    `length` bytes of entropy encode to more than `length` characters, so truncating
    keeps every character uniformly distributed.
    """
    if length <= 0:
        raise ValueError("token length must be positive")
    return b64url(os.urandom(length))[:length]


def host_port(url: str) -> Optional[Tuple[str, int]]:
    """(hostname, port) of an absolute http(s) URL; port defaults by scheme."""
    try:
        u = urlparse(url)
        port = u.port
    except ValueError:
        return None
    scheme = (u.scheme or "").lower()
    if scheme not in _DEFAULT_PORTS or not u.hostname:
        return None
    return u.hostname.lower(), port if port is not None else _DEFAULT_PORTS[scheme]


def strip_scheme(host: str) -> str:
    h = (host or "").strip()
    for prefix in ("https://", "http://"):
        if h.lower().startswith(prefix):
            h = h[len(prefix) :]
    return h
