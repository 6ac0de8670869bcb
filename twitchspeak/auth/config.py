from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from twitchspeak.auth.errors import ConfigurationError
from twitchspeak.auth.util import host_port

ENV_PREFIX = "TWITCHSPEAK_"

DEFAULT_SESSION_TTL_SECONDS = 7 * 86400
DEFAULT_PENDING_TTL_SECONDS = 10 * 60
MAX_PROVIDER_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class AuthConfig:
    # Server binding (the callback URI must resolve here)
    api_host: str
    api_port: int
    frontend_url: str  # "home" location after login
    secret_key: Optional[str]  # session cookie signing

    # Twitch OAuth2 / OIDC
    twitch_client_id: Optional[str]
    twitch_client_secret: Optional[str]
    twitch_redirect_uri: Optional[str]
    twitch_scopes: List[str]

    # Abuse protection
    rate_limit: int  # requests per window
    rate_window_seconds: float

    # Lifetimes
    session_ttl_seconds: int
    pending_ttl_seconds: int
    provider_timeout_seconds: float

    # Shared stores (multi-instance); in-memory when unset
    redis_url: Optional[str]

    trust_proxy: bool
    debug: bool

    provider_name: str = "twitch"

    @property
    def callback_path(self) -> str:
        return urlparse(self.twitch_redirect_uri or "").path or "/"

    @property
    def reserved_paths(self) -> List[str]:
        """Routes the API serves itself; the callback must not shadow or be shadowed by them."""
        return ["/", "/healthz", "/auth/logout", f"/auth/{self.provider_name}/login", "/users/me"]

    def public_summary(self) -> Dict[str, Any]:
        """Non-secret settings, safe to log."""
        return {
            "api_host": self.api_host,
            "api_port": self.api_port,
            "frontend_url": self.frontend_url,
            "twitch_redirect_uri": self.twitch_redirect_uri,
            "twitch_scopes": list(self.twitch_scopes),
            "rate_limit": self.rate_limit,
            "rate_window_seconds": self.rate_window_seconds,
            "session_ttl_seconds": self.session_ttl_seconds,
            "pending_ttl_seconds": self.pending_ttl_seconds,
            "provider_timeout_seconds": self.provider_timeout_seconds,
            "redis_enabled": bool(self.redis_url),
            "trust_proxy": self.trust_proxy,
            "debug": self.debug,
        }


def _env(name: str, default: str = "") -> str:
    return (os.getenv(ENV_PREFIX + name, "") or default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _parse_csv(value: str) -> List[str]:
    items = [x.strip() for x in (value or "").replace(" ", ",").split(",")]
    return [x for x in items if x]


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load configuration from TWITCHSPEAK_* environment variables.

    Loading never fails; `validate_auth_config` decides whether the result is servable.
    """
    timeout = _env_float("PROVIDER_TIMEOUT_SECONDS", float(MAX_PROVIDER_TIMEOUT_SECONDS))
    timeout = min(max(timeout, 1.0), float(MAX_PROVIDER_TIMEOUT_SECONDS))

    return AuthConfig(
        api_host=_env("API_HOST", "localhost"),
        api_port=_env_int("API_PORT", 8080),
        frontend_url=_env("FRONTEND_URL", "http://localhost:5173"),
        secret_key=_env("SECRET_KEY") or None,
        twitch_client_id=_env("TWITCH_CLIENT_ID") or None,
        twitch_client_secret=_env("TWITCH_CLIENT_SECRET") or None,
        twitch_redirect_uri=_env("TWITCH_REDIRECT_URI") or None,
        twitch_scopes=_parse_csv(_env("TWITCH_SCOPES", "openid")),
        rate_limit=max(1, _env_int("RATE_LIMIT", 3)),
        rate_window_seconds=max(0.001, _env_float("RATE_WINDOW_SECONDS", 1.0)),
        session_ttl_seconds=max(60, _env_int("SESSION_TTL_SECONDS", DEFAULT_SESSION_TTL_SECONDS)),
        pending_ttl_seconds=max(30, _env_int("PENDING_TTL_SECONDS", DEFAULT_PENDING_TTL_SECONDS)),
        provider_timeout_seconds=timeout,
        redis_url=_env("REDIS_URL") or None,
        trust_proxy=_env_bool("TRUST_PROXY", False),
        debug=_env_bool("DEBUG", False),
    )


def validate_auth_config(cfg: AuthConfig) -> None:
    """Raise ConfigurationError unless the process may serve login traffic."""
    if not cfg.twitch_client_id:
        raise ConfigurationError("twitch client id is empty")
    if not cfg.twitch_client_secret:
        raise ConfigurationError("twitch client secret is empty")
    if not cfg.twitch_redirect_uri:
        raise ConfigurationError("twitch redirect uri is empty")
    if not cfg.twitch_scopes:
        raise ConfigurationError("twitch scopes are empty")
    if "openid" not in cfg.twitch_scopes:
        raise ConfigurationError("twitch scopes must include 'openid' to receive an id_token")
    if not cfg.secret_key:
        raise ConfigurationError("secret key is empty")
    if not cfg.frontend_url:
        raise ConfigurationError("frontend url is empty")
    if cfg.api_port <= 0:
        raise ConfigurationError("api port is empty")

    target = host_port(cfg.twitch_redirect_uri)
    if target is None:
        raise ConfigurationError("invalid twitch redirect uri")
    if target != (cfg.api_host.lower(), cfg.api_port):
        raise ConfigurationError(
            f"redirect uri {target[0]}:{target[1]} does not match server {cfg.api_host}:{cfg.api_port}"
        )
    if cfg.callback_path.rstrip("/") in [p.rstrip("/") for p in cfg.reserved_paths]:
        raise ConfigurationError(f"redirect uri path {cfg.callback_path} collides with a built-in route")
