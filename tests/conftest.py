"""
Pytest config.

Local imports like `import twitchspeak` rely on the repo root being on sys.path. When a
global `pytest` entrypoint is used that doesn't happen reliably during collection, so we
pin it here.
"""

from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from twitchspeak.auth.config import AuthConfig, load_auth_config  # noqa: E402
from twitchspeak.auth.errors import UpstreamError  # noqa: E402
from twitchspeak.auth.oidc import TokenSet  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch):
    """Every test starts without TWITCHSPEAK_* variables and with a fresh config cache."""
    for name in list(os.environ):
        if name.startswith("TWITCHSPEAK_"):
            monkeypatch.delenv(name, raising=False)
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


BASE_CONFIG = AuthConfig(
    api_host="localhost",
    api_port=8080,
    frontend_url="http://localhost:5173",
    secret_key="test-secret-key-for-testing-purposes-only",
    twitch_client_id="test-client-id",
    twitch_client_secret="test-client-secret",
    twitch_redirect_uri="http://localhost:8080/auth/twitch/redirect",
    twitch_scopes=["openid"],
    rate_limit=1000,
    rate_window_seconds=1.0,
    session_ttl_seconds=7 * 86400,
    pending_ttl_seconds=600,
    provider_timeout_seconds=10.0,
    redis_url=None,
    trust_proxy=False,
    debug=False,
)


@pytest.fixture
def make_config():
    def _make(**overrides: Any) -> AuthConfig:
        return replace(BASE_CONFIG, **overrides)

    return _make


class FakeProvider:
    """
    Stand-in for Twitch.

    `approve(state)` plays the user consenting at the provider: it returns the code the
    provider would send back, and the id_token later minted for that code carries the
    nonce that was sent with `state`.
    """

    def __init__(self) -> None:
        self.claims: Dict[str, Any] = {"sub": "abc", "preferred_username": "abc_streams"}
        self.assertion_nonce: Optional[str] = None  # force a different nonce
        self.assertion_sub: Optional[str] = None
        self.exchange_error: Optional[Exception] = None
        self.userinfo_error: Optional[Exception] = None
        self.calls: List[str] = []
        self._nonce_by_state: Dict[str, str] = {}
        self._nonce_by_code: Dict[str, str] = {}

    def authorize_url(self, *, state: str, nonce: str) -> str:
        self._nonce_by_state[state] = nonce
        return "https://id.twitch.tv/oauth2/authorize?" + urlencode({"state": state, "nonce": nonce})

    def approve(self, state: str, code: Optional[str] = None) -> str:
        code = code or f"code-{len(self._nonce_by_code)}"
        self._nonce_by_code[code] = self._nonce_by_state[state]
        return code

    def exchange_code(self, code: str) -> TokenSet:
        self.calls.append("exchange")
        if self.exchange_error is not None:
            raise self.exchange_error
        if code not in self._nonce_by_code:
            raise UpstreamError("token exchange failed (status=400)")
        return TokenSet(access_token=f"at:{code}", id_token=f"idt:{code}")

    def validate_id_token(self, id_token: str) -> Dict[str, Any]:
        self.calls.append("validate")
        code = id_token.split(":", 1)[1]
        claims: Dict[str, Any] = {"nonce": self.assertion_nonce or self._nonce_by_code[code]}
        if self.assertion_sub is not None:
            claims["sub"] = self.assertion_sub
        return claims

    def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        self.calls.append("userinfo")
        if self.userinfo_error is not None:
            raise self.userinfo_error
        return dict(self.claims)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
