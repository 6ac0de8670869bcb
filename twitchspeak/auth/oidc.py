from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests

from twitchspeak.auth.config import AuthConfig
from twitchspeak.auth.errors import UpstreamError

logger = logging.getLogger(__name__)

TWITCH_ISSUER = "https://id.twitch.tv/oauth2"
TWITCH_AUTHORIZE_URL = "https://id.twitch.tv/oauth2/authorize"
TWITCH_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
TWITCH_USERINFO_URL = "https://id.twitch.tv/oauth2/userinfo"
TWITCH_JWKS_URL = "https://id.twitch.tv/oauth2/keys"

JWKS_CACHE_SECONDS = 3600

# Twitch only returns profile claims from userinfo when they are requested explicitly.
_USERINFO_CLAIMS = {
    "userinfo": {
        "email": None,
        "email_verified": None,
        "picture": None,
        "preferred_username": None,
        "updated_at": None,
    }
}


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    id_token: str


class IdentityProvider(Protocol):
    def authorize_url(self, *, state: str, nonce: str) -> str:
        """Provider URL the browser is redirected to."""

    def exchange_code(self, code: str) -> TokenSet:
        """Trade an authorization code for tokens. Raises UpstreamError."""

    def validate_id_token(self, id_token: str) -> Dict[str, Any]:
        """Verify the identity assertion and return its claims. Raises UpstreamError."""

    def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        """Profile claims for the access token's user. Raises UpstreamError."""


class TwitchOIDCProvider:
    """
    Twitch as an OIDC provider.

    Every outbound call carries `timeout`; failures of any kind surface as UpstreamError
    with a log-only detail (status codes, never response bodies or tokens).
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: List[str],
        timeout: float = 10.0,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes)
        self.timeout = timeout
        self._http = http or requests.Session()
        self._jwks: Tuple[float, Optional[Dict[str, Any]]] = (0.0, None)
        self._jwks_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: AuthConfig) -> "TwitchOIDCProvider":
        return cls(
            client_id=cfg.twitch_client_id or "",
            client_secret=cfg.twitch_client_secret or "",
            redirect_uri=cfg.twitch_redirect_uri or "",
            scopes=cfg.twitch_scopes,
            timeout=cfg.provider_timeout_seconds,
        )

    def authorize_url(self, *, state: str, nonce: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "nonce": nonce,
            "claims": json.dumps(_USERINFO_CLAIMS, separators=(",", ":")),
        }
        return f"{TWITCH_AUTHORIZE_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> TokenSet:
        payload = {
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        data = self._json("POST", TWITCH_TOKEN_URL, data=payload, what="token exchange")
        access_token = str(data.get("access_token") or "").strip()
        id_token = str(data.get("id_token") or "").strip()
        if not access_token or not id_token:
            raise UpstreamError("token response missing access_token/id_token")
        return TokenSet(access_token=access_token, id_token=id_token)

    def validate_id_token(self, id_token: str) -> Dict[str, Any]:
        """
        Verify signature (JWKS, RS256), issuer, audience and expiry of the id_token.

        The nonce is returned with the other claims; comparing it is the caller's job.
        """
        try:
            kid = str(jwt.get_unverified_header(id_token).get("kid") or "")
        except jwt.PyJWTError as e:
            raise UpstreamError(f"malformed id_token: {e}")
        if not kid:
            raise UpstreamError("id_token missing kid")

        jwk = self._find_jwk(kid)
        if jwk is None:
            raise UpstreamError("unknown signing key (kid)")

        try:
            key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(jwk))
            claims = jwt.decode(
                id_token,
                key=key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=TWITCH_ISSUER,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except (jwt.PyJWTError, ValueError) as e:
            raise UpstreamError(f"id_token validation failed: {e}")
        if not isinstance(claims, dict):
            raise UpstreamError("invalid id_token claims")
        return claims

    def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
        }
        return self._json("GET", TWITCH_USERINFO_URL, headers=headers, what="userinfo")

    def _find_jwk(self, kid: str) -> Optional[Dict[str, Any]]:
        for refresh in (False, True):
            keys = self._get_jwks(force=refresh).get("keys")
            if not isinstance(keys, list):
                raise UpstreamError("invalid JWKS keys")
            for k in keys:
                if isinstance(k, dict) and str(k.get("kid") or "") == kid:
                    return k
        return None

    def _get_jwks(self, *, force: bool = False) -> Dict[str, Any]:
        """JWKS cached for an hour; an unknown kid forces one refetch (key rotation)."""
        now = time.time()
        with self._jwks_lock:
            ts, cached = self._jwks
            if cached is not None and not force and now - ts < JWKS_CACHE_SECONDS:
                return cached
        data = self._json("GET", TWITCH_JWKS_URL, what="jwks")
        logger.debug("Fetched provider JWKS (force=%s)", force)
        with self._jwks_lock:
            self._jwks = (now, data)
        return data

    def _json(self, method: str, url: str, *, what: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            r = self._http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout:
            raise UpstreamError(f"{what} timed out after {self.timeout}s")
        except requests.RequestException as e:
            raise UpstreamError(f"{what} failed: {type(e).__name__}")
        if r.status_code >= 400:
            # Avoid leaking sensitive info; include minimal context.
            raise UpstreamError(f"{what} failed (status={r.status_code})")
        try:
            data = r.json()
        except ValueError:
            raise UpstreamError(f"{what} returned invalid JSON")
        if not isinstance(data, dict):
            raise UpstreamError(f"{what} returned unexpected payload")
        return data
