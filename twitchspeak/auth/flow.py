"""
Wiring of the authentication engine and the async boundary the HTTP layer awaits.

Blocking work (provider calls, Redis) runs in the threadpool. A session is only ever
established after the awaited validation returns inside the request's own task, so
a request cancelled mid-exchange (client gone, shutdown) never creates one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from twitchspeak.auth.config import AuthConfig, validate_auth_config
from twitchspeak.auth.errors import RateLimited
from twitchspeak.auth.exchange import ExchangeValidator
from twitchspeak.auth.initiator import AuthorizationInitiator
from twitchspeak.auth.models import RateDecision, RequestOrigin
from twitchspeak.auth.oidc import IdentityProvider, TwitchOIDCProvider
from twitchspeak.auth.pending import PendingRequestStore
from twitchspeak.auth.rate_limit import CounterStore, InMemoryCounterStore, RateLimiter, RedisCounterStore
from twitchspeak.auth.session import InMemorySessionStore, RedisSessionStore, SessionManager, SessionStore

logger = logging.getLogger(__name__)


class LoginFlow:
    def __init__(
        self,
        *,
        initiator: AuthorizationInitiator,
        validator: ExchangeValidator,
        sessions: SessionManager,
    ) -> None:
        self.initiator = initiator
        self.validator = validator
        self.sessions = sessions

    async def begin(self, client_key: str, *, session_cookie: Optional[str] = None) -> str:
        return await run_in_threadpool(self.initiator.begin, client_key, session_cookie=session_cookie)

    async def complete(
        self,
        client_key: str,
        state: Optional[str],
        code: Optional[str],
        origin: RequestOrigin,
        *,
        session_cookie: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Validate the callback and establish a session.

        Returns Set-Cookie kwargs, or None when the caller was already logged in.
        """
        identity = await run_in_threadpool(
            self.validator.complete, client_key, state, code, session_cookie=session_cookie
        )
        if identity is None:
            return None
        return await run_in_threadpool(self.sessions.establish, identity.subject, origin, claims=identity.claims)

    async def logout(self, session_cookie: Optional[str], origin: RequestOrigin) -> dict:
        return await run_in_threadpool(self.sessions.terminate, session_cookie, origin)


@dataclass
class AuthRuntime:
    config: AuthConfig
    limiter: RateLimiter
    sessions: SessionManager
    flow: LoginFlow

    async def admit(self, client_key: str) -> RateDecision:
        """Count one request for `client_key`; raises RateLimited when over budget."""
        decision = await run_in_threadpool(self.limiter.allow, client_key)
        if not decision.permit:
            raise RateLimited(decision.retry_after, decision.reset_at)
        return decision


def _redis_client(url: str):  # type: ignore[no-untyped-def]
    import redis

    return redis.Redis.from_url(url, socket_timeout=5, socket_connect_timeout=5)


def build_auth_runtime(
    cfg: AuthConfig,
    *,
    provider: Optional[IdentityProvider] = None,
    pending: Optional[PendingRequestStore] = None,
    counter_store: Optional[CounterStore] = None,
    session_store: Optional[SessionStore] = None,
) -> AuthRuntime:
    """
    Validate `cfg` and assemble the engine. Raises ConfigurationError (fatal at startup).

    Collaborators can be injected; otherwise Redis-backed stores are used when
    REDIS_URL is set and in-memory ones when it is not.
    """
    validate_auth_config(cfg)

    if counter_store is None or session_store is None:
        client = _redis_client(cfg.redis_url) if cfg.redis_url else None
        if counter_store is None:
            counter_store = RedisCounterStore(client) if client is not None else InMemoryCounterStore()
        if session_store is None:
            session_store = RedisSessionStore(client) if client is not None else InMemorySessionStore()
        if client is None:
            logger.warning("REDIS_URL not set: rate limits and sessions are local to this process")

    if provider is None:
        provider = TwitchOIDCProvider.from_config(cfg)
    if pending is None:
        pending = PendingRequestStore(ttl_seconds=cfg.pending_ttl_seconds)
    sessions = SessionManager(session_store, secret_key=cfg.secret_key or "", ttl_seconds=cfg.session_ttl_seconds)
    limiter = RateLimiter(counter_store, limit=cfg.rate_limit, window_seconds=cfg.rate_window_seconds)

    flow = LoginFlow(
        initiator=AuthorizationInitiator(
            provider=provider, pending=pending, sessions=sessions, home_url=cfg.frontend_url
        ),
        validator=ExchangeValidator(provider=provider, pending=pending, sessions=sessions),
        sessions=sessions,
    )
    return AuthRuntime(config=cfg, limiter=limiter, sessions=sessions, flow=flow)
