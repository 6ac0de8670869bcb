from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from itsdangerous import BadSignature, BadTimeSignature, URLSafeTimedSerializer

from twitchspeak.auth.config import DEFAULT_SESSION_TTL_SECONDS
from twitchspeak.auth.models import CookieScope, RequestOrigin, Session

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "twitchspeak"
SESSION_SALT = "twitchspeak-session-v1"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SessionStore(Protocol):
    def save(self, session: Session, ttl_seconds: int) -> None: ...

    def load(self, session_id: str) -> Optional[Session]: ...

    def delete(self, session_id: str) -> None: ...


class InMemorySessionStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._data: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def save(self, session: Session, ttl_seconds: int) -> None:
        now = self._clock()
        with self._lock:
            self._data[session.session_id] = session
            stale = [k for k, s in self._data.items() if s.expires_at <= now]
            for k in stale:
                del self._data[k]

    def load(self, session_id: str) -> Optional[Session]:
        with self._lock:
            sess = self._data.get(session_id)
        if sess is None or sess.expires_at <= self._clock():
            return None
        return sess

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._data.pop(session_id, None)


class RedisSessionStore:
    """Sessions as JSON under `session:<id>`; Redis expiry is the store's own TTL."""

    def __init__(self, client: Any, prefix: str = "twitchspeak:session:") -> None:
        self._client = client
        self._prefix = prefix

    def save(self, session: Session, ttl_seconds: int) -> None:
        raw = json.dumps(session.to_dict(), separators=(",", ":"), sort_keys=True)
        self._client.setex(self._prefix + session.session_id, int(ttl_seconds), raw)

    def load(self, session_id: str) -> Optional[Session]:
        raw = self._client.get(self._prefix + session_id)
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                return None
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable session entry")
            return None

    def delete(self, session_id: str) -> None:
        self._client.delete(self._prefix + session_id)


def cookie_scope(origin: RequestOrigin) -> CookieScope:
    """Cookie attributes for a request origin; computed once and reused for set and clear."""
    return CookieScope(domain=origin.host or None, secure=origin.secure)


def _cookie_kwargs(scope: CookieScope, *, value: str, max_age: int, expires: Any = None) -> dict:
    kwargs = {
        "key": SESSION_COOKIE_NAME,
        "value": value,
        "max_age": max_age,
        "httponly": scope.httponly,
        "secure": scope.secure,
        "samesite": scope.samesite,
        "path": scope.path,
        "domain": scope.domain,
    }
    if expires is not None:
        kwargs["expires"] = expires
    return kwargs


class SessionManager:
    """
    establish / current / terminate over an injected SessionStore.

    The cookie only carries a signed, opaque session id; subject and claims stay
    server-side. Sessions never interact, so no cross-session locking is needed.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        secret_key: str,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key is required for session signing")
        self._store = store
        self._serializer = URLSafeTimedSerializer(secret_key=secret_key, salt=SESSION_SALT)
        self._ttl = int(ttl_seconds)
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def establish(
        self, subject: str, origin: RequestOrigin, *, claims: Optional[Dict[str, Any]] = None
    ) -> dict:
        """Persist a new session and return the Set-Cookie kwargs for it."""
        if not subject:
            raise ValueError("subject is required")
        scope = cookie_scope(origin)
        now = self._clock()
        sess = Session(
            session_id=secrets.token_urlsafe(32),
            subject=subject,
            issued_at=now,
            expires_at=now + self._ttl,
            cookie_domain=scope.domain,
            secure=scope.secure,
            same_site=scope.samesite,
            claims=dict(claims or {}),
        )
        self._store.save(sess, self._ttl)
        logger.info("Session established for subject=%s", subject)
        return _cookie_kwargs(scope, value=self._serializer.dumps(sess.session_id), max_age=self._ttl)

    def current_session(self, cookie_value: Optional[str]) -> Optional[Session]:
        session_id = self._session_id(cookie_value)
        if session_id is None:
            return None
        sess = self._store.load(session_id)
        if sess is None or sess.expires_at <= self._clock():
            return None
        return sess

    def current(self, cookie_value: Optional[str]) -> Optional[str]:
        """Subject of the live session behind `cookie_value`, or None. Read-only."""
        sess = self.current_session(cookie_value)
        return sess.subject if sess is not None else None

    def terminate(self, cookie_value: Optional[str], origin: RequestOrigin) -> dict:
        """
        Delete the server-side session and return kwargs that expire the client cookie.

        A live session's own recorded attributes win over the logout request's origin.
        """
        scope = cookie_scope(origin)
        session_id = self._session_id(cookie_value)
        if session_id is not None:
            sess = self._store.load(session_id)
            if sess is not None:
                scope = CookieScope(domain=sess.cookie_domain, secure=sess.secure, samesite=sess.same_site)
            self._store.delete(session_id)
            logger.info("Session terminated")
        return _cookie_kwargs(scope, value="", max_age=0, expires=_EPOCH)

    def _session_id(self, cookie_value: Optional[str]) -> Optional[str]:
        if not cookie_value:
            return None
        try:
            sid = self._serializer.loads(cookie_value, max_age=self._ttl)
        except (BadSignature, BadTimeSignature):
            return None
        return sid if isinstance(sid, str) and sid else None
