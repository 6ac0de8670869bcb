from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional

from twitchspeak.auth.config import DEFAULT_PENDING_TTL_SECONDS
from twitchspeak.auth.models import PendingRequest


class PendingRequestStore:
    """
    In-flight login challenges keyed by correlation key (client address).

    One challenge per key: registering again overwrites, which invalidates an earlier
    attempt from the same key. `take` is the only way the callback path reads a
    challenge, so two concurrent callbacks can never both see it.

    All operations hold a single lock for a dict operation only; never do I/O under it.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_PENDING_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self._data: Dict[str, PendingRequest] = {}
        self._lock = threading.Lock()
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._last_sweep = clock()

    def register(self, key: str, state_token: str, nonce_token: str) -> PendingRequest:
        now = self._clock()
        req = PendingRequest(correlation_key=key, state_token=state_token, nonce_token=nonce_token, created_at=now)
        with self._lock:
            self._data[key] = req
            if now - self._last_sweep >= self._ttl:
                self._sweep_locked(now)
        return req

    def get(self, key: str) -> Optional[PendingRequest]:
        now = self._clock()
        with self._lock:
            req = self._data.get(key)
        if req is None or self._expired(req, now):
            return None
        return req

    def take(self, key: str) -> Optional[PendingRequest]:
        """Atomically read and remove the challenge for `key`."""
        now = self._clock()
        with self._lock:
            req = self._data.pop(key, None)
        if req is None or self._expired(req, now):
            return None
        return req

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def _expired(self, req: PendingRequest, now: float) -> bool:
        return now - req.created_at > self._ttl

    def _sweep_locked(self, now: float) -> None:
        stale = [k for k, r in self._data.items() if self._expired(r, now)]
        for k in stale:
            del self._data[k]
        self._last_sweep = now
