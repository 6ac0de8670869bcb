from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Protocol, Tuple

from twitchspeak.auth.models import RateDecision


class CounterStore(Protocol):
    """
    Fixed-window counters shared by every request (and every instance, for Redis).
    """

    def hit(self, key: str, window_seconds: float) -> Tuple[int, float]:
        """
        Atomically increment the counter for `key`, starting a new window if none is open.

        Returns (count_after_increment, seconds_until_window_reset).
        """


class InMemoryCounterStore:
    """Process-local counters. Only correct for a single instance."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._windows: Dict[str, List[float]] = {}  # key -> [window_start, count]
        self._lock = threading.Lock()
        self._clock = clock
        self._last_sweep = clock()

    def hit(self, key: str, window_seconds: float) -> Tuple[int, float]:
        now = self._clock()
        with self._lock:
            w = self._windows.get(key)
            if w is None or now - w[0] >= window_seconds:
                w = [now, 0]
                self._windows[key] = w
            # Drop closed windows at most once per window length.
            if now - self._last_sweep >= window_seconds:
                stale = [k for k, v in self._windows.items() if now - v[0] >= window_seconds]
                for k in stale:
                    del self._windows[k]
                self._last_sweep = now
            w[1] += 1
            return int(w[1]), max(0.0, window_seconds - (now - w[0]))

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class RedisCounterStore:
    """
    Counters in Redis, shared across server instances.

    SET NX PX opens the window with its expiry, INCR counts, PTTL reports the reset.
    All three run in one MULTI/EXEC so concurrent hits never both read a stale count.
    """

    def __init__(self, client: Any, prefix: str = "twitchspeak:ratelimit:") -> None:
        self._client = client
        self._prefix = prefix

    def hit(self, key: str, window_seconds: float) -> Tuple[int, float]:
        window_ms = max(1, int(window_seconds * 1000))
        rkey = self._prefix + key
        pipe = self._client.pipeline(transaction=True)
        pipe.set(rkey, 0, px=window_ms, nx=True)
        pipe.incr(rkey)
        pipe.pttl(rkey)
        _, count, ttl_ms = pipe.execute()
        ttl_ms = int(ttl_ms)
        if ttl_ms < 0:
            # Key lost its expiry (e.g. manual edit); never let a counter live forever.
            self._client.pexpire(rkey, window_ms)
            ttl_ms = window_ms
        return int(count), ttl_ms / 1000.0


class RateLimiter:
    """
    Fixed budget of requests per fixed window, per client key.

    The increment and the budget comparison use the value returned by the store's
    atomic increment, so two requests racing at the boundary cannot both get in.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        limit: int = 3,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._store = store
        self._limit = limit
        self._window = float(window_seconds)
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    def allow(self, client_key: str) -> RateDecision:
        count, reset_in = self._store.hit(client_key, self._window)
        reset_at = self._clock() + reset_in
        if count > self._limit:
            # A deny must always tell the client to wait a little.
            return RateDecision(permit=False, retry_after=max(reset_in, 0.001), reset_at=reset_at, remaining=0)
        return RateDecision(permit=True, retry_after=0.0, reset_at=reset_at, remaining=self._limit - count)
