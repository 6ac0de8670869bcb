from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict
from urllib.parse import parse_qs, urlparse

import pytest

from twitchspeak.auth.errors import ConfigurationError, InvalidNonce, InvalidState, RateLimited, UpstreamError
from twitchspeak.auth.exchange import ExchangeValidator
from twitchspeak.auth.flow import build_auth_runtime
from twitchspeak.auth.initiator import AuthorizationInitiator
from twitchspeak.auth.models import RequestOrigin
from twitchspeak.auth.pending import PendingRequestStore
from twitchspeak.auth.rate_limit import InMemoryCounterStore
from twitchspeak.auth.session import InMemorySessionStore, RedisSessionStore, SessionManager
from twitchspeak.auth.util import NONCE_LENGTH, STATE_LENGTH

HOME = "http://localhost:5173"
ORIGIN = RequestOrigin(scheme="http", host="localhost")


class _RecordingSessionStore(InMemorySessionStore):
    def __init__(self) -> None:
        super().__init__()
        self.saves = 0

    def save(self, session, ttl_seconds):  # type: ignore[no-untyped-def]
        self.saves += 1
        super().save(session, ttl_seconds)


def _query(url: str) -> Dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


@pytest.fixture
def engine(fake_provider):  # type: ignore[no-untyped-def]
    pending = PendingRequestStore()
    sessions = SessionManager(_RecordingSessionStore(), secret_key="k")
    initiator = AuthorizationInitiator(provider=fake_provider, pending=pending, sessions=sessions, home_url=HOME)
    validator = ExchangeValidator(provider=fake_provider, pending=pending, sessions=sessions)
    return initiator, validator, pending, sessions


def test_begin_registers_fresh_state_and_nonce(engine) -> None:  # type: ignore[no-untyped-def]
    initiator, _, pending, _ = engine

    url = initiator.begin("1.2.3.4")

    q = _query(url)
    req = pending.get("1.2.3.4")
    assert req is not None
    assert url.startswith("https://id.twitch.tv/oauth2/authorize?")
    assert q["state"] == req.state_token
    assert q["nonce"] == req.nonce_token
    assert len(req.state_token) == STATE_LENGTH
    assert len(req.nonce_token) == NONCE_LENGTH


def test_begin_with_live_session_goes_home(engine) -> None:  # type: ignore[no-untyped-def]
    initiator, _, pending, sessions = engine
    cookie = sessions.establish("abc", ORIGIN)["value"]

    assert initiator.begin("1.2.3.4", session_cookie=cookie) == HOME
    assert pending.get("1.2.3.4") is None


def test_full_round_trip_establishes_session(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, sessions = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)

    identity = validator.complete("1.2.3.4", state, code)

    assert identity is not None
    assert identity.subject == "abc"
    assert identity.claims["preferred_username"] == "abc_streams"
    assert fake_provider.calls == ["exchange", "validate", "userinfo"]

    cookie = sessions.establish(identity.subject, ORIGIN)["value"]
    assert sessions.current(cookie) == "abc"


def test_complete_with_live_session_is_a_no_op(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    _, validator, _, sessions = engine
    cookie = sessions.establish("abc", ORIGIN)["value"]

    assert validator.complete("1.2.3.4", "whatever", "code", session_cookie=cookie) is None
    assert fake_provider.calls == []


def test_without_pending_challenge_state_is_invalid(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    _, validator, _, _ = engine
    with pytest.raises(InvalidState):
        validator.complete("1.2.3.4", "S" * 16, "code")
    assert fake_provider.calls == []


def test_one_character_state_difference_fails_before_exchange(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, pending, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)
    tampered = state[:-1] + ("A" if state[-1] != "A" else "B")

    with pytest.raises(InvalidState):
        validator.complete("1.2.3.4", tampered, code)

    assert fake_provider.calls == []
    # The challenge is gone; the genuine state no longer works either.
    assert pending.get("1.2.3.4") is None
    with pytest.raises(InvalidState):
        validator.complete("1.2.3.4", state, code)


@pytest.mark.parametrize("state", [None, ""])
def test_missing_state_is_invalid(engine, fake_provider, state) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    initiator.begin("1.2.3.4")
    with pytest.raises(InvalidState):
        validator.complete("1.2.3.4", state, "code")
    assert fake_provider.calls == []


def test_replayed_callback_is_rejected(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)

    assert validator.complete("1.2.3.4", state, code) is not None
    with pytest.raises(InvalidState):
        validator.complete("1.2.3.4", state, code)


def test_callback_from_other_client_is_rejected(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)

    with pytest.raises(InvalidState):
        validator.complete("5.6.7.8", state, code)


def test_nonce_mismatch_fails_before_userinfo(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)
    fake_provider.assertion_nonce = "x" * NONCE_LENGTH

    with pytest.raises(InvalidNonce):
        validator.complete("1.2.3.4", state, code)

    assert fake_provider.calls == ["exchange", "validate"]


def test_exchange_failure_is_upstream_error(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    fake_provider.approve(state)

    with pytest.raises(UpstreamError):
        validator.complete("1.2.3.4", state, "code-the-provider-never-issued")


def test_userinfo_failure_is_upstream_error(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)
    fake_provider.userinfo_error = UpstreamError("userinfo timed out after 10.0s")

    with pytest.raises(UpstreamError):
        validator.complete("1.2.3.4", state, code)


def test_userinfo_without_subject_is_upstream_error(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)
    fake_provider.claims = {"preferred_username": "abc_streams"}

    with pytest.raises(UpstreamError):
        validator.complete("1.2.3.4", state, code)


def test_subject_must_agree_with_assertion(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    state = _query(initiator.begin("1.2.3.4"))["state"]
    code = fake_provider.approve(state)
    fake_provider.assertion_sub = "someone-else"

    with pytest.raises(UpstreamError):
        validator.complete("1.2.3.4", state, code)


def test_only_latest_challenge_for_a_client_is_valid(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, _ = engine
    first = _query(initiator.begin("1.2.3.4"))["state"]
    second = _query(initiator.begin("1.2.3.4"))["state"]
    assert first != second

    code = fake_provider.approve(second)
    identity = validator.complete("1.2.3.4", second, code)
    assert identity is not None and identity.subject == "abc"

    initiator.begin("1.2.3.4")
    stale_code = fake_provider.approve(first)
    with pytest.raises(InvalidState):
        validator.complete("1.2.3.4", first, stale_code)


def test_concurrent_logins_for_distinct_clients(engine, fake_provider) -> None:  # type: ignore[no-untyped-def]
    initiator, validator, _, sessions = engine
    keys = [f"10.0.0.{i}" for i in range(24)]
    codes = {}
    states = {}
    for k in keys:
        states[k] = _query(initiator.begin(k))["state"]
        codes[k] = fake_provider.approve(states[k], code=f"code-{k}")

    def _login(k: str) -> str:
        identity = validator.complete(k, states[k], codes[k])
        assert identity is not None
        return sessions.establish(identity.subject, ORIGIN)["value"]

    with ThreadPoolExecutor(max_workers=8) as pool:
        cookies = list(pool.map(_login, keys))

    assert len(set(cookies)) == len(keys)
    assert all(sessions.current(c) == "abc" for c in cookies)


# --- async boundary / runtime ---


def _runtime(make_config, fake_provider, **kw):  # type: ignore[no-untyped-def]
    return build_auth_runtime(
        make_config(**kw),
        provider=fake_provider,
        counter_store=InMemoryCounterStore(),
        session_store=_RecordingSessionStore(),
    )


def test_login_flow_complete_returns_cookie(make_config, fake_provider) -> None:  # type: ignore[no-untyped-def]
    rt = _runtime(make_config, fake_provider)

    async def _go():  # type: ignore[no-untyped-def]
        url = await rt.flow.begin("1.2.3.4")
        state = _query(url)["state"]
        code = fake_provider.approve(state)
        return await rt.flow.complete("1.2.3.4", state, code, ORIGIN)

    cookie = asyncio.run(_go())
    assert cookie is not None
    assert rt.sessions.current(cookie["value"]) == "abc"

    cleared = asyncio.run(rt.flow.logout(cookie["value"], ORIGIN))
    assert cleared["max_age"] == 0
    assert rt.sessions.current(cookie["value"]) is None


def test_cancelled_callback_never_creates_a_session(make_config, fake_provider) -> None:  # type: ignore[no-untyped-def]
    store = _RecordingSessionStore()
    rt = build_auth_runtime(
        make_config(), provider=fake_provider, counter_store=InMemoryCounterStore(), session_store=store
    )
    started = threading.Event()
    release = threading.Event()
    finished = threading.Event()
    real_exchange = fake_provider.exchange_code
    real_userinfo = fake_provider.fetch_userinfo

    def _slow_exchange(code):  # type: ignore[no-untyped-def]
        started.set()
        release.wait(5)
        return real_exchange(code)

    def _userinfo(token):  # type: ignore[no-untyped-def]
        try:
            return real_userinfo(token)
        finally:
            finished.set()

    fake_provider.exchange_code = _slow_exchange
    fake_provider.fetch_userinfo = _userinfo

    async def _go() -> None:
        state = _query(await rt.flow.begin("1.2.3.4"))["state"]
        code = fake_provider.approve(state)
        task = asyncio.ensure_future(rt.flow.complete("1.2.3.4", state, code, ORIGIN))
        while not started.is_set():
            await asyncio.sleep(0.01)
        task.cancel()
        release.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        # let the abandoned worker thread run to the end
        while not finished.is_set():
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)

    asyncio.run(_go())
    assert store.saves == 0


def test_runtime_admit_raises_when_over_budget(make_config, fake_provider) -> None:  # type: ignore[no-untyped-def]
    rt = _runtime(make_config, fake_provider, rate_limit=3, rate_window_seconds=60.0)

    async def _go():  # type: ignore[no-untyped-def]
        for _ in range(3):
            await rt.admit("1.2.3.4")
        await rt.admit("1.2.3.4")

    with pytest.raises(RateLimited) as ei:
        asyncio.run(_go())
    assert ei.value.retry_after > 0
    assert ei.value.status_code == 429


def test_build_runtime_rejects_bad_config(make_config, fake_provider) -> None:  # type: ignore[no-untyped-def]
    with pytest.raises(ConfigurationError):
        build_auth_runtime(make_config(twitch_client_secret=None), provider=fake_provider)


def test_build_runtime_uses_redis_when_configured(monkeypatch, make_config, fake_provider) -> None:  # type: ignore[no-untyped-def]
    from unittest.mock import MagicMock

    import twitchspeak.auth.flow as flow_mod

    client = MagicMock()
    seen = []
    monkeypatch.setattr(flow_mod, "_redis_client", lambda url: seen.append(url) or client)

    rt = build_auth_runtime(make_config(redis_url="redis://cache:6379/0"), provider=fake_provider)

    assert seen == ["redis://cache:6379/0"]
    rt.sessions.establish("abc", ORIGIN)
    client.setex.assert_called_once()
    assert isinstance(rt.sessions._store, RedisSessionStore)
