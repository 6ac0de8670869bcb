"""
TwitchSpeak HTTP API.

Exposes the Twitch login handshake (login, callback, logout), the current-user endpoint
and a health probe. Every endpoint except the health probe sits behind the per-client
rate limiter.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from twitchspeak.api import responses
from twitchspeak.auth.config import AuthConfig, load_auth_config
from twitchspeak.auth.deps import client_key, request_origin, session_cookie
from twitchspeak.auth.errors import (
    AuthError,
    ClientAuthError,
    ConfigurationError,
    RateLimited,
    UpstreamError,
)
from twitchspeak.auth.flow import AuthRuntime, build_auth_runtime

logger = logging.getLogger(__name__)

# Profile fields surfaced by /users/me (subset of the userinfo claims kept in the session).
_PROFILE_CLAIMS = ("preferred_username", "email", "email_verified", "picture", "updated_at")


def _is_rate_exempt(request: Request) -> bool:
    return request.method == "OPTIONS" or request.url.path == "/healthz"


def _no_store(resp):  # type: ignore[no-untyped-def]
    resp.headers["Cache-Control"] = "no-store"
    return resp


def create_app(cfg: Optional[AuthConfig] = None, **collaborators: Any) -> FastAPI:
    """
    Build the application. Raises ConfigurationError before any route is served when
    credentials are missing or the callback URI does not point at this server.

    `collaborators` are forwarded to `build_auth_runtime` (provider, pending,
    counter_store, session_store) so tests and embedders can inject their own.
    """
    cfg = cfg or load_auth_config()
    runtime: AuthRuntime = build_auth_runtime(cfg, **collaborators)
    logger.info("Auth config: %s", cfg.public_summary())

    app = FastAPI(title="TwitchSpeak API", debug=cfg.debug)
    app.state.auth = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "PATCH"],
        allow_headers=["Origin"],
        expose_headers=["Content-Length"],
        max_age=12 * 3600,
    )

    @app.middleware("http")
    async def log_and_limit(request: Request, call_next):
        """Log every request and apply the per-client rate limit."""
        start_time = time.time()
        logger.debug("%s %s", request.method, request.url.path)
        try:
            if not _is_rate_exempt(request):
                key = client_key(request, cfg)
                try:
                    await runtime.admit(key)
                except RateLimited as e:
                    logger.info("Rate limited client=%s path=%s retry_after=%.3fs", key, request.url.path, e.retry_after)
                    return responses.too_many_requests(e)

            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        if isinstance(exc, RateLimited):
            return responses.too_many_requests(exc)
        if isinstance(exc, ClientAuthError):
            # Client-caused: worth a log line, not an alarm.
            logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.error_code, exc.detail)
            return _no_store(responses.error(exc.status_code, exc.error_code, exc.message))
        if isinstance(exc, UpstreamError):
            logger.warning("%s %s upstream failure: %s", request.method, request.url.path, exc.detail)
        elif isinstance(exc, ConfigurationError):
            logger.error("%s %s misconfigured: %s", request.method, request.url.path, exc.detail)
        else:
            logger.error("%s %s auth failure: %s", request.method, request.url.path, exc.detail)
        return _no_store(responses.internal_error())

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            return responses.error(404, "not_found", "The requested resource was not found")
        if exc.status_code == 405:
            return responses.error(405, "method_not_allowed", "The requested method is not allowed")
        if exc.status_code >= 500:
            return responses.internal_error()
        return responses.error(exc.status_code, "error", str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, _exc: RequestValidationError) -> JSONResponse:
        return responses.error(400, "bad_request", "The request is invalid")

    @app.get("/")
    async def home(error: str = Query(""), error_code: str = Query("")) -> JSONResponse:
        # The frontend bounces provider/flow errors here as query parameters.
        if error:
            return responses.error(400, error_code or "error", error)
        return responses.success("TwitchSpeak API")

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    @app.get(f"/auth/{cfg.provider_name}/login")
    async def auth_login(request: Request) -> RedirectResponse:
        """Start the login handshake (or go home when a session is already live)."""
        url = await runtime.flow.begin(client_key(request, cfg), session_cookie=session_cookie(request))
        return _no_store(RedirectResponse(url=url, status_code=307))

    async def auth_callback(request: Request, state: str = Query(""), code: str = Query("")) -> RedirectResponse:
        """Provider redirect target: validate, then set the session cookie and go home."""
        cookie_kwargs = await runtime.flow.complete(
            client_key(request, cfg),
            state,
            code,
            request_origin(request, cfg),
            session_cookie=session_cookie(request),
        )
        resp = _no_store(RedirectResponse(url=cfg.frontend_url, status_code=307))
        if cookie_kwargs is not None:
            resp.set_cookie(**cookie_kwargs)
        return resp

    app.add_api_route(cfg.callback_path, auth_callback, methods=["GET"], name="auth_callback")

    @app.get("/auth/logout")
    async def auth_logout(request: Request) -> JSONResponse:
        clear_kwargs = await runtime.flow.logout(session_cookie(request), request_origin(request, cfg))
        resp = _no_store(responses.success("Successfully logged out"))
        resp.set_cookie(**clear_kwargs)
        return resp

    @app.get("/users/me")
    def users_me(request: Request) -> JSONResponse:
        sess = runtime.sessions.current_session(session_cookie(request))
        if sess is None:
            return responses.error(401, "unauthorized", "You are not authorized to access this resource")
        profile: Dict[str, Any] = {"twitch_id": sess.subject, "connected_since": sess.issued_at}
        for k in _PROFILE_CLAIMS:
            if k in sess.claims:
                profile[k] = sess.claims[k]
        return _no_store(responses.success(profile))

    return app


def run() -> None:
    import uvicorn

    # Configure logging for the application
    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    cfg = load_auth_config()
    try:
        app = create_app(cfg)
    except ConfigurationError as e:
        logger.error("Refusing to start: %s", e.detail)
        raise

    # Map Python logging levels to uvicorn log levels
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting server on %s:%d (log_level=%s)", cfg.api_host, cfg.api_port, log_level)
    uvicorn.run(app, host=cfg.api_host, port=cfg.api_port, log_level=uvicorn_log_level)
