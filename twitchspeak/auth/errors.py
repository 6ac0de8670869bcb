from __future__ import annotations

from typing import Optional

GENERIC_ERROR_MESSAGE = "Something went wrong, sorry about that."


class AuthError(Exception):
    """Base class for failures of the login handshake."""

    status_code: int = 500
    error_code: str = "internal_error"
    message: str = GENERIC_ERROR_MESSAGE

    def __init__(self, detail: Optional[str] = None) -> None:
        # `detail` is for logs only; responses use `message`.
        super().__init__(detail or self.message)
        self.detail = detail or self.message


class ConfigurationError(AuthError):
    """Missing/invalid credentials or a callback URI that does not point at this server."""


class ClientAuthError(AuthError):
    status_code = 400


class InvalidState(ClientAuthError):
    error_code = "invalid_state"
    message = "State does not match required"


class InvalidNonce(ClientAuthError):
    error_code = "invalid_nonce"
    message = "Nonce does not match required"


class UpstreamError(AuthError):
    """Identity provider or network failure (token exchange, JWKS, userinfo)."""


class RateLimited(AuthError):
    status_code = 429
    error_code = "too_many_requests"

    def __init__(self, retry_after: float, reset_at: float) -> None:
        self.retry_after = max(0.0, float(retry_after))
        self.reset_at = float(reset_at)
        self.message = f"rate limit hit, wait {self.retry_after:.2f}s"
        super().__init__(self.message)
