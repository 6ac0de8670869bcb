from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class PendingRequest:
    """An in-flight login challenge, owned by the PendingRequestStore."""

    correlation_key: str
    state_token: str
    nonce_token: str
    created_at: float


@dataclass(frozen=True)
class VerifiedIdentity:
    """Result of a fully validated callback."""

    subject: str  # provider's durable user id
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestOrigin:
    scheme: str  # http|https
    host: str  # hostname only, no scheme or port

    @property
    def secure(self) -> bool:
        return self.scheme == "https"


@dataclass(frozen=True)
class CookieScope:
    """
    Cookie attributes shared by establish and terminate.

    Browsers ignore a clearing Set-Cookie whose domain/path/secure/samesite differ from
    the original, so both sides must be built from the same value.
    """

    domain: Optional[str]
    secure: bool
    samesite: str = "strict"
    path: str = "/"
    httponly: bool = True


@dataclass(frozen=True)
class Session:
    session_id: str
    subject: str
    issued_at: float
    expires_at: float
    cookie_domain: Optional[str]
    secure: bool
    same_site: str
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subject": self.subject,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "cookie_domain": self.cookie_domain,
            "secure": self.secure,
            "same_site": self.same_site,
            "claims": dict(self.claims),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        claims = data.get("claims")
        return cls(
            session_id=str(data["session_id"]),
            subject=str(data["subject"]),
            issued_at=float(data["issued_at"]),
            expires_at=float(data["expires_at"]),
            cookie_domain=data.get("cookie_domain") or None,
            secure=bool(data.get("secure")),
            same_site=str(data.get("same_site") or "strict"),
            claims=dict(claims) if isinstance(claims, dict) else {},
        )


@dataclass(frozen=True)
class RateDecision:
    permit: bool
    retry_after: float  # seconds until the window resets (0 when permitted)
    reset_at: float  # wall-clock epoch seconds
    remaining: int = 0
