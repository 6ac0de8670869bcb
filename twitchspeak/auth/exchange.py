from __future__ import annotations

import hmac
import logging
from typing import Optional

from twitchspeak.auth.errors import InvalidNonce, InvalidState, UpstreamError
from twitchspeak.auth.models import VerifiedIdentity
from twitchspeak.auth.oidc import IdentityProvider
from twitchspeak.auth.pending import PendingRequestStore
from twitchspeak.auth.session import SessionManager

logger = logging.getLogger(__name__)


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class ExchangeValidator:
    """
    Validates the provider callback. Each step is a one-shot gate, in order:

    1. already logged in -> nothing to do
    2. take the pending challenge (absent -> InvalidState)
    3. query state == pending state (else InvalidState, before any network call)
    4. code -> tokens (UpstreamError)
    5. assertion nonce == pending nonce (else InvalidNonce, before the claims fetch)
    6. userinfo claims (UpstreamError)

    The challenge is consumed in step 2 whatever happens next; a failed attempt must be
    restarted from the login endpoint. Nothing here retries.
    """

    def __init__(
        self,
        *,
        provider: IdentityProvider,
        pending: PendingRequestStore,
        sessions: SessionManager,
    ) -> None:
        self._provider = provider
        self._pending = pending
        self._sessions = sessions

    def complete(
        self,
        client_key: str,
        query_state: Optional[str],
        query_code: Optional[str],
        *,
        session_cookie: Optional[str] = None,
    ) -> Optional[VerifiedIdentity]:
        """
        Run the callback checks for `client_key`.

        Returns None when the caller already holds a live session (redirect home);
        otherwise the verified subject and its profile claims.
        """
        if self._sessions.current(session_cookie) is not None:
            return None

        pending = self._pending.take(client_key)
        if pending is None:
            raise InvalidState(f"no pending login for client={client_key}")
        if not _same(query_state or "", pending.state_token):
            raise InvalidState(f"state mismatch for client={client_key}")

        tokens = self._provider.exchange_code(query_code or "")

        assertion = self._provider.validate_id_token(tokens.id_token)
        nonce = str(assertion.get("nonce") or "")
        if not nonce or not _same(nonce, pending.nonce_token):
            raise InvalidNonce(f"nonce mismatch for client={client_key}")

        claims = self._provider.fetch_userinfo(tokens.access_token)
        subject = str(claims.get("sub") or "").strip()
        if not subject:
            raise UpstreamError("userinfo response missing sub")
        asserted = str(assertion.get("sub") or "").strip()
        if asserted and asserted != subject:
            raise UpstreamError("userinfo sub does not match id_token sub")

        logger.info("Login validated for subject=%s", subject)
        return VerifiedIdentity(subject=subject, claims=dict(claims))
