from __future__ import annotations

import logging
from typing import Optional

from twitchspeak.auth.oidc import IdentityProvider
from twitchspeak.auth.pending import PendingRequestStore
from twitchspeak.auth.session import SessionManager
from twitchspeak.auth.util import NONCE_LENGTH, STATE_LENGTH, random_token

logger = logging.getLogger(__name__)


class AuthorizationInitiator:
    """
    Starts a login attempt: fresh state + nonce, registered for the client, embedded in
    the provider authorization URL.

    State protects the redirect round-trip (CSRF); the nonce ends up inside the
    identity assertion and protects against assertion substitution/replay.
    """

    def __init__(
        self,
        *,
        provider: IdentityProvider,
        pending: PendingRequestStore,
        sessions: SessionManager,
        home_url: str,
    ) -> None:
        self._provider = provider
        self._pending = pending
        self._sessions = sessions
        self._home_url = home_url

    def begin(self, client_key: str, *, session_cookie: Optional[str] = None) -> str:
        """Return the URL to redirect to (home when the caller is already logged in)."""
        if self._sessions.current(session_cookie) is not None:
            return self._home_url

        req = self._pending.register(
            client_key,
            state_token=random_token(STATE_LENGTH),
            nonce_token=random_token(NONCE_LENGTH),
        )
        logger.debug("Registered login challenge for client=%s", client_key)
        return self._provider.authorize_url(state=req.state_token, nonce=req.nonce_token)
