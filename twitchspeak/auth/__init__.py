"""
Authentication engine for the TwitchSpeak API.

Design goals:
- OAuth2 authorization-code flow against Twitch (OIDC), one-shot state + nonce per attempt.
- Explicitly constructed stores (no module-level singletons) so instances stay isolated.
- Cookie-based session (HttpOnly, SameSite=Strict) referencing server-side session data.
"""
