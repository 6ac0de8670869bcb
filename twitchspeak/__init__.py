"""TwitchSpeak API: Twitch login, sessions and the HTTP surface around them."""
