#!/usr/bin/env python3
"""
TwitchSpeak API - Twitch login and session service.
"""

import argparse
import json
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="TwitchSpeak API server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration is read from TWITCHSPEAK_* environment variables, e.g.:
  TWITCHSPEAK_TWITCH_CLIENT_ID, TWITCHSPEAK_TWITCH_CLIENT_SECRET,
  TWITCHSPEAK_TWITCH_REDIRECT_URI, TWITCHSPEAK_SECRET_KEY,
  TWITCHSPEAK_API_HOST, TWITCHSPEAK_API_PORT, TWITCHSPEAK_REDIS_URL
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API server")
    parser.add_argument("--print-config", action="store_true", help="Print non-secret configuration and exit")
    parser.add_argument("--log-level", help="Override LOG_LEVEL (debug, info, warning, error)")

    args = parser.parse_args()

    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level

    from twitchspeak.auth.config import load_auth_config, validate_auth_config
    from twitchspeak.auth.errors import ConfigurationError

    try:
        if args.print_config:
            cfg = load_auth_config()
            print(json.dumps(cfg.public_summary(), indent=2, sort_keys=True))
            validate_auth_config(cfg)
            return

        if args.serve:
            from twitchspeak.api.server import run

            run()
            return

        parser.print_help()

    except ConfigurationError as e:
        print(f"Configuration error: {e.detail}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
