#!/usr/bin/env python3
"""
Gmail OAuth Authorization Script

This script runs the OAuth authorization flow with Google. It:
- Starts a loopback callback server (default http://localhost:3000/oauth2callback)
- Prints the authorization URL and opens the browser
- Exchanges the returned code for tokens and saves them

After successful authorization, credentials are saved to:
    ~/.gmail-mcp/credentials.json   (override with GMAIL_CREDENTIALS_PATH)

Usage:
    # Run authorization flow
    python scripts/authorize_gmail.py

    # Use a different callback URL
    python scripts/authorize_gmail.py http://localhost:4100/callback

    # Show current status / revoke existing authorization
    python scripts/authorize_gmail.py --status
    python scripts/authorize_gmail.py --revoke

Prerequisites:
    - OAuth client keys at ~/.gmail-mcp/gcp-oauth.keys.json (or ./gcp-oauth.keys.json,
      or GMAIL_OAUTH_PATH)
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.oauth.coordinator import OAuthCoordinator
from src.oauth.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ListenerBindError,
    TokenExchangeError,
    TokenStorageError,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def authorize(callback_url: Optional[str] = None, open_browser: bool = True) -> int:
    """
    Run the authorization flow.

    Args:
        callback_url: Requested redirect URL (port may change if busy)
        open_browser: Whether to automatically open browser

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        coordinator = OAuthCoordinator()
        credential = coordinator.authenticate(
            callback_url=callback_url, open_browser=open_browser
        )
    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        logger.error("")
        logger.error("Place your OAuth client keys at ~/.gmail-mcp/gcp-oauth.keys.json")
        logger.error("or point GMAIL_OAUTH_PATH at them.")
        return 1
    except ListenerBindError as e:
        logger.error(f"❌ Could not start callback server: {e}")
        return 1
    except (AuthorizationError, TokenExchangeError, TokenStorageError) as e:
        logger.error(f"❌ Authorization failed: {e}")
        logger.error("   Run this script again to retry")
        return 1

    logger.info("✅ Authentication completed successfully")
    logger.info(f"   Credentials saved to: {coordinator.config.token_file}")
    logger.info(f"   Access token expires at: {credential.expires_at.isoformat()}")
    if not credential.refresh_token:
        logger.warning("⚠️  No refresh token issued; you will need to re-authorize on expiry")
    return 0


def status() -> int:
    """Print current authorization status."""
    try:
        coordinator = OAuthCoordinator()
    except ConfigurationError as e:
        logger.error(f"❌ Configuration error: {e}")
        return 1

    info = coordinator.get_status()
    if not info["authorized"]:
        logger.info(f"Not authorized: {info.get('message', 'access token expired')}")
        return 1

    logger.info("✅ Authorized")
    logger.info(f"   Expires at: {info['expires_at']}")
    logger.info(f"   Expires in: {int(info['expires_in_seconds'])} seconds")
    logger.info(f"   Refreshable: {info['refreshable']}")
    logger.info(f"   Scopes: {' '.join(info['scopes'])}")
    return 0


def revoke() -> int:
    """
    Revoke current authorization.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        coordinator = OAuthCoordinator()

        if not coordinator.storage.exists():
            logger.info("No authorization found to revoke")
            return 0

        coordinator.revoke()
        logger.info("✅ Authorization revoked")
        logger.info(f"   Credential file deleted: {coordinator.config.token_file}")
        logger.info("")
        logger.info("Run this script again to re-authorize")
        return 0

    except (ConfigurationError, TokenStorageError) as e:
        logger.error(f"❌ Error revoking authorization: {e}")
        return 1


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Gmail OAuth Authorization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  GMAIL_OAUTH_PATH          OAuth client keys file
  GMAIL_CREDENTIALS_PATH    Where credentials are stored
  GMAIL_OAUTH_STRICT_PORT   "true" to fail instead of using another port

Examples:
  python scripts/authorize_gmail.py
  python scripts/authorize_gmail.py http://localhost:4100/callback --no-browser
  python scripts/authorize_gmail.py --revoke
        """,
    )
    parser.add_argument(
        "callback_url",
        nargs="?",
        default=None,
        help="Callback URL (default: http://localhost:3000/oauth2callback)",
    )
    parser.add_argument(
        "--revoke",
        action="store_true",
        help="Revoke existing authorization and delete credentials",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show current authorization status",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Don't automatically open browser (display URL only)",
    )

    args = parser.parse_args()

    if args.revoke:
        return revoke()

    if args.status:
        return status()

    return authorize(callback_url=args.callback_url, open_browser=not args.no_browser)


if __name__ == "__main__":
    sys.exit(main())
