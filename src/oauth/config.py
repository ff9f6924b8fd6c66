"""
OAuth configuration for Gmail API integration.

This module provides configuration management for OAuth 2.0 authentication
with Google's APIs. Configuration can be loaded from environment variables
(plus the Google Cloud client keys file) or provided programmatically.

The config object is passed explicitly to every OAuth component; nothing in
this package reads process-wide state after construction.
"""

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import requests

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".gmail-mcp"
KEYS_FILENAME = "gcp-oauth.keys.json"
CREDENTIALS_FILENAME = "credentials.json"

DEFAULT_CALLBACK_URL = "http://localhost:3000/oauth2callback"
DEFAULT_CALLBACK_HOST = "localhost"
DEFAULT_CALLBACK_PORT = 3000
DEFAULT_CALLBACK_PATH = "/oauth2callback"

DEFAULT_KEYS_URL = "https://api.todofor.ai/gmail-oauth.json"

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.settings.basic",
]


def expand_path(value: Optional[str]) -> Optional[str]:
    """
    Expand ~, $VAR, ${VAR} and %VAR% references in a path.

    Unknown variables are left untouched.

    Args:
        value: Raw path from the environment (may be None or empty)

    Returns:
        Expanded path, or None if no value was given
    """
    if not value:
        return None

    expanded = os.path.expanduser(value)
    expanded = re.sub(
        r"%([^%]+)%", lambda m: os.environ.get(m.group(1), m.group(0)), expanded
    )
    return os.path.expandvars(expanded)


def parse_callback_url(callback_url: Optional[str]) -> tuple:
    """
    Split a callback URL into (host, port, path).

    Missing or unparsable parts fall back to the loopback defaults, so
    "http://localhost/cb" yields port 3000 and an invalid port yields
    the full default triple. "http://localhost:4100" keeps the root path "/".
    IPv6 hosts come back without brackets; build_redirect_uri adds them.

    Args:
        callback_url: Redirect URL requested by the caller

    Returns:
        Tuple of (host, preferred_port, path)
    """
    if not callback_url:
        return DEFAULT_CALLBACK_HOST, DEFAULT_CALLBACK_PORT, DEFAULT_CALLBACK_PATH

    try:
        parsed = urlparse(callback_url)
        port = parsed.port
    except ValueError:
        logger.warning(f"Invalid callback URL {callback_url!r}, using defaults")
        return DEFAULT_CALLBACK_HOST, DEFAULT_CALLBACK_PORT, DEFAULT_CALLBACK_PATH

    host = parsed.hostname or DEFAULT_CALLBACK_HOST
    # An explicit host with no path means the root path, as a browser would read it
    if parsed.netloc and not parsed.path:
        path = "/"
    elif parsed.path.startswith("/"):
        path = parsed.path
    else:
        path = DEFAULT_CALLBACK_PATH
    return host, port or DEFAULT_CALLBACK_PORT, path


def build_redirect_uri(host: str, port: int, path: str) -> str:
    """Format a loopback redirect URI, bracketing IPv6 literals."""
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}{path}"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class GmailOAuthConfig:
    """
    Configuration for Gmail OAuth 2.0.

    Attributes:
        client_id: OAuth client ID from the Google Cloud console
        client_secret: OAuth client secret from the Google Cloud console
        callback_host: Host advertised in the redirect URI (default: localhost)
        callback_port: Preferred port for the callback listener (default: 3000)
        callback_path: URL path for callback (default: /oauth2callback)
        bind_host: Interface the listener binds to (default: 127.0.0.1)
        strict_port: Fail instead of falling back when the preferred port is busy
        scopes: OAuth scopes requested during authorization
        authorization_url: Google OAuth authorization endpoint
        token_url: Google OAuth token endpoint
        token_file: Path to credential storage file
        refresh_buffer_seconds: Treat tokens as expired this many seconds early
        callback_timeout: Seconds to wait for the browser redirect
    """

    # Required - from the Google Cloud console
    client_id: str
    client_secret: str

    # Callback configuration
    callback_host: str = DEFAULT_CALLBACK_HOST
    callback_port: int = DEFAULT_CALLBACK_PORT
    callback_path: str = DEFAULT_CALLBACK_PATH
    bind_host: str = "127.0.0.1"
    strict_port: bool = False

    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    # Google OAuth endpoints
    authorization_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"

    token_file: str = str(CONFIG_DIR / CREDENTIALS_FILENAME)

    refresh_buffer_seconds: int = 300  # Refresh 5 min before expiry
    callback_timeout: int = 300

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.client_id:
            raise ConfigurationError("client_id cannot be empty")

        if not self.client_secret:
            raise ConfigurationError("client_secret cannot be empty")

        # 0 is allowed: it asks the OS for an ephemeral port
        if not isinstance(self.callback_port, int) or not (
            0 <= self.callback_port <= 65535
        ):
            raise ConfigurationError(
                f"callback_port must be between 0 and 65535, got {self.callback_port}"
            )

        if not self.callback_path.startswith("/"):
            raise ConfigurationError(
                f"callback_path must start with '/', got {self.callback_path!r}"
            )

        if not self.scopes:
            raise ConfigurationError("at least one scope is required")

        if self.refresh_buffer_seconds < 0:
            raise ConfigurationError("refresh_buffer_seconds cannot be negative")

        if self.callback_timeout <= 0:
            raise ConfigurationError("callback_timeout must be positive")

    @property
    def callback_url(self) -> str:
        """
        Preferred callback URL for OAuth redirect.

        This is what the caller asked for. The URL actually used in a flow
        may carry a different port if the preferred one was busy.

        Returns:
            Complete callback URL (e.g., http://localhost:3000/oauth2callback)
        """
        return build_redirect_uri(self.callback_host, self.callback_port, self.callback_path)

    @classmethod
    def from_env(cls, callback_url: Optional[str] = None) -> "GmailOAuthConfig":
        """
        Load configuration from environment variables and the client keys file.

        Optional environment variables:
            GMAIL_OAUTH_PATH: Client keys file (default: ~/.gmail-mcp/gcp-oauth.keys.json)
            GMAIL_CREDENTIALS_PATH: Credential file (default: ~/.gmail-mcp/credentials.json)
            GMAIL_OAUTH_URL: Where to download client keys when none exist locally
            GMAIL_CALLBACK_URL: Callback URL (default: http://localhost:3000/oauth2callback)
            GMAIL_OAUTH_STRICT_PORT: "true" to disable ephemeral port fallback

        Args:
            callback_url: Overrides GMAIL_CALLBACK_URL when given

        Returns:
            GmailOAuthConfig instance

        Raises:
            ConfigurationError: If client keys cannot be found or are invalid
        """
        keys_path = Path(
            expand_path(os.environ.get("GMAIL_OAUTH_PATH")) or CONFIG_DIR / KEYS_FILENAME
        )
        token_file = expand_path(os.environ.get("GMAIL_CREDENTIALS_PATH")) or str(
            CONFIG_DIR / CREDENTIALS_FILENAME
        )

        keys = load_client_keys(keys_path, os.environ.get("GMAIL_OAUTH_URL"))

        host, port, path = parse_callback_url(
            callback_url or os.environ.get("GMAIL_CALLBACK_URL")
        )

        return cls(
            client_id=keys["client_id"],
            client_secret=keys["client_secret"],
            callback_host=host,
            callback_port=port,
            callback_path=path,
            strict_port=_env_flag("GMAIL_OAUTH_STRICT_PORT"),
            token_file=token_file,
        )


def load_client_keys(keys_path: Path, keys_url: Optional[str] = None) -> dict:
    """
    Load the OAuth client keys ("installed" or "web" block).

    Lookup order:
        1. gcp-oauth.keys.json in the current directory (copied to keys_path)
        2. keys_path
        3. Download from keys_url (or the default URL) and cache at keys_path

    Args:
        keys_path: Canonical location of the client keys file
        keys_url: URL to download keys from when no file exists

    Returns:
        Dict with at least client_id and client_secret

    Raises:
        ConfigurationError: If keys cannot be located or have the wrong shape
    """
    keys_path.parent.mkdir(parents=True, exist_ok=True)

    local_keys = Path.cwd() / KEYS_FILENAME
    if local_keys.exists() and local_keys.resolve() != keys_path.resolve():
        shutil.copyfile(local_keys, keys_path)
        logger.info("OAuth keys found in current directory, copied to global config.")

    if keys_path.exists():
        try:
            content = json.loads(keys_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigurationError(f"Could not read OAuth keys at {keys_path}: {e}") from e
    else:
        url = keys_url or DEFAULT_KEYS_URL
        try:
            response = requests.get(url, timeout=30)
            response.raise_for_status()
            content = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ConfigurationError(
                f"No OAuth keys at {keys_path} and download from {url} failed: {e}"
            ) from e
        keys_path.write_text(json.dumps(content))
        logger.info(f"OAuth keys fetched from {url} and saved to global config.")

    keys = content.get("installed") or content.get("web") if isinstance(content, dict) else None
    if not keys or not keys.get("client_id") or not keys.get("client_secret"):
        raise ConfigurationError(
            "Invalid OAuth keys file format. File should contain either "
            '"installed" or "web" credentials with client_id and client_secret.'
        )

    return keys
