"""
OAuth coordinator for high-level OAuth operations.

This module provides the main interface for OAuth operations in the
application. It drives the authorization-code flow end to end (listener,
authorization URL, code exchange, persistence) and provides simple methods
for obtaining valid access tokens.
"""

import logging
import secrets
import threading
import uuid
import webbrowser
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from urllib.parse import urlencode

from .auth_server import OAuthCallbackServer
from .config import GmailOAuthConfig, build_redirect_uri, parse_callback_url
from .exceptions import FlowInProgressError, GmailOAuthError
from .token_manager import TokenManager
from .token_storage import Credential, CredentialStore

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    """Authorization flow states."""

    IDLE = "idle"
    LISTENER_BOUND = "listener_bound"
    AWAITING_REDIRECT = "awaiting_redirect"
    EXCHANGING = "exchanging"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class AuthorizationRequest:
    """
    The one live authorization request of a flow.

    Attributes:
        scopes: Requested OAuth scopes
        host: Host advertised in the redirect URI
        port: Port the listener actually bound
        path: Callback path
        state: Random value echoed back by Google
        flow_id: Identifier used in logs
    """

    scopes: List[str]
    host: str
    port: int
    path: str
    state: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    flow_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def redirect_uri(self) -> str:
        """Redirect URI used for both the authorization URL and the exchange."""
        return build_redirect_uri(self.host, self.port, self.path)


def build_authorization_url(config: GmailOAuthConfig, auth_request: AuthorizationRequest) -> str:
    """
    Generate the Google authorization URL for a request.

    access_type=offline plus prompt=consent makes Google issue a refresh
    token even when the user authorized this client before.

    Returns:
        Complete authorization URL with query parameters
    """
    params = {
        "client_id": config.client_id,
        "redirect_uri": auth_request.redirect_uri,
        "response_type": "code",
        "scope": " ".join(auth_request.scopes),
        "access_type": "offline",
        "prompt": "consent",
        "state": auth_request.state,
    }
    url = f"{config.authorization_url}?{urlencode(params)}"
    logger.debug(f"Generated authorization URL: {url}")
    return url


class OAuthCoordinator:
    """
    High-level coordinator for OAuth operations.

    This is the main interface that applications should use for OAuth.
    One flow at a time per instance; a second concurrent authenticate()
    raises FlowInProgressError.

    Example:
        coordinator = OAuthCoordinator()
        if coordinator.ensure_authorized():
            token = coordinator.get_access_token()
            # Use token for API calls
    """

    def __init__(
        self,
        config: Optional[GmailOAuthConfig] = None,
        storage: Optional[CredentialStore] = None,
    ):
        """
        Initialize OAuth coordinator.

        Args:
            config: OAuth configuration (loads from environment if not provided)
            storage: Credential storage (created from config if not provided)
        """
        self.config = config or GmailOAuthConfig.from_env()
        self.storage = storage or CredentialStore(
            self.config.token_file, self.config.refresh_buffer_seconds
        )
        self.token_manager = TokenManager(self.config, self.storage)
        self.state = FlowState.IDLE
        self.current_request: Optional[AuthorizationRequest] = None
        self._flow_lock = threading.Lock()

    def authenticate(
        self,
        callback_url: Optional[str] = None,
        open_browser: bool = True,
        timeout: Optional[float] = None,
    ) -> Credential:
        """
        Run the complete OAuth authorization flow.

        This orchestrates the full authorization process:
        1. Binds the callback listener (preferred port or OS fallback)
        2. Builds the authorization URL with the port actually bound
        3. Presents the URL and waits for the redirect
        4. Exchanges the code using the identical redirect URI
        5. Saves the credential

        Args:
            callback_url: Requested redirect URL (default from config)
            open_browser: Whether to automatically open browser
            timeout: Seconds to wait for the redirect (default from config)

        Returns:
            The freshly saved Credential

        Raises:
            FlowInProgressError: If another flow is running on this instance
            ListenerBindError: If the listener cannot bind
            AuthorizationError: If the redirect carried an error, no code, or
                never arrived
            TokenExchangeError: If Google rejected the code
        """
        if not self._flow_lock.acquire(blocking=False):
            raise FlowInProgressError("An authorization flow is already in progress")

        try:
            self.state = FlowState.IDLE
            return self._run_flow(callback_url, open_browser, timeout)
        except Exception as e:
            self.state = FlowState.FAILED
            logger.error(f"Authorization failed: {e}")
            raise
        finally:
            self.current_request = None
            self._flow_lock.release()

    def _run_flow(
        self, callback_url: Optional[str], open_browser: bool, timeout: Optional[float]
    ) -> Credential:
        if callback_url:
            host, preferred_port, path = parse_callback_url(callback_url)
        else:
            host = self.config.callback_host
            preferred_port = self.config.callback_port
            path = self.config.callback_path

        auth_request = AuthorizationRequest(
            scopes=list(self.config.scopes), host=host, port=preferred_port, path=path
        )
        server = OAuthCallbackServer(
            # An IPv6 redirect host must be reachable on the IPv6 loopback
            bind_host="::1" if ":" in host else self.config.bind_host,
            expected_state=auth_request.state,
            strict_port=self.config.strict_port,
        )

        try:
            actual_port = server.start(preferred_port, path)
            if preferred_port and actual_port != preferred_port:
                logger.warning(
                    f"Callback port {preferred_port} was busy, using {actual_port}. "
                    f"If your OAuth client only allows exact redirect URIs, "
                    f"register {build_redirect_uri(host, actual_port, path)} or free the port."
                )
            auth_request.port = actual_port
            self.current_request = auth_request
            self.state = FlowState.LISTENER_BOUND
            logger.info(
                f"Flow {auth_request.flow_id}: using OAuth callback {auth_request.redirect_uri}"
            )

            auth_url = build_authorization_url(self.config, auth_request)
            self._present(auth_url, open_browser)

            self.state = FlowState.AWAITING_REDIRECT
            code = server.wait_for_callback(timeout or self.config.callback_timeout)
        finally:
            server.stop()

        self.state = FlowState.EXCHANGING
        credential = self.token_manager.exchange_code_for_tokens(
            code, redirect_uri=auth_request.redirect_uri
        )

        self.state = FlowState.RESOLVED
        logger.info(f"Flow {auth_request.flow_id}: authorization complete, credentials saved")
        return credential

    def _present(self, auth_url: str, open_browser: bool) -> None:
        print("Please visit this URL to authenticate:")
        print(f"\n  {auth_url}\n")

        if open_browser:
            try:
                webbrowser.open(auth_url)
            except webbrowser.Error as e:
                logger.warning(f"Could not open browser automatically: {e}")

    def ensure_authorized(self, auto_open_browser: bool = True) -> bool:
        """
        Ensure we have valid authorization, running flow if needed.

        Args:
            auto_open_browser: Whether to auto-open browser for auth

        Returns:
            True if authorized (or authorization succeeded), False if failed
        """
        if self.token_manager.is_authorized():
            logger.info("Already authorized")
            return True

        logger.info("No valid credentials found, starting authorization flow")
        try:
            self.authenticate(open_browser=auto_open_browser)
        except FlowInProgressError:
            raise
        except GmailOAuthError:
            return False
        return True

    def get_access_token(self) -> str:
        """
        Get a valid access token for API calls.

        Refreshes the token if it's expired or expiring soon.

        Raises:
            CredentialNotFoundError: If not authorized
            CredentialCorruptError: If stored credentials are unreadable
            TokenRefreshError: If the token cannot be refreshed
        """
        return self.token_manager.get_valid_access_token()

    def get_authorization_header(self) -> dict:
        """
        Get Authorization header dict for API requests.

        Returns:
            Dict with Authorization header: {"Authorization": "Bearer <token>"}
        """
        token = self.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    def is_authorized(self) -> bool:
        """True if we have valid (or refreshable) credentials."""
        return self.token_manager.is_authorized()

    def get_status(self) -> dict:
        """
        Get current authorization status for diagnostics.

        Returns:
            Dictionary with status information (see TokenManager.get_token_status)
        """
        return self.token_manager.get_token_status()

    def revoke(self) -> None:
        """
        Revoke current authorization.

        This deletes the locally stored credentials. It does NOT revoke the
        tokens on Google's servers.
        """
        self.token_manager.revoke()
        logger.info("Authorization revoked locally. Re-authorization required.")
