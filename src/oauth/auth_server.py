"""
OAuth callback server for Gmail API integration.

This module provides a loopback HTTP server that receives the browser
redirect at the end of the authorization flow. The server:

1. Binds the preferred port, falling back to an OS-assigned port if busy
2. Reports the port it actually bound (the redirect URI must use it)
3. Captures exactly one callback (code or error) on the configured path
4. Answers the browser with a terminal page, then stops listening

IMPORTANT: This server is designed for single-user, personal use. It runs
temporarily during the authorization flow and shuts down after receiving
the callback.
"""

import errno
import html
import logging
import os
import socket
import threading
from dataclasses import dataclass
from typing import Optional

from flask import Flask, Response, request
from werkzeug.serving import BaseWSGIServer, make_server

from .exceptions import (
    AuthorizationTimeoutError,
    ListenerBindError,
    NoCodeProvidedError,
    RemoteDeniedError,
)

logger = logging.getLogger(__name__)

MISSING_CODE = "missing_code"

_PAGE = """<html>
<head><title>{title}</title></head>
<body style="font-family: Arial, sans-serif; max-width: 600px; margin: 50px auto; padding: 20px;">
    <h1 style="color: {color};">{title}</h1>
    {body}
    <p style="margin-top: 30px; color: #666;">You can close this window.</p>
</body>
</html>"""


def _page(title: str, body: str, status: int, success: bool = False) -> Response:
    color = "#4caf50" if success else "#d32f2f"
    return Response(
        _PAGE.format(title=title, color=color, body=body),
        status=status,
        content_type="text/html",
    )


@dataclass
class AuthorizationResult:
    """
    Result of OAuth authorization callback.

    Attributes:
        success: Whether authorization succeeded
        authorization_code: Authorization code from callback (if successful)
        error: Error code from OAuth provider, or "missing_code"
        error_description: Human-readable error description (if failed)
    """

    success: bool
    authorization_code: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class OAuthCallbackServer:
    """
    Local HTTP server to handle the OAuth redirect.

    Single-shot: the first callback on the configured path resolves the
    wait, later traffic is never treated as the awaited callback. Requests
    to other paths (favicon requests and the like) get a 404 and are ignored.
    """

    def __init__(
        self,
        bind_host: str = "127.0.0.1",
        expected_state: Optional[str] = None,
        strict_port: bool = False,
    ):
        """
        Initialize callback server.

        Args:
            bind_host: Interface to listen on (loopback by default)
            expected_state: If set, callbacks carrying another state are ignored
            strict_port: Raise ListenerBindError instead of falling back when
                the preferred port is in use
        """
        self.bind_host = bind_host
        self.expected_state = expected_state
        self.strict_port = strict_port
        self.app = Flask(__name__)
        self.app.logger.setLevel(logging.WARNING)  # Suppress Flask logs
        self.result: Optional[AuthorizationResult] = None
        self.port: Optional[int] = None
        self.path: Optional[str] = None
        self._server: Optional[BaseWSGIServer] = None
        self._thread: Optional[threading.Thread] = None
        self._result_event = threading.Event()
        self._lock = threading.Lock()
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def _handle_callback(self) -> Response:
        """Handle OAuth redirect from Google."""
        if self._result_event.is_set():
            logger.warning("Ignoring repeated OAuth callback after resolution")
            return _page(
                "Authorization Already Handled",
                "<p>This authorization request has already completed.</p>",
                status=409,
            )

        if self.expected_state is not None:
            state = request.args.get("state")
            if state != self.expected_state:
                logger.warning("Ignoring OAuth callback with mismatched state")
                return _page(
                    "Authorization Failed",
                    "<p>This response does not belong to the active sign-in.</p>",
                    status=400,
                )

        logger.info("Received OAuth callback")

        # Check for error response
        error = request.args.get("error")
        if error:
            error_desc = request.args.get("error_description", "")
            logger.error(f"OAuth error: {error} - {error_desc}")
            self._resolve(
                AuthorizationResult(success=False, error=error, error_description=error_desc)
            )
            return _page(
                "Authorization Failed",
                f"<p><strong>Error:</strong> {html.escape(error)}</p>"
                f"<p><strong>Description:</strong> {html.escape(error_desc)}</p>",
                status=400,
            )

        code = request.args.get("code")
        if not code:
            logger.error("No authorization code in callback")
            self._resolve(
                AuthorizationResult(
                    success=False,
                    error=MISSING_CODE,
                    error_description="No authorization code received",
                )
            )
            return _page(
                "Authorization Failed",
                "<p>No authorization code received from Google.</p>",
                status=400,
            )

        logger.info("Authorization code received successfully")
        self._resolve(AuthorizationResult(success=True, authorization_code=code))

        return _page(
            "Authorization Successful",
            "<p>Gmail access has been authorized.</p>"
            "<p>You can now return to the terminal.</p>",
            status=200,
            success=True,
        )

    def _resolve(self, result: AuthorizationResult) -> None:
        self.result = result
        self._result_event.set()

    def _bind_socket(self, port: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.bind_host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            # Windows SO_REUSEADDR lets a second socket steal a live port
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.bind_host, port))
            sock.listen(5)
        except OSError:
            sock.close()
            raise
        return sock

    def _bind_with_fallback(self, preferred_port: int) -> socket.socket:
        try:
            return self._bind_socket(preferred_port)
        except OSError as e:
            if e.errno != errno.EADDRINUSE:
                logger.error(f"Failed to bind OAuth callback port {preferred_port}: {e}")
                raise ListenerBindError(
                    f"Cannot bind {self.bind_host}:{preferred_port}: {e}"
                ) from e
            if self.strict_port:
                raise ListenerBindError(
                    f"Port {preferred_port} is in use and strict_port is set"
                ) from e

        logger.warning(f"Port {preferred_port} is in use, falling back to an OS-assigned port")
        try:
            return self._bind_socket(0)
        except OSError as e:
            logger.error(f"Failed to bind fallback OAuth callback port: {e}")
            raise ListenerBindError(f"Cannot bind {self.bind_host} on any port: {e}") from e

    def start(self, preferred_port: int, path: str) -> int:
        """
        Bind the listener and start serving in a background thread.

        Args:
            preferred_port: Port to try first (0 lets the OS choose)
            path: Callback path (e.g. /oauth2callback)

        Returns:
            The port actually bound, which differs from preferred_port
            after a fallback

        Raises:
            ListenerBindError: On bind errors other than address-in-use, or
                on address-in-use when strict_port is set
            RuntimeError: If this server was already started
        """
        with self._lock:
            if self._started:
                raise RuntimeError("OAuthCallbackServer is single-use; create a new one")
            self._started = True

        self.path = path
        self.app.add_url_rule(path, "oauth_callback", self._handle_callback, methods=["GET"])
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

        sock = self._bind_with_fallback(preferred_port)
        try:
            self.port = sock.getsockname()[1]
            # The server dups the descriptor, so ours can be closed right away
            self._server = make_server(self.bind_host, self.port, self.app, fd=sock.fileno())
        finally:
            sock.close()

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="oauth-callback-server",
            daemon=True,
        )
        self._thread.start()

        logger.info(f"OAuth callback server listening on {self.bind_host}:{self.port}{path}")
        return self.port

    def wait_for_callback(self, timeout: float = 300) -> str:
        """
        Block until the callback arrives, then stop the server.

        The browser's response has been fully written by the time this
        returns or raises.

        Args:
            timeout: Maximum seconds to wait (default: 300 = 5 minutes)

        Returns:
            The authorization code

        Raises:
            AuthorizationTimeoutError: If nothing arrived in time (caller
                must still stop() the server)
            RemoteDeniedError: If the redirect carried an error
            NoCodeProvidedError: If the redirect carried no code
        """
        logger.info(f"Waiting for OAuth callback (timeout: {timeout}s)")

        if not self._result_event.wait(timeout=timeout):
            logger.warning(f"Timeout waiting for callback after {timeout}s")
            raise AuthorizationTimeoutError(
                f"No callback received within {timeout} seconds. "
                f"Please ensure you completed the authorization in your browser."
            )

        self.stop()

        result = self.result
        if result.success:
            return result.authorization_code
        if result.error == MISSING_CODE:
            raise NoCodeProvidedError("Callback did not include an authorization code")
        raise RemoteDeniedError(result.error, result.error_description or "")

    def stop(self) -> None:
        """
        Stop the server and release the port. Safe to call more than once.

        shutdown() lets an in-flight request finish before the serve loop
        exits, so a browser never gets a reset connection.
        """
        with self._lock:
            server, self._server = self._server, None
            thread, self._thread = self._thread, None

        if server is None:
            return

        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        logger.info("OAuth callback server shut down")
