"""
OAuth exception classes for Gmail API integration.

This module defines the exception hierarchy for all OAuth-related errors,
providing clear error messages and recovery guidance.
"""


class GmailOAuthError(Exception):
    """Base exception for all Gmail OAuth errors."""

    pass


class ConfigurationError(GmailOAuthError):
    """OAuth configuration error (missing or invalid configuration)."""

    pass


class CredentialNotFoundError(GmailOAuthError):
    """No stored credentials (need to authorize first)."""

    pass


class CredentialCorruptError(GmailOAuthError):
    """Stored credentials exist but cannot be parsed (re-authorize to fix)."""

    pass


class TokenStorageError(GmailOAuthError):
    """Token storage operation failed (file I/O error)."""

    pass


class ListenerBindError(GmailOAuthError):
    """Callback listener could not bind its port (not recoverable by fallback)."""

    pass


class AuthorizationError(GmailOAuthError):
    """OAuth authorization flow error."""

    pass


class NoCodeProvidedError(AuthorizationError):
    """Callback arrived without an authorization code."""

    pass


class RemoteDeniedError(AuthorizationError):
    """Authorization server redirected back with an error (e.g. access_denied)."""

    def __init__(self, error: str, error_description: str = ""):
        self.error = error
        self.error_description = error_description
        message = f"Authorization denied: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(message)


class AuthorizationTimeoutError(AuthorizationError):
    """No callback arrived before the flow was cancelled."""

    pass


class FlowInProgressError(AuthorizationError):
    """An authorization flow is already running on this coordinator."""

    pass


class TokenExchangeError(GmailOAuthError):
    """Failed to exchange authorization code for tokens."""

    pass


class TokenRefreshError(GmailOAuthError):
    """Failed to refresh access token using refresh token."""

    pass
