"""
OAuth 2.0 module for Gmail API integration.

This module provides the OAuth 2.0 Authorization Code flow for a single
local user: a loopback callback listener, the flow coordinator, credential
persistence and token refresh.

Public API:
    GmailOAuthConfig: OAuth configuration (the context passed to every component)
    Credential: Token set
    CredentialStore: Atomic file-based credential persistence
    TokenManager: Token exchange and refresh
    OAuthCallbackServer: Single-shot loopback callback listener
    OAuthCoordinator: High-level OAuth interface

Exceptions:
    GmailOAuthError: Base exception
    ConfigurationError: Configuration error
    CredentialNotFoundError: Nothing stored yet
    CredentialCorruptError: Stored record unreadable
    TokenStorageError: Storage operation failed
    ListenerBindError: Callback listener could not bind
    AuthorizationError: Authorization flow error
    NoCodeProvidedError: Callback without code
    RemoteDeniedError: Callback with error
    AuthorizationTimeoutError: Callback never arrived
    FlowInProgressError: Concurrent flow on one coordinator
    TokenExchangeError: Token exchange failed
    TokenRefreshError: Token refresh failed
"""

from .auth_server import AuthorizationResult, OAuthCallbackServer
from .config import GmailOAuthConfig
from .coordinator import AuthorizationRequest, FlowState, OAuthCoordinator
from .exceptions import (
    AuthorizationError,
    AuthorizationTimeoutError,
    ConfigurationError,
    CredentialCorruptError,
    CredentialNotFoundError,
    FlowInProgressError,
    GmailOAuthError,
    ListenerBindError,
    NoCodeProvidedError,
    RemoteDeniedError,
    TokenExchangeError,
    TokenRefreshError,
    TokenStorageError,
)
from .token_manager import TokenManager
from .token_storage import Credential, CredentialStore

__all__ = [
    # Configuration
    "GmailOAuthConfig",
    # Credential Storage
    "Credential",
    "CredentialStore",
    # Token Manager
    "TokenManager",
    # Callback Server
    "OAuthCallbackServer",
    "AuthorizationResult",
    # Coordinator
    "OAuthCoordinator",
    "AuthorizationRequest",
    "FlowState",
    # Exceptions
    "GmailOAuthError",
    "ConfigurationError",
    "CredentialNotFoundError",
    "CredentialCorruptError",
    "TokenStorageError",
    "ListenerBindError",
    "AuthorizationError",
    "NoCodeProvidedError",
    "RemoteDeniedError",
    "AuthorizationTimeoutError",
    "FlowInProgressError",
    "TokenExchangeError",
    "TokenRefreshError",
]
