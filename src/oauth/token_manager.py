"""
Token lifecycle for the Gmail OAuth integration.

TokenManager talks to Google's token endpoint for the two grants we use:

- authorization_code: one-time swap of the code from the callback
- refresh_token: mint a new access token for an existing Credential

It also answers "give me a usable access token" for API clients, refreshing
ahead of expiry by config.refresh_buffer_seconds.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Dict, Optional

import requests

from .config import GmailOAuthConfig
from .exceptions import (
    CredentialCorruptError,
    CredentialNotFoundError,
    TokenExchangeError,
    TokenRefreshError,
)
from .token_storage import Credential, CredentialStore

logger = logging.getLogger(__name__)

# Google answers invalid_grant with 400; some proxies turn it into 401
_REJECTED_GRANT_STATUSES = (400, 401)


class TokenManager:
    """
    Exchanges and refreshes Gmail OAuth tokens.

    The CredentialStore file is the source of truth; the manager keeps the
    last loaded or saved Credential in memory to avoid rereading it on every
    API call.
    """

    def __init__(self, config: GmailOAuthConfig, storage: Optional[CredentialStore] = None):
        """
        Args:
            config: OAuth configuration
            storage: Credential store (built from config.token_file if omitted)
        """
        self.config = config
        self.storage = storage or CredentialStore(
            config.token_file, config.refresh_buffer_seconds
        )
        self._cached_credential: Optional[Credential] = None

    def _post_token_request(self, form: Dict[str, str]) -> requests.Response:
        payload = dict(form)
        payload["client_id"] = self.config.client_id
        payload["client_secret"] = self.config.client_secret
        return requests.post(
            self.config.token_url,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            data=payload,
            timeout=30,
        )

    def exchange_code_for_tokens(self, authorization_code: str, redirect_uri: str) -> Credential:
        """
        Swap an authorization code for a Credential and persist it.

        Args:
            authorization_code: Value of the ``code`` query parameter
            redirect_uri: Redirect URI the code was issued against; Google
                rejects the exchange unless it matches byte for byte

        Returns:
            The saved Credential

        Raises:
            TokenExchangeError: Network failure, non-200 answer or a body
                without an access token
            TokenStorageError: If the Credential could not be written
        """
        logger.info(f"Exchanging authorization code (redirect_uri={redirect_uri})")

        try:
            response = self._post_token_request(
                {
                    "grant_type": "authorization_code",
                    "code": authorization_code,
                    "redirect_uri": redirect_uri,
                }
            )
        except requests.RequestException as e:
            logger.error(f"Token endpoint unreachable during code exchange: {e}")
            raise TokenExchangeError(f"Network error during token exchange: {e}") from e

        if response.status_code != 200:
            logger.error(f"Code exchange rejected ({response.status_code}): {response.text}")
            raise TokenExchangeError(
                f"Token endpoint answered {response.status_code}: {response.text}. "
                f"Codes are single-use and expire quickly; also check that "
                f"{redirect_uri} is an allowed redirect URI."
            )

        try:
            credential = Credential.from_token_response(
                response.json(), requested_scopes=self.config.scopes
            )
        except (KeyError, ValueError) as e:
            logger.error(f"Unusable code exchange response: {e}")
            raise TokenExchangeError(f"Invalid response from token endpoint: {e}") from e

        if not credential.refresh_token:
            logger.warning(
                "No refresh token in the exchange response; the user will have to "
                "sign in again once this access token expires"
            )

        self.storage.save(credential)
        self._cached_credential = credential
        logger.info(f"Gmail authorization stored, access token valid until {credential.expires_at}")
        return credential

    def refresh_tokens(self, max_retries: int = 3) -> Credential:
        """
        Mint a new access token from the stored refresh token.

        Connection problems are retried with 1s, 2s, 4s... pauses. A refresh
        token Google no longer accepts is not retried.

        Args:
            max_retries: Extra attempts after the first one on network errors

        Returns:
            The refreshed (and saved) Credential; the refresh token carries
            over unless Google rotated it

        Raises:
            CredentialNotFoundError: Nothing stored yet
            TokenRefreshError: No refresh token, grant rejected, or still
                failing after the last retry
        """
        current = self._get_current_credential()
        if not current.can_refresh:
            raise TokenRefreshError(
                "No refresh token available. Run authorization flow again."
            )

        attempts = max_retries + 1
        for attempt in range(attempts):
            logger.info(f"Refreshing Gmail access token (attempt {attempt + 1}/{attempts})")
            try:
                response = self._post_token_request(
                    {"grant_type": "refresh_token", "refresh_token": current.refresh_token}
                )
            except requests.RequestException as e:
                if attempt + 1 == attempts:
                    logger.error(f"Giving up on token refresh: {e}")
                    raise TokenRefreshError(
                        f"Network error during token refresh after {attempts} attempts: {e}"
                    ) from e
                delay = 2**attempt
                logger.warning(f"Token refresh network error ({e}), retrying in {delay}s")
                time.sleep(delay)
                continue

            return self._store_refreshed(response, current)

    def _store_refreshed(self, response: requests.Response, current: Credential) -> Credential:
        if response.status_code in _REJECTED_GRANT_STATUSES:
            logger.error(f"Refresh token rejected: {response.text}")
            raise TokenRefreshError(
                "Refresh token is invalid or expired. Run authorization flow again."
            )
        if response.status_code != 200:
            logger.error(f"Token refresh failed ({response.status_code}): {response.text}")
            raise TokenRefreshError(f"Token refresh failed with status {response.status_code}")

        try:
            refreshed = Credential.from_token_response(
                response.json(),
                previous_refresh_token=current.refresh_token,
                requested_scopes=current.scopes,
            )
        except (KeyError, ValueError) as e:
            logger.error(f"Unusable refresh response: {e}")
            raise TokenRefreshError(f"Invalid response from token endpoint: {e}") from e

        self.storage.save(refreshed)
        self._cached_credential = refreshed
        logger.info(f"Access token refreshed, valid until {refreshed.expires_at}")
        return refreshed

    def get_valid_access_token(self) -> str:
        """
        Return an access token that is good for at least the refresh buffer.

        Raises:
            CredentialNotFoundError: Nothing stored yet
            CredentialCorruptError: Stored record unreadable
            TokenRefreshError: Token is (nearly) expired and cannot be refreshed
        """
        credential = self._get_current_credential()

        if self.storage.is_expired(credential, self.config.refresh_buffer_seconds):
            logger.info(
                f"Access token expires within {self.config.refresh_buffer_seconds}s, "
                f"refreshing"
            )
            credential = self.refresh_tokens()

        return credential.access_token

    def is_authorized(self) -> bool:
        """True when a stored Credential is unexpired or can be refreshed."""
        try:
            credential = self._get_current_credential()
        except (CredentialNotFoundError, CredentialCorruptError):
            return False

        return credential.can_refresh or not credential.is_expired

    def get_token_status(self) -> dict:
        """
        Summarize the stored Credential.

        Returns:
            ``{"authorized": False, "message": ...}`` when nothing usable is
            stored, otherwise authorized, expired, refreshable, expires_at
            (ISO-8601), expires_in_seconds and scopes
        """
        try:
            credential = self._get_current_credential()
        except CredentialNotFoundError:
            return {"authorized": False, "message": "No credentials stored"}
        except CredentialCorruptError as e:
            return {"authorized": False, "message": f"Stored credentials are unreadable: {e}"}

        remaining = (credential.expires_at - datetime.now(timezone.utc)).total_seconds()

        return {
            "authorized": credential.can_refresh or not credential.is_expired,
            "expired": credential.is_expired,
            "refreshable": credential.can_refresh,
            "expires_at": credential.expires_at.isoformat(),
            "expires_in_seconds": max(0, remaining),
            "scopes": list(credential.scopes),
        }

    def revoke(self) -> None:
        """
        Forget the stored Credential.

        Local only: Google still considers the grant valid until the user
        removes it from their account's third-party access page.
        """
        self.storage.clear()
        self._cached_credential = None
        logger.info("Stored Gmail credentials removed")

    def _get_current_credential(self) -> Credential:
        if self._cached_credential is None:
            self._cached_credential = self.storage.load()
        return self._cached_credential
