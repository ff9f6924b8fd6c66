"""
Credential storage for Gmail OAuth integration.

This module provides file-based credential persistence with expiry tracking.
The credential file is the single source of truth across process restarts;
writes go through a temp file and an atomic rename so a concurrent reader
never sees a half-written record.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from .exceptions import CredentialCorruptError, CredentialNotFoundError, TokenStorageError

logger = logging.getLogger(__name__)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    # Ensure timezone-aware
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Credential:
    """
    Stored OAuth credential.

    Attributes:
        access_token: Short-lived access token for API calls
        refresh_token: Long-lived token for obtaining new access tokens (optional)
        expires_at: When the access token expires (timezone-aware UTC)
        scopes: Granted OAuth scopes
        token_type: Token type (typically "Bearer")
    """

    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    token_type: str = "Bearer"

    @classmethod
    def from_token_response(
        cls,
        data: dict,
        previous_refresh_token: Optional[str] = None,
        requested_scopes: Optional[List[str]] = None,
    ) -> "Credential":
        """
        Build a Credential from a token endpoint response.

        Google omits refresh_token on refresh responses, so the previous one
        is carried over. Scope falls back to what was requested when the
        response leaves it out.

        Raises:
            KeyError: If access_token is missing
            ValueError: If expires_in is not numeric
        """
        scope = data.get("scope")
        scopes = scope.split() if scope else list(requested_scopes or [])
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=datetime.now(timezone.utc)
            + timedelta(seconds=int(data.get("expires_in", 3600))),
            scopes=scopes,
            token_type=data.get("token_type", "Bearer"),
        )

    @property
    def is_expired(self) -> bool:
        """True if the access token has expired."""
        return datetime.now(timezone.utc) >= self.expires_at

    def expires_within(self, seconds: int) -> bool:
        """
        Check if token expires within given seconds.

        Args:
            seconds: Number of seconds to check

        Returns:
            True if token will expire within the specified time, False otherwise
        """
        buffer_time = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        return buffer_time >= self.expires_at

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def to_dict(self) -> dict:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the credential
        """
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        """
        Create a Credential from a dictionary.

        Also accepts the older record shape found in existing
        ~/.gmail-mcp/credentials.json files (expiry_date in epoch
        milliseconds, space-separated scope).

        Raises:
            KeyError: If required fields are missing
            TypeError: If fields have wrong types
            ValueError: If the expiry cannot be parsed
        """
        if "expires_at" in data:
            expires_at = _parse_timestamp(data["expires_at"])
        else:
            expires_at = datetime.fromtimestamp(
                int(data["expiry_date"]) / 1000, tz=timezone.utc
            )

        if "scopes" in data:
            scopes = data["scopes"]
        else:
            scopes = (data.get("scope") or "").split()
        if not isinstance(scopes, list):
            raise TypeError(f"scopes must be a list, got {type(scopes).__name__}")

        access_token = data["access_token"]
        if not isinstance(access_token, str):
            raise TypeError("access_token must be a string")

        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            scopes=scopes,
            token_type=data.get("token_type") or "Bearer",
        )


class CredentialStore:
    """
    File-based credential storage (plaintext JSON, chmod 600).

    Single-user: one fixed file holds the one credential record.
    """

    def __init__(self, token_file: str, refresh_buffer_seconds: int = 300):
        """
        Initialize credential storage.

        Args:
            token_file: Path to credential storage file
            refresh_buffer_seconds: Default skew used by is_expired()
        """
        self.token_file = Path(token_file)
        self.refresh_buffer_seconds = refresh_buffer_seconds

    def _ensure_directory(self) -> None:
        """Create parent directory if needed."""
        self.token_file.parent.mkdir(parents=True, exist_ok=True)

    def save(self, credential: Credential) -> None:
        """
        Atomically save the credential, replacing any previous one.

        Args:
            credential: Credential to save

        Raises:
            TokenStorageError: If save operation fails
        """
        tmp_path = None
        try:
            self._ensure_directory()
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.token_file.name}.", suffix=".tmp", dir=self.token_file.parent
            )
            with os.fdopen(fd, "w") as f:
                json.dump(credential.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            try:
                os.chmod(tmp_path, 0o600)
            except OSError as e:
                logger.warning(f"Could not set secure permissions: {e}")

            os.replace(tmp_path, self.token_file)
            tmp_path = None

            logger.info(f"Credentials saved to {self.token_file}")
        except (IOError, OSError) as e:
            logger.error(f"Failed to save credentials: {e}")
            raise TokenStorageError(f"Failed to save credentials: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def load(self) -> Credential:
        """
        Load the credential from file.

        Returns:
            The stored Credential

        Raises:
            CredentialNotFoundError: If no credential file exists (normal on first run)
            CredentialCorruptError: If the file cannot be read or parsed
        """
        if not self.token_file.exists():
            logger.debug(f"No credential file found at {self.token_file}")
            raise CredentialNotFoundError(
                f"No credentials at {self.token_file}. Run authorization flow first."
            )

        try:
            with open(self.token_file, "r") as f:
                data = json.load(f)
            credential = Credential.from_dict(data)
        except FileNotFoundError as e:
            raise CredentialNotFoundError(f"No credentials at {self.token_file}") from e
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(
                f"Invalid credential file at {self.token_file}, "
                f"will need re-authorization: {e}"
            )
            raise CredentialCorruptError(
                f"Credential file {self.token_file} is unreadable: {e}"
            ) from e
        except (IOError, OSError) as e:
            logger.warning(f"Could not read credential file: {e}")
            raise CredentialCorruptError(f"Could not read credential file: {e}") from e

        logger.debug(f"Credentials loaded from {self.token_file}")
        return credential

    def is_expired(self, credential: Credential, skew_seconds: Optional[int] = None) -> bool:
        """
        Check whether a credential's access token is (about to be) expired.

        Args:
            credential: Credential to check
            skew_seconds: Safety margin; defaults to refresh_buffer_seconds

        Returns:
            True if expiry is at or before now + skew
        """
        if skew_seconds is None:
            skew_seconds = self.refresh_buffer_seconds
        return credential.expires_within(skew_seconds)

    def clear(self) -> bool:
        """
        Delete the credential file.

        Returns:
            True if file was deleted, False if file didn't exist

        Raises:
            TokenStorageError: If the file exists but cannot be removed
        """
        if self.token_file.exists():
            try:
                self.token_file.unlink()
                logger.info(f"Credential file deleted: {self.token_file}")
                return True
            except (OSError, PermissionError) as e:
                logger.error(f"Failed to delete credential file: {e}")
                raise TokenStorageError(f"Failed to delete credential file: {e}") from e

        logger.debug(f"Credential file does not exist: {self.token_file}")
        return False

    def exists(self) -> bool:
        """True if a credential file exists (it may still be corrupt)."""
        return self.token_file.exists()
