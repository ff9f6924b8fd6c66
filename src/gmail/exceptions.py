"""Exceptions for Gmail API client."""


class GmailAPIError(Exception):
    """Base exception for Gmail API errors."""

    pass


class GmailAuthenticationError(GmailAPIError):
    """
    Authentication failure with Gmail API.

    The stored credential is missing, invalid, expired without a refresh
    token, or revoked. Re-authorize with:

        python scripts/authorize_gmail.py
    """

    pass


class GmailRateLimitError(GmailAPIError):
    """API rate limit exceeded."""

    pass


class GmailNotFoundError(GmailAPIError):
    """Message, label or other resource not found."""

    pass
