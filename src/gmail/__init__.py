"""
Gmail API client module.

This module provides a thin authenticated client for the Gmail REST API:

- GmailClient: search, read, send/draft, labels, single and bulk modify/delete
- Bulk operations run through BatchExecutor, so one bad message id does not
  fail the whole request

Authentication is handled automatically via the OAuth module.
"""

from .client import GmailClient
from .exceptions import (
    GmailAPIError,
    GmailAuthenticationError,
    GmailNotFoundError,
    GmailRateLimitError,
)

__all__ = [
    "GmailClient",
    "GmailAPIError",
    "GmailAuthenticationError",
    "GmailNotFoundError",
    "GmailRateLimitError",
]
