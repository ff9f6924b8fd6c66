"""
Gmail API client with OAuth authentication.

This module provides an authenticated HTTP client for the Gmail REST API.
It handles:

- OAuth token retrieval with automatic refresh
- Request retry logic for transient errors
- Error handling and logging
- Bulk label changes and deletes with per-message failure isolation
- Attachment listing and download

The client must be initialized with an OAuthCoordinator that manages
OAuth tokens.
"""

import base64
import logging
import os
import time
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

import requests

from src.oauth.coordinator import OAuthCoordinator
from src.oauth.exceptions import (
    CredentialCorruptError,
    CredentialNotFoundError,
    TokenRefreshError,
)
from src.utils.batch import DEFAULT_CHUNK_SIZE, BatchExecutor, BatchResult

from . import endpoints
from .exceptions import (
    GmailAPIError,
    GmailAuthenticationError,
    GmailNotFoundError,
    GmailRateLimitError,
)

logger = logging.getLogger(__name__)


def _decode_bytes(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _decode_body(data: str) -> str:
    return _decode_bytes(data).decode("utf-8", errors="replace")


def _extract_content(
    part: Dict[str, Any], content: Dict[str, str], attachments: List[Dict[str, Any]]
) -> None:
    """
    Walk a MIME part tree collecting the first text/plain and text/html
    bodies, plus metadata for every part stored as an attachment.
    """
    mime_type = part.get("mimeType", "")
    body = part.get("body", {})
    attachment_id = body.get("attachmentId")
    if attachment_id:
        attachments.append(
            {
                "id": attachment_id,
                "filename": part.get("filename") or f"attachment-{attachment_id}",
                "mimeType": mime_type or "application/octet-stream",
                "size": body.get("size", 0),
            }
        )
    elif body.get("data") and mime_type in ("text/plain", "text/html"):
        key = "text" if mime_type == "text/plain" else "html"
        if not content[key]:
            content[key] = _decode_body(body["data"])

    for sub in part.get("parts", []) or []:
        _extract_content(sub, content, attachments)


def _headers(payload: Dict[str, Any]) -> Dict[str, str]:
    return {h["name"].lower(): h["value"] for h in payload.get("headers", [])}


class GmailClient:
    """
    Authenticated HTTP client for the Gmail API.

    Example:
        from src.oauth.coordinator import OAuthCoordinator
        from src.gmail.client import GmailClient

        client = GmailClient(OAuthCoordinator())
        for message in client.search_emails("is:unread", max_results=5):
            print(message["subject"])

        result = client.batch_modify_emails(ids, remove_label_ids=["UNREAD"])
        print(result.summary())
    """

    def __init__(
        self,
        oauth_coordinator: Optional[OAuthCoordinator] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        batch_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Initialize Gmail API client.

        Args:
            oauth_coordinator: OAuth coordinator for authentication
                              (creates default if not provided)
            max_retries: Maximum number of retries for transient errors
            retry_delay: Base delay between retries in seconds (exponential backoff)
            batch_size: Default chunk size for bulk operations
        """
        self.oauth = oauth_coordinator or OAuthCoordinator()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = requests.Session()
        self.executor = BatchExecutor(batch_size)

        logger.info("GmailClient initialized")

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        retry_count: int = 0,
    ) -> requests.Response:
        """
        Make authenticated HTTP request to the Gmail API.

        Raises:
            GmailAuthenticationError: If not authorized or the token is rejected (401)
            GmailRateLimitError: If rate limit exceeded (429)
            GmailNotFoundError: If the resource does not exist (404)
            GmailAPIError: For other API errors
        """
        try:
            headers = self.oauth.get_authorization_header()
        except (CredentialNotFoundError, CredentialCorruptError, TokenRefreshError) as e:
            logger.error(f"Not authorized: {e}")
            raise GmailAuthenticationError(
                f"No valid OAuth credentials available ({e}). "
                "Run: python scripts/authorize_gmail.py"
            ) from e

        headers["Accept"] = "application/json"
        url = f"{endpoints.BASE_URL}{endpoint}"

        logger.debug(f"{method} {url}")
        if params:
            logger.debug(f"  Params: {params}")

        try:
            response = self.session.request(
                method, url, headers=headers, params=params, json=json_data, timeout=30
            )
        except requests.exceptions.RequestException as e:
            return self._retry_or_raise(
                f"Network error: {e}", method, endpoint, params, json_data, retry_count, e
            )

        if response.status_code == 401:
            logger.error(f"Authentication failed (401): {response.text}")
            raise GmailAuthenticationError(
                "Authentication failed. OAuth token may be expired or revoked. "
                "Re-authorize: python scripts/authorize_gmail.py --revoke && "
                "python scripts/authorize_gmail.py"
            )

        if response.status_code == 429:
            logger.warning("Rate limit exceeded (429)")
            raise GmailRateLimitError("Gmail API rate limit exceeded. Please wait before retrying.")

        if response.status_code == 404:
            logger.warning(f"Resource not found (404): {url}")
            raise GmailNotFoundError(f"Resource not found: {endpoint}")

        if response.status_code >= 500:
            return self._retry_or_raise(
                f"Server error ({response.status_code})",
                method,
                endpoint,
                params,
                json_data,
                retry_count,
            )

        if not response.ok:
            logger.error(f"API error ({response.status_code}): {response.text}")
            raise GmailAPIError(f"Gmail API error ({response.status_code}): {response.text}")

        logger.debug(f"Response: {response.status_code}")
        return response

    def _retry_or_raise(
        self,
        reason: str,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]],
        json_data: Optional[Dict[str, Any]],
        retry_count: int,
        cause: Optional[Exception] = None,
    ) -> requests.Response:
        if retry_count < self.max_retries:
            delay = self.retry_delay * (2**retry_count)
            logger.warning(
                f"{reason}. Retrying in {delay}s (attempt {retry_count + 1}/{self.max_retries})"
            )
            time.sleep(delay)
            return self._request(method, endpoint, params, json_data, retry_count + 1)

        logger.error(f"{reason} after {self.max_retries} retries")
        raise GmailAPIError(f"{reason} after {self.max_retries} retries") from cause

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make authenticated GET request and return the JSON body."""
        return self._request("GET", endpoint, params=params).json()

    def post(
        self,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make authenticated POST request and return the JSON body ({} if empty)."""
        response = self._request("POST", endpoint, params=params, json_data=json_data)
        return response.json() if response.content else {}

    # Messages

    def search_emails(self, query: str, max_results: int = 10) -> List[Dict[str, str]]:
        """
        Search messages using Gmail search syntax.

        Args:
            query: Gmail search query (e.g. "from:alice is:unread")
            max_results: Maximum number of results

        Returns:
            List of dicts with id, threadId, subject, from, date, snippet
        """
        data = self.get(endpoints.MESSAGES, params={"q": query, "maxResults": max_results})

        results = []
        for message in data.get("messages", [])[:max_results]:
            detail = self.get(
                endpoints.MESSAGE.format(messageId=message["id"]),
                params={"format": "metadata", "metadataHeaders": ["Subject", "From", "Date"]},
            )
            headers = _headers(detail.get("payload", {}))
            results.append(
                {
                    "id": message["id"],
                    "threadId": detail.get("threadId", ""),
                    "subject": headers.get("subject", ""),
                    "from": headers.get("from", ""),
                    "date": headers.get("date", ""),
                    "snippet": detail.get("snippet", ""),
                }
            )

        logger.info(f"Search {query!r} returned {len(results)} messages")
        return results

    def read_email(self, message_id: str) -> Dict[str, Any]:
        """
        Read a full message.

        Returns:
            Dict with id, threadId, subject, from, to, date, text, html,
            labelIds and attachments (id, filename, mimeType, size each)
        """
        data = self.get(endpoints.MESSAGE.format(messageId=message_id), params={"format": "full"})
        payload = data.get("payload", {})
        headers = _headers(payload)
        content = {"text": "", "html": ""}
        attachments: List[Dict[str, Any]] = []
        _extract_content(payload, content, attachments)

        return {
            "id": message_id,
            "threadId": data.get("threadId", ""),
            "subject": headers.get("subject", ""),
            "from": headers.get("from", ""),
            "to": headers.get("to", ""),
            "date": headers.get("date", ""),
            "text": content["text"],
            "html": content["html"],
            "labelIds": data.get("labelIds", []),
            "attachments": attachments,
        }

    def download_attachment(
        self,
        message_id: str,
        attachment_id: str,
        filename: Optional[str] = None,
        save_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Save one attachment of a message to disk.

        Args:
            message_id: Message the attachment belongs to
            attachment_id: Attachment id as listed by read_email
            filename: Name to save under (defaults to the attachment's own
                filename, or attachment-<id> if the message does not name it)
            save_path: Directory to write into (defaults to the current
                directory; created if missing)

        Returns:
            Dict with path and size (bytes written)
        """
        data = self.get(
            endpoints.MESSAGE_ATTACHMENT.format(messageId=message_id, attachmentId=attachment_id)
        )
        if "data" not in data:
            raise GmailAPIError(f"Attachment {attachment_id} of {message_id} returned no data")
        content = _decode_bytes(data["data"])

        if not filename:
            listed = self.read_email(message_id)["attachments"]
            filename = next(
                (a["filename"] for a in listed if a["id"] == attachment_id),
                f"attachment-{attachment_id}",
            )

        directory = save_path or os.getcwd()
        os.makedirs(directory, exist_ok=True)
        # Never let a sender-supplied name escape the target directory
        path = os.path.join(directory, os.path.basename(filename))
        with open(path, "wb") as f:
            f.write(content)

        logger.info(f"Saved attachment {attachment_id} of {message_id} to {path}")
        return {"path": path, "size": len(content)}

    @staticmethod
    def _build_raw_message(
        to: List[str],
        subject: str,
        body: str,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
    ) -> str:
        message = EmailMessage()
        message["To"] = ", ".join(to)
        if cc:
            message["Cc"] = ", ".join(cc)
        if bcc:
            message["Bcc"] = ", ".join(bcc)
        message["Subject"] = subject
        message.set_content(body)
        return base64.urlsafe_b64encode(message.as_bytes()).decode()

    def send_email(
        self,
        to: List[str],
        subject: str,
        body: str,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
        thread_id: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Send a plain text email.

        Returns:
            Dict with id and threadId of the sent message
        """
        payload: Dict[str, Any] = {"raw": self._build_raw_message(to, subject, body, cc, bcc)}
        if thread_id:
            payload["threadId"] = thread_id

        data = self.post(endpoints.MESSAGE_SEND, json_data=payload)
        logger.info(f"Sent email {data.get('id')}")
        return {"id": data.get("id", ""), "threadId": data.get("threadId", "")}

    def draft_email(
        self,
        to: List[str],
        subject: str,
        body: str,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
    ) -> Dict[str, str]:
        """
        Create a draft.

        Returns:
            Dict with the draft id
        """
        raw = self._build_raw_message(to, subject, body, cc, bcc)
        data = self.post(endpoints.DRAFTS, json_data={"message": {"raw": raw}})
        logger.info(f"Created draft {data.get('id')}")
        return {"id": data.get("id", "")}

    def modify_email(
        self,
        message_id: str,
        add_label_ids: Optional[List[str]] = None,
        remove_label_ids: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Add and/or remove labels on one message.

        Returns:
            Dict with id and the message's labelIds after the change
        """
        data = self.post(
            endpoints.MESSAGE_MODIFY.format(messageId=message_id),
            json_data={
                "addLabelIds": add_label_ids or [],
                "removeLabelIds": remove_label_ids or [],
            },
        )
        return {"id": data.get("id", message_id), "labelIds": data.get("labelIds", [])}

    def delete_email(self, message_id: str) -> None:
        """Permanently delete one message."""
        self._request("DELETE", endpoints.MESSAGE.format(messageId=message_id))
        logger.info(f"Deleted message {message_id}")

    # Bulk operations

    def batch_modify_emails(
        self,
        message_ids: List[str],
        add_label_ids: Optional[List[str]] = None,
        remove_label_ids: Optional[List[str]] = None,
        batch_size: Optional[int] = None,
    ) -> BatchResult:
        """
        Change labels on many messages.

        Each chunk is one batchModify call; a failing chunk is retried one
        message at a time.

        Returns:
            BatchResult with {"messageId": id, "success": True} per modified
            message and the ids that could not be modified
        """

        def modify_chunk(ids: List[str]) -> List[Dict[str, Any]]:
            self.post(
                endpoints.MESSAGES_BATCH_MODIFY,
                json_data={
                    "ids": ids,
                    "addLabelIds": add_label_ids or [],
                    "removeLabelIds": remove_label_ids or [],
                },
            )
            return [{"messageId": message_id, "success": True} for message_id in ids]

        result = self.executor.run(message_ids, modify_chunk, batch_size)
        logger.info(f"Batch label modification: {result.summary()}")
        return result

    def batch_delete_emails(
        self, message_ids: List[str], batch_size: Optional[int] = None
    ) -> BatchResult:
        """
        Permanently delete many messages.

        Returns:
            BatchResult with {"messageId": id, "success": True} per deleted
            message and the ids that could not be deleted
        """

        def delete_chunk(ids: List[str]) -> List[Dict[str, Any]]:
            self.post(endpoints.MESSAGES_BATCH_DELETE, json_data={"ids": ids})
            return [{"messageId": message_id, "success": True} for message_id in ids]

        result = self.executor.run(message_ids, delete_chunk, batch_size)
        logger.info(f"Batch delete: {result.summary()}")
        return result

    # Labels

    def list_labels(self) -> List[Dict[str, str]]:
        """
        List all labels.

        Returns:
            List of dicts with id, name, type
        """
        data = self.get(endpoints.LABELS)
        return [
            {"id": label["id"], "name": label["name"], "type": label.get("type", "")}
            for label in data.get("labels", [])
        ]
