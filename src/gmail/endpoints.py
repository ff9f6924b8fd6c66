"""
Gmail API endpoint definitions.

Paths are relative to the per-user base URL.

Documentation: https://developers.google.com/gmail/api/reference/rest
"""

BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"

# Messages
MESSAGES = "/messages"
MESSAGE = "/messages/{messageId}"
MESSAGE_SEND = "/messages/send"
MESSAGE_MODIFY = "/messages/{messageId}/modify"
MESSAGE_ATTACHMENT = "/messages/{messageId}/attachments/{attachmentId}"
MESSAGES_BATCH_MODIFY = "/messages/batchModify"
MESSAGES_BATCH_DELETE = "/messages/batchDelete"

# Drafts
DRAFTS = "/drafts"

# Labels
LABELS = "/labels"
