"""Inbox error taxonomy.

Webhook-side errors are absorbed and logged by the webhook boundary.
Operator-side errors propagate to the HTTP layer, which renders them with
``status_code`` and ``code``.
"""

from __future__ import annotations


class InboxError(Exception):
    status_code = 400
    code = "inbox_error"

    def __init__(self, message: str, details: object | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidSignature(InboxError):
    status_code = 401
    code = "invalid_signature"


class UnknownConversationForReceipt(InboxError):
    status_code = 404
    code = "unknown_receipt_target"


class ConversationNotFound(InboxError):
    status_code = 404
    code = "conversation_not_found"


class ConversationBlocked(InboxError):
    status_code = 409
    code = "conversation_blocked"


class SendFailed(InboxError):
    """The vendor refused a send. ``vendor_error`` is the vendor's own text."""

    status_code = 502
    code = "send_failed"

    def __init__(
        self,
        message: str,
        vendor_error: str | None = None,
        vendor_status: int | None = None,
    ):
        super().__init__(message, {"vendor_error": vendor_error} if vendor_error else None)
        self.vendor_error = vendor_error
        self.vendor_status = vendor_status


VendorSendFailed = SendFailed


class TranscodeFailed(SendFailed):
    status_code = 422
    code = "transcode_failed"


class MediaResolutionFailed(InboxError):
    status_code = 502
    code = "media_resolution_failed"


class MediaNotAllowed(InboxError):
    status_code = 403
    code = "media_not_allowed"


class RangeNotSatisfiable(InboxError):
    status_code = 416
    code = "range_not_satisfiable"

    def __init__(self, message: str, total: int | None = None):
        super().__init__(message)
        self.total = total
