"""Webhook authenticity checks (X-Hub-Signature-256)."""

import hashlib
import hmac

from app.logging import get_logger
from app.services.inbox.errors import InvalidSignature

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
_PREFIX = "sha256="


def verify_webhook_signature(
    payload_body: bytes,
    signature_header: str | None,
    app_secret: str | None,
    platform: str | None = None,
) -> bool:
    """Verify a Meta webhook signature.

    Meta signs every webhook body with the app secret using HMAC-SHA256 and
    sends ``sha256=<hex digest>``. The digest is computed over the raw bytes,
    so callers must pass the body exactly as received.

    When no secret is configured for the deployment the check is skipped and
    the delivery is accepted; that choice is logged on every call.

    Args:
        payload_body: Raw request body bytes
        signature_header: Value of the X-Hub-Signature-256 header
        app_secret: Shared app secret, or empty to skip validation
        platform: Used only for log context

    Returns:
        True if the signature is valid (or validation is disabled)
    """
    if not app_secret:
        logger.warning("webhook_signature_check_skipped platform=%s reason=no_secret", platform)
        return True

    if not signature_header or not signature_header.startswith(_PREFIX):
        logger.warning("webhook_signature_missing_or_invalid platform=%s", platform)
        return False

    expected_signature = signature_header[len(_PREFIX):].strip().lower()
    computed_signature = hmac.new(
        app_secret.encode(),
        payload_body,
        hashlib.sha256,
    ).hexdigest()

    is_valid = hmac.compare_digest(
        expected_signature.encode("utf-8"), computed_signature.encode("ascii")
    )
    if not is_valid:
        logger.warning("webhook_signature_mismatch platform=%s", platform)
    return is_valid


def sign_payload(payload_body: bytes, app_secret: str) -> str:
    """Build the header value Meta would send for ``payload_body``."""
    digest = hmac.new(app_secret.encode(), payload_body, hashlib.sha256).hexdigest()
    return f"{_PREFIX}{digest}"


def require_webhook_signature(
    payload_body: bytes,
    signature_header: str | None,
    app_secret: str | None,
    platform: str | None = None,
) -> None:
    """Raise ``InvalidSignature`` unless ``verify_webhook_signature`` accepts."""
    if not verify_webhook_signature(payload_body, signature_header, app_secret, platform):
        raise InvalidSignature("Webhook signature is missing or does not match")
