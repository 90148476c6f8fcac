"""
Webhook signature verification.

Shopify signs webhooks using HMAC-SHA256 over the raw request body with the
app's API secret, base64-encoded. Verification MUST use the exact bytes
received; parsing and re-serializing the JSON changes the digest.
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, shared_secret: str) -> str:
    """Base64-encoded HMAC-SHA256 of ``raw_body``."""
    digest = hmac.new(
        shared_secret.encode("utf-8"),
        raw_body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify(raw_body: bytes, provided_digest: Optional[str], shared_secret: str) -> bool:
    """
    Verify a webhook signature.

    Args:
        raw_body: Raw request body bytes
        provided_digest: Signature header value (may be absent)
        shared_secret: Shopify app API secret

    Returns:
        True if signature is valid, False otherwise (including a missing
        digest or secret)
    """
    if not provided_digest or not shared_secret:
        return False

    computed = compute_signature(raw_body, shared_secret)

    # Constant-time comparison to prevent timing attacks
    try:
        return hmac.compare_digest(
            computed.encode("ascii"), provided_digest.encode("ascii")
        )
    except UnicodeEncodeError:
        logger.warning("Webhook signature contains non-ASCII characters")
        return False
