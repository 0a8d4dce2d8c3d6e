"""Lemon Squeezy webhook signature verification."""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    """Check the X-Signature header against the body exactly as received.

    The body must not be parsed and re-serialized first; Lemon Squeezy signs
    the bytes it sent.
    """
    if not signature:
        return False

    expected = compute_signature(raw_body, secret)
    logger.debug("Computed signature %s..., received %s...", expected[:12], signature[:12])
    return hmac.compare_digest(expected.encode(), signature.encode())
