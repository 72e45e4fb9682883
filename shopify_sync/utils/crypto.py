"""Webhook signature helpers."""

import base64
import hashlib
import hmac
from typing import Optional, Union


def compute_hmac(raw_body: bytes, secret: str) -> str:
    """Base64 encoded HMAC-SHA256 of the raw request body."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_hmac(raw_body: Union[bytes, str], hmac_header: Optional[str], secret: str) -> bool:
    """Verify a Shopify ``X-Shopify-Hmac-Sha256`` header in constant time.

    The body must be the exact bytes received; a re-serialized payload will
    not match. Missing headers and malformed input return False.
    """
    if not hmac_header or not secret:
        return False
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    expected = compute_hmac(raw_body, secret).encode("ascii")
    try:
        provided = hmac_header.strip().encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected, provided)
