"""
Webhook Signature Verification
==============================
Shared-secret HMAC-SHA256 over the exact raw request bytes, hex encoded.
Used for manufacturer webhooks; Stripe events go through the payment
gateway's own verification contract instead.
"""

import hashlib
import hmac
from typing import Optional, Union


def compute_signature(raw_body: bytes, secret: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 digest of ``raw_body`` keyed by ``secret``."""
    key = secret.encode() if isinstance(secret, str) else secret
    return hmac.new(key, raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    secret: Optional[Union[str, bytes]],
    provided: Optional[str],
) -> bool:
    """Constant-time check of ``provided`` against the expected digest.

    A missing secret or signature never verifies.
    """
    if not secret or not provided:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode(), provided.strip().lower().encode())
