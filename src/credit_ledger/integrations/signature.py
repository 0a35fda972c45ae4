"""
Webhook Signature Verification

Payment notifications carry an X-Signature header: the hex HMAC-SHA256 of the
raw request body under the shared webhook secret.
"""

import hashlib
import hmac
from typing import Optional, Union


def compute_signature(raw_body: Union[bytes, str], secret: str) -> str:
    """Hex HMAC-SHA256 of a request body."""
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: Union[bytes, str], signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Constant-time check of a notification signature.

    Returns False for a missing secret, a missing signature, or anything that
    is not a matching hex digest.
    """
    if not secret or not signature:
        return False

    expected = compute_signature(raw_body, secret)
    # compare_digest rejects non-ASCII str with TypeError
    try:
        return hmac.compare_digest(expected, signature.strip().lower())
    except TypeError:
        return False
