"""
Gateway signature helpers

Constant-time comparison plus the digest primitives used by the payment
gateway adapters (HMAC-SHA256 for Razorpay, SHA-512 for PayU).
"""

import hashlib
import hmac


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def compute_sha512(payload: str) -> str:
    """Lowercase hex SHA-512 of a UTF-8 string"""
    return hashlib.sha512(payload.encode("utf-8")).hexdigest()

