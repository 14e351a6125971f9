"""
HMAC-SHA256 signatures on inbound payment events.
"""

import hashlib
import hmac
from typing import Optional

from shared.errors import AuthenticationError, ConfigurationError

SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """Raise unless ``signature`` matches the body. Fails closed without a secret."""
    if not secret:
        raise ConfigurationError("Webhook secret is not configured")
    if not signature:
        raise AuthenticationError(f"Missing {SIGNATURE_HEADER} header")

    expected = compute_signature(body, secret)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8")):
        raise AuthenticationError("Webhook signature verification failed")
