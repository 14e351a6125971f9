"""
Bearer token guard for privileged endpoints.
"""

import hmac
from typing import Optional

from shared.errors import AuthenticationError, ConfigurationError


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_bearer_token(authorization: Optional[str], expected_token: Optional[str]) -> None:
    """Compare the presented token with ``expected_token`` in constant time.

    A service without a configured token refuses every caller.
    """
    if not expected_token:
        raise ConfigurationError("Status token is not configured")

    presented = extract_bearer_token(authorization)
    if presented is None:
        raise AuthenticationError("Missing bearer token")

    if not hmac.compare_digest(presented.encode("utf-8"), expected_token.encode("utf-8")):
        raise AuthenticationError("Invalid bearer token")
