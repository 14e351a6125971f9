"""
Shared error handling for the license registry.

Error taxonomy:

- ConfigurationError: missing key material, unmapped plan identifier.
  Fatal for the operation, never defaulted.
- PersistenceError: write/rename/timeout on the write path. Propagated so
  the upstream event source retries.
- VerificationError: bad signature, hash mismatch, malformed payload.
  Terminal for one attempt; callers fall back to the lowest trust state.
- RegistryUnavailableError: no network and no verified cache.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class LicensingException(Exception):
    """Base exception for the license registry."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(LicensingException):
    """Missing or invalid configuration (key material, plan table)."""

    status_code = 500

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class PersistenceError(LicensingException):
    """Registry write, rename or timeout failure."""

    status_code = 500

    def __init__(self, message: str = "Persistence failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERSISTENCE_ERROR", message, details)


class RegistryIntegrityError(LicensingException):
    """Private registry content does not match its stored hash."""

    status_code = 500

    def __init__(self, message: str = "Registry integrity check failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("REGISTRY_INTEGRITY_ERROR", message, details)


class VerificationError(LicensingException):
    """Signature, hash or payload verification failure."""

    status_code = 422

    def __init__(self, message: str = "Verification failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VERIFICATION_ERROR", message, details)


class RegistryUnavailableError(LicensingException):
    """Registry could not be fetched and no verified cache exists."""

    status_code = 503

    def __init__(self, message: str = "License registry unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("REGISTRY_UNAVAILABLE", message, details)


class AuthenticationError(LicensingException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(LicensingException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class RateLimitError(LicensingException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 1,
                 details: Optional[Dict[str, Any]] = None):
        self.retry_after = retry_after
        super().__init__("RATE_LIMIT_ERROR", message, details)


class EventProcessingError(LicensingException):
    """A payment lifecycle event could not be applied; the source must retry."""

    status_code = 500

    def __init__(self, message: str = "Webhook processing failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("EVENT_PROCESSING_ERROR", message, details)
