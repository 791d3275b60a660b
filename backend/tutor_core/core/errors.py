"""Error taxonomy for the tutor core.

Every error carries the HTTP status it should surface with, so the API layer
can render it in the standard failure envelope without re-classifying it.
"""

from typing import Optional

from fastapi import status


class TutorCoreError(Exception):
    """Base class for all errors surfaced to callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(TutorCoreError):
    """Client input was rejected before any side effect."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class AuthorizationError(TutorCoreError):
    """Caller lacks the role required for the operation."""

    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFoundError(TutorCoreError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConfigurationError(TutorCoreError):
    """No LLM provider could be resolved."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "CONFIGURATION_ERROR"


class ProviderError(TutorCoreError):
    """An upstream LLM backend call failed.

    ``reason`` is one of ``rate_limited``, ``connection``, ``timeout`` or
    ``upstream``; the first three are transient and map to 503.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "AI_ERROR"

    TRANSIENT_REASONS = ("rate_limited", "connection", "timeout")

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        reason: str = "upstream",
    ):
        status_code = (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if reason in self.TRANSIENT_REASONS
            else status.HTTP_502_BAD_GATEWAY
        )
        super().__init__(message, status_code=status_code)
        self.provider = provider
        self.reason = reason
