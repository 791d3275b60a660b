"""Core configuration, errors and security for the tutor core."""

from .config import Settings, get_settings
from .errors import (
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    TutorCoreError,
    ValidationError,
)
from .security import create_access_token, verify_access_token

__all__ = [
    "Settings",
    "get_settings",
    "AuthorizationError",
    "ConfigurationError",
    "NotFoundError",
    "ProviderError",
    "TutorCoreError",
    "ValidationError",
    "create_access_token",
    "verify_access_token",
]
