"""Common utilities for hmacauth."""

from hmacauth.common.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorCode,
    VerificationOutcome,
)
from hmacauth.common.settings import Settings, get_settings, parse_size

__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "ErrorCode",
    "Settings",
    "VerificationOutcome",
    "get_settings",
    "parse_size",
]
