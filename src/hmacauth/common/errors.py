"""Shared error types, codes and the JSON error envelope."""

from __future__ import annotations

from enum import Enum
from typing import Any

from starlette.responses import JSONResponse


class ErrorCode:
    API_KEY_MISSING = "API_KEY_MISSING"
    API_KEY_UNRECOGNIZED = "API_KEY_UNRECOGNIZED"
    AUTHORIZATION_HEADER_MISSING = "AUTHORIZATION_HEADER_MISSING"
    AUTHORIZATION_HEADER_INVALID = "AUTHORIZATION_HEADER_INVALID"
    DATE_HEADER_MISSING = "DATE_HEADER_MISSING"
    DATE_HEADER_INVALID = "DATE_HEADER_INVALID"
    HMAC_ALGORITHM_INVALID = "HMAC_ALGORITHM_INVALID"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    REQUEST_BODY_TOO_LARGE = "REQUEST_BODY_TOO_LARGE"
    INTERNAL_ERROR_SECRET_DISCOVERY = "INTERNAL_ERROR_SECRET_DISCOVERY"
    INTERNAL_ERROR_SECRET_TIMEOUT = "INTERNAL_ERROR_SECRET_TIMEOUT"


INTERNAL_CODES = frozenset(
    {
        ErrorCode.INTERNAL_ERROR_SECRET_DISCOVERY,
        ErrorCode.INTERNAL_ERROR_SECRET_TIMEOUT,
    }
)


class VerificationOutcome(Enum):
    """Result of verifying a single request."""

    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"  # Caller error
    ERRORED = "errored"  # Infrastructure failure


class AuthenticationError(Exception):
    """A request failed authentication.

    Carries a stable machine-readable ``code`` and a human-readable
    ``message``. Extra context (received date, supported algorithms, ...)
    lives in ``details``.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is None:
            status_code = 500 if code in INTERNAL_CODES else 401
        self.status_code = status_code

    @property
    def outcome(self) -> VerificationOutcome:
        if self.status_code >= 500:
            return VerificationOutcome.ERRORED
        return VerificationOutcome.REJECTED

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code, **self.details}

    def __repr__(self) -> str:
        return f"AuthenticationError(code={self.code!r}, message={self.message!r})"


class ConfigurationError(RuntimeError):
    """The verifier was set up incorrectly (e.g. no secret delegate)."""


def error_response(
    code: str,
    message: str,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
        }
    }
    if details:
        payload["error"]["details"] = details
    return JSONResponse(payload, status_code=status_code)
