"""Configuration management using pydantic-settings."""

import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SIZE_UNITS = {
    "b": 1,
    "kb": 1024,
    "mb": 1024**2,
    "gb": 1024**3,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(b|kb|mb|gb)?\s*$", re.IGNORECASE)


def parse_size(value: int | str) -> int:
    """
    Convert a size such as ``5mb`` or ``1024`` to a number of bytes.

    Units are 1024-based. A bare number is taken as bytes.

    Raises:
        ValueError: If the value is negative or not understood
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Size must not be negative: {value}")
        return value

    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")

    number, unit = match.groups()
    return int(float(number) * _SIZE_UNITS[(unit or "b").lower()])


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HMACAUTH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Verifier
    secret_for_key_timeout_ms: int = Field(
        default=10_000,
        ge=0,
        description="Milliseconds to wait for the secret lookup delegate",
    )
    permitted_timestamp_skew_ms: int = Field(
        default=60_000,
        ge=0,
        description="Max distance (ms) between the date header and server time",
    )
    body_size_limit: int = Field(
        default=5 * 1024**2,
        description="Max request body size read by the verifier (bytes or e.g. '5mb')",
    )
    verbose: bool = Field(
        default=False,
        description="Log every authentication outcome",
    )

    # Client
    api_key: str | None = Field(
        default=None,
        description="API key sent by the signing client",
    )
    secret: str | None = Field(
        default=None,
        description="Shared secret used by the signing client",
    )
    algorithm: Literal["sha1", "sha256", "sha512"] = Field(
        default="sha256",
        description="HMAC algorithm used by the signing client",
    )
    base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL the signing client sends requests to",
    )
    http_timeout: float = Field(
        default=30.0,
        description="HTTP request timeout in seconds",
    )

    # Demo server
    host: str = Field(
        default="0.0.0.0",
        description="Host for the demo HTTP server",
    )
    port: int = Field(
        default=8000,
        description="Port for the demo HTTP server",
    )
    keys: dict[str, str] = Field(
        default_factory=dict,
        description="Mapping of API key to secret for the demo server (JSON)",
    )
    auth_exempt_paths: tuple[str, ...] = Field(
        default=("/health", "/metrics"),
        description="Paths exempt from signature checks",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level for the demo server and CLI",
    )
    json_logs: bool = Field(
        default=False,
        description="Emit JSON log lines",
    )

    @field_validator("body_size_limit", mode="before")
    @classmethod
    def _normalise_body_size_limit(cls, value: int | str) -> int:
        return parse_size(value)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
