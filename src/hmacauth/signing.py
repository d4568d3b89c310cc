"""HMAC signing of canonical request strings."""

from __future__ import annotations

import hashlib
import hmac

ALGORITHMS = ("sha1", "sha256", "sha512")
DEFAULT_ALGORITHM = "sha256"

AUTHORIZATION_LABEL = "signature"


class UnsupportedAlgorithm(ValueError):
    """Requested HMAC algorithm is not one of ALGORITHMS."""

    def __init__(self, algorithm: str) -> None:
        super().__init__(
            f"Unsupported HMAC algorithm {algorithm!r}; "
            f"expected one of: {', '.join(ALGORITHMS)}"
        )
        self.algorithm = algorithm


def _key_bytes(secret: str | bytes) -> bytes:
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return secret


def sign(canonical: str, secret: str | bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Create a hex-encoded HMAC signature of a canonical string."""
    if algorithm not in ALGORITHMS:
        raise UnsupportedAlgorithm(algorithm)
    digestmod = getattr(hashlib, algorithm)
    return hmac.new(_key_bytes(secret), canonical.encode("utf-8"), digestmod).hexdigest()


def signatures_match(expected: str, presented: str) -> bool:
    """Compare signatures in constant time."""
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def format_authorization(algorithm: str, signature: str) -> str:
    """Build the ``authorization`` header value."""
    return f"{AUTHORIZATION_LABEL} {algorithm} {signature}"
