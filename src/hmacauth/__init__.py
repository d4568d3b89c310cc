"""
hmacauth: HMAC request signing for HTTP APIs.

Clients sign each request over a canonical form of its method, path,
query, selected headers and body; servers recompute the signature and
check it, along with the request timestamp, before letting it through.
"""

from hmacauth.canonical import canonicalize
from hmacauth.client import Client, SignedRequest, sign_request
from hmacauth.common.errors import AuthenticationError, ConfigurationError, ErrorCode
from hmacauth.middleware import HmacAuthMiddleware
from hmacauth.server import READ_BODY, AuthenticationResult, Server
from hmacauth.signing import ALGORITHMS, UnsupportedAlgorithm, sign

__version__ = "1.0.0"

__all__ = [
    "ALGORITHMS",
    "READ_BODY",
    "AuthenticationError",
    "AuthenticationResult",
    "Client",
    "ConfigurationError",
    "ErrorCode",
    "HmacAuthMiddleware",
    "Server",
    "SignedRequest",
    "UnsupportedAlgorithm",
    "canonicalize",
    "sign",
    "sign_request",
]
