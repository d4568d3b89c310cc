"""Pytest configuration and fixtures."""

from collections.abc import Callable, Mapping
from typing import Any

import pytest
from starlette.requests import Request

from hmacauth.client import SignedRequest, sign_request
from hmacauth.common.settings import Settings
from hmacauth.server import Server

API_KEY = "API_KEY"
SECRET = "SECRET"


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return Settings(
        api_key=API_KEY,
        secret=SECRET,
        base_url="http://testserver",
        keys={API_KEY: SECRET, "API_KEY_TWO": "SECRET_TWO"},
        verbose=True,
    )


@pytest.fixture
def secrets() -> dict[str, str]:
    """API key to secret mapping."""
    return {API_KEY: SECRET, "API_KEY_TWO": "SECRET_TWO"}


@pytest.fixture
def server(secrets: dict[str, str]) -> Server:
    """Verifier backed by the test secrets."""

    async def secret_for_key(api_key: str) -> str | None:
        return secrets.get(api_key)

    return Server(secret_for_key, verbose=True)


def build_request(
    method: str,
    path: str,
    query_string: str = "",
    headers: Mapping[str, str] | None = None,
    body: bytes = b"",
) -> Request:
    """Build a Starlette request straight from an ASGI scope."""
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
        "root_path": "",
        "path": path,
        "raw_path": path.encode("latin-1"),
        "query_string": query_string.encode("latin-1"),
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or {}).items()
        ],
    }
    sent = False

    async def receive() -> dict[str, Any]:
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def request_from_signed(signed: SignedRequest, **overrides: Any) -> Request:
    """Turn a client-side SignedRequest into the server's view of it."""
    return build_request(
        overrides.get("method", signed.method),
        overrides.get("path", signed.path),
        overrides.get("query_string", signed.query_string),
        overrides.get("headers", signed.headers),
        overrides.get("body", signed.body),
    )


@pytest.fixture
def signed_request() -> Callable[..., SignedRequest]:
    """Factory for requests signed with the default test credentials."""

    def _sign(method: str = "GET", path: str = "/items/", **kwargs: Any) -> SignedRequest:
        kwargs.setdefault("api_key", API_KEY)
        kwargs.setdefault("secret", SECRET)
        return sign_request(method=method, path=path, **kwargs)

    return _sign


@pytest.fixture
def make_request() -> Callable[..., Request]:
    """Factory for raw Starlette requests."""
    return build_request


@pytest.fixture
def to_server_request() -> Callable[..., Request]:
    """Factory turning a SignedRequest into an inbound Request."""
    return request_from_signed
