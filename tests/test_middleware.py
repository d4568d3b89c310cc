"""Tests for the signature middleware and the demo app."""

import time

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.testclient import TestClient

from hmacauth.app import create_app, secrets_from_mapping
from hmacauth.client import http_date, sign_request
from hmacauth.middleware import HmacAuthMiddleware
from hmacauth.server import Server


def _send(client: TestClient, signed, **overrides):
    return client.request(
        overrides.get("method", signed.method),
        overrides.get("url", signed.url_path),
        headers=overrides.get("headers", signed.headers),
        content=overrides.get("content", signed.body),
    )


async def echo(request: Request) -> JSONResponse:
    body = await request.body()
    return JSONResponse(
        {
            "api_key": request.state.auth.api_key,
            "authenticated": request.state.authenticated,
            "body": body.decode("utf-8"),
        }
    )


async def health(request: Request) -> Response:
    return Response("healthy", media_type="text/plain")


def build_app(server: Server, **middleware_kwargs) -> Starlette:
    app = Starlette(
        routes=[
            Route("/items/{item_id}", echo, methods=["GET", "POST"]),
            Route("/health", health),
        ]
    )
    app.add_middleware(HmacAuthMiddleware, server=server, **middleware_kwargs)
    return app


class TestHmacAuthMiddleware:
    """Tests for HmacAuthMiddleware."""

    @pytest.fixture
    def client(self, server):
        return TestClient(build_app(server, exempt_paths=["/health"]))

    def test_signed_get(self, client):
        """Signed GET reaches the endpoint."""
        signed = sign_request("API_KEY", "SECRET", "GET", "/items/1", query={"q": "a b"})

        response = _send(client, signed)

        assert response.status_code == 200
        assert response.json()["api_key"] == "API_KEY"
        assert response.json()["authenticated"] is True

    def test_signed_post_body_still_readable(self, client):
        """Endpoint can read the body the middleware drained."""
        signed = sign_request(
            "API_KEY",
            "SECRET",
            "POST",
            "/items/1",
            query={"tags": ["x", "y"], "meta": {"draft": False}},
            headers={"content-type": "application/json"},
            body='{"name":"bear"}',
        )

        response = _send(client, signed)

        assert response.status_code == 200
        assert response.json()["body"] == '{"name":"bear"}'

    def test_unsigned_request_rejected(self, client):
        """Requests without credentials get the JSON error envelope."""
        response = client.get("/items/1")

        assert response.status_code == 401
        assert response.json() == {
            "error": {"code": "API_KEY_MISSING", "message": "Missing API key"}
        }

    def test_stale_request_rejected(self, client):
        """Replayed requests outside the skew window are refused."""
        signed = sign_request(
            "API_KEY", "SECRET", "GET", "/items/1", date=http_date(time.time() - 3600)
        )

        response = _send(client, signed)

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "DATE_HEADER_INVALID"
        assert error["details"]["received"] == signed.headers["date"]

    def test_tampered_body_rejected(self, client):
        """Changing the body after signing is detected."""
        signed = sign_request("API_KEY", "SECRET", "POST", "/items/1", body="amount=10")

        response = _send(client, signed, content=b"amount=99")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "SIGNATURE_INVALID"

    def test_exempt_path(self, client):
        """Exempt paths skip authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.text == "healthy"

    def test_secret_lookup_failure_is_server_error(self):
        """Delegate failures surface as 500s."""

        async def broken(api_key):
            raise ConnectionError("key store down")

        client = TestClient(build_app(Server(broken)))
        signed = sign_request("API_KEY", "SECRET", "GET", "/items/1")

        response = _send(client, signed)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR_SECRET_DISCOVERY"

    def test_custom_rejected_handler(self, server):
        """on_rejected controls the failure response."""

        async def plain_text(request, error):
            return Response(f"denied: {error.code}", status_code=403)

        client = TestClient(build_app(server, on_rejected=plain_text))

        response = client.get("/items/1")

        assert response.status_code == 403
        assert response.text == "denied: API_KEY_MISSING"


class TestDemoApp:
    """Tests for the demo echo service."""

    @pytest.fixture
    def client(self, settings):
        return TestClient(create_app(settings))

    def test_health_is_open(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_echo_signed_request(self, client):
        """Signed requests are echoed back."""
        signed = sign_request(
            "API_KEY_TWO",
            "SECRET_TWO",
            "POST",
            "/bears/",
            query={"limit": 5},
            headers={"content-type": "application/json"},
            body='{"species":"grizzly"}',
        )

        response = _send(client, signed)

        assert response.status_code == 200
        payload = response.json()
        assert payload["authenticated"] is True
        assert payload["api_key"] == "API_KEY_TWO"
        assert payload["path"] == "/bears/"
        assert payload["query"] == {"limit": "5"}
        assert payload["body"] == '{"species":"grizzly"}'

    def test_unknown_key(self, client):
        """Keys missing from settings.keys are unrecognized."""
        signed = sign_request("WHO", "SECRET", "GET", "/bears/")

        response = _send(client, signed)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "API_KEY_UNRECOGNIZED"

    def test_metrics_count_outcomes(self, client):
        """Authentication outcomes show up in /metrics."""
        client.get("/bears/")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "hmacauth_authentications_total" in response.text
        assert 'code="API_KEY_MISSING"' in response.text

    def test_custom_delegate(self, settings):
        """An explicit delegate overrides settings.keys."""
        app = create_app(settings, secrets_from_mapping({"OTHER": "OTHER_SECRET"}))
        client = TestClient(app)
        signed = sign_request("OTHER", "OTHER_SECRET", "GET", "/anything")

        response = _send(client, signed)

        assert response.status_code == 200
        assert response.json()["api_key"] == "OTHER"
