"""Demo service that echoes authenticated requests."""

from __future__ import annotations

from collections.abc import Mapping

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from hmacauth.common.logging import get_logger, setup_logging
from hmacauth.common.metrics import metrics_endpoint
from hmacauth.common.settings import Settings, get_settings
from hmacauth.middleware import HmacAuthMiddleware
from hmacauth.server import SecretForKey, Server

logger = get_logger(__name__)

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def secrets_from_mapping(keys: Mapping[str, str]) -> SecretForKey:
    """Build a delegate that resolves secrets from a static mapping."""

    async def secret_for_key(api_key: str) -> str | None:
        return keys.get(api_key)

    return secret_for_key


async def handle_health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def handle_echo(request: Request) -> JSONResponse:
    """Echo back what the authenticated caller sent."""
    body = await request.body()
    return JSONResponse(
        {
            "authenticated": getattr(request.state, "authenticated", False),
            "api_key": getattr(request.state, "api_key", None),
            "method": request.method,
            "path": request.url.path,
            "query": dict(request.query_params),
            "body": body.decode("utf-8", errors="replace"),
        }
    )


def create_app(
    settings: Settings | None = None,
    secret_for_key: SecretForKey | None = None,
) -> Starlette:
    """Create the Starlette application."""
    settings = settings or get_settings()
    server = Server.from_settings(
        settings,
        secret_for_key or secrets_from_mapping(settings.keys),
    )

    routes = [
        Route("/health", handle_health, methods=["GET"]),
        Route("/metrics", metrics_endpoint, methods=["GET"]),
        Route("/{path:path}", handle_echo, methods=ALL_METHODS),
    ]

    app = Starlette(routes=routes)
    app.add_middleware(
        HmacAuthMiddleware,
        server=server,
        exempt_paths=settings.auth_exempt_paths,
    )
    app.state.auth_server = server

    return app


def main() -> None:
    """Entry point for the demo service."""
    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.json_logs)
    if not settings.keys:
        logger.warning("No API keys configured; every request will be rejected")
    app = create_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
