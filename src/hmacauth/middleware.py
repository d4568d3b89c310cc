"""Starlette middleware enforcing signed requests."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from hmacauth.common.errors import AuthenticationError, error_response
from hmacauth.common.logging import get_logger
from hmacauth.server import READ_BODY, Server

logger = get_logger(__name__)

RejectedHandler = Callable[[Request, AuthenticationError], Awaitable[Response]]


async def default_rejected_handler(request: Request, error: AuthenticationError) -> Response:
    """Render an authentication failure as the JSON error envelope."""
    return error_response(
        error.code,
        error.message,
        status_code=error.status_code,
        details=error.details or None,
    )


class HmacAuthMiddleware(BaseHTTPMiddleware):
    """HMAC signature middleware for API requests."""

    def __init__(
        self,
        app: ASGIApp,
        server: Server,
        exempt_paths: Iterable[str] = (),
        on_rejected: RejectedHandler | None = None,
    ) -> None:
        super().__init__(app)
        self._server = server
        self._exempt_paths = set(exempt_paths)
        self._on_rejected = on_rejected or default_rejected_handler

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._exempt_paths:
            return await call_next(request)

        try:
            result = await self._server.authenticate(request, READ_BODY)
        except AuthenticationError as exc:
            if exc.status_code >= 500:
                logger.error(
                    "Request authentication errored",
                    code=exc.code,
                    path=request.url.path,
                )
            return await self._on_rejected(request, exc)

        request.state.auth = result
        structlog.contextvars.bind_contextvars(api_key=result.api_key)
        try:
            return await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("api_key")
