"""Server-side verification of signed requests."""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Union

from starlette.requests import Request

from hmacauth.canonical import canonicalize
from hmacauth.common.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorCode,
    VerificationOutcome,
)
from hmacauth.common.logging import get_logger
from hmacauth.common.metrics import record_authentication, record_secret_lookup
from hmacauth.common.settings import Settings, parse_size
from hmacauth.signing import (
    ALGORITHMS,
    AUTHORIZATION_LABEL,
    format_authorization,
    sign,
    signatures_match,
)

logger = get_logger(__name__)

API_KEY_HEADER = "x-api-key"
API_KEY_QUERY_PARAM = "apiKey"

SecretResult = Union[str, bytes, None]
SecretForKey = Callable[
    [str],
    Union[SecretResult, Awaitable[SecretResult], "concurrent.futures.Future[SecretResult]"],
]

_EXAMPLE_AUTHORIZATION = format_authorization(
    "sha256", "a42d7b09a929b997aa8e6973bdbd5ca94326cbffc3d06a557d9ed36c6b80d4ff"
)


class _ReadBody:
    def __repr__(self) -> str:
        return "READ_BODY"


READ_BODY: Any = _ReadBody()
"""Sentinel asking the verifier to drain the request body itself."""


class _DelegateFailure(Exception):
    """Wraps an exception raised by the secret delegate."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


@dataclass(frozen=True)
class AuthenticationResult:
    """A successfully authenticated request."""

    api_key: str
    secret: str | bytes
    signature: str


def _parse_http_date(value: str) -> datetime | None:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _request_path(request: Request) -> str:
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1")
    return request.url.path


def _request_headers(request: Request) -> dict[str, str]:
    return {name: request.headers[name] for name in request.headers.keys()}


class Server:
    """
    Verifies signed requests.

    Each call to :meth:`authenticate` walks the request through key
    extraction, secret lookup, header checks, timestamp freshness and
    signature comparison, stopping at the first failure.
    """

    def __init__(
        self,
        secret_for_key: SecretForKey | None = None,
        *,
        secret_for_key_timeout_ms: int = 10_000,
        permitted_timestamp_skew_ms: int = 60_000,
        body_size_limit: int | str = "5mb",
        verbose: bool = False,
    ) -> None:
        """
        Initialize the verifier.

        Args:
            secret_for_key: Delegate resolving an API key to its secret
            secret_for_key_timeout_ms: Max wait for the delegate
            permitted_timestamp_skew_ms: Allowed distance between the date
                header and server time
            body_size_limit: Max body size drained by the verifier
            verbose: Log every authentication outcome
        """
        if secret_for_key_timeout_ms < 0:
            raise ValueError("secret_for_key_timeout_ms must not be negative")
        if permitted_timestamp_skew_ms < 0:
            raise ValueError("permitted_timestamp_skew_ms must not be negative")

        self._secret_for_key = secret_for_key
        self._secret_for_key_timeout_ms = secret_for_key_timeout_ms
        self._permitted_timestamp_skew_ms = permitted_timestamp_skew_ms
        self._body_size_limit = parse_size(body_size_limit)
        self._verbose = verbose

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        secret_for_key: SecretForKey | None = None,
    ) -> "Server":
        """Build a verifier from application settings."""
        return cls(
            secret_for_key,
            secret_for_key_timeout_ms=settings.secret_for_key_timeout_ms,
            permitted_timestamp_skew_ms=settings.permitted_timestamp_skew_ms,
            body_size_limit=settings.body_size_limit,
            verbose=settings.verbose,
        )

    @property
    def secret_for_key(self) -> SecretForKey | None:
        return self._secret_for_key

    @secret_for_key.setter
    def secret_for_key(self, delegate: SecretForKey | None) -> None:
        self._secret_for_key = delegate

    @property
    def body_size_limit(self) -> int:
        return self._body_size_limit

    def _log(self, event: str, **kwargs: Any) -> None:
        if self._verbose:
            logger.info(event, **kwargs)

    async def authenticate(
        self,
        request: Request,
        body: bytes | str | None = READ_BODY,
    ) -> AuthenticationResult:
        """
        Authenticate a request.

        Args:
            request: Inbound request
            body: Raw body, None for an empty body, or READ_BODY to drain
                it from the request

        Returns:
            AuthenticationResult for the verified caller

        Raises:
            AuthenticationError: Request rejected or secret lookup failed
            ConfigurationError: No secret delegate configured
        """
        request.state.authenticated = False

        try:
            result = await self._authenticate(request, body)
        except AuthenticationError as exc:
            record_authentication(exc.outcome.value, exc.code)
            self._log(
                "Authentication failed",
                code=exc.code,
                message=exc.message,
                method=request.method,
                path=request.url.path,
            )
            raise

        record_authentication(VerificationOutcome.AUTHENTICATED.value)
        self._log(
            "Authentication passed",
            api_key=result.api_key,
            signature=result.signature,
        )
        return result

    async def _authenticate(
        self,
        request: Request,
        body: bytes | str | None,
    ) -> AuthenticationResult:
        data = await self._acquire_body(request, body)

        api_key = self._get_api_key(request)
        if api_key is None:
            raise AuthenticationError(ErrorCode.API_KEY_MISSING, "Missing API key")
        request.state.api_key = api_key

        secret = await self._get_secret_for_key(api_key)
        request.state.secret = secret

        authorization = request.headers.get("authorization")
        if authorization is None:
            raise AuthenticationError(
                ErrorCode.AUTHORIZATION_HEADER_MISSING,
                "Missing authorization. Sign every request with the 'authorization' header.",
            )

        date = request.headers.get("date")
        if date is None:
            raise AuthenticationError(
                ErrorCode.DATE_HEADER_MISSING,
                "Missing timestamp. Timestamp every request with the 'date' header.",
            )

        self._check_timestamp(date)

        algorithm, signature = self._parse_authorization(authorization)

        canonical = canonicalize(
            request.method,
            _request_path(request),
            request.scope.get("query_string", b"").decode("latin-1"),
            _request_headers(request),
            data,
        )
        expected = sign(canonical, secret, algorithm)

        request.state.signature = signature
        request.state.signature_expected = expected

        if not signatures_match(expected, signature):
            raise AuthenticationError(ErrorCode.SIGNATURE_INVALID, "Signature is invalid.")

        request.state.authenticated = True
        return AuthenticationResult(api_key=api_key, secret=secret, signature=signature)

    async def _acquire_body(self, request: Request, body: bytes | str | None) -> bytes | str:
        if body is None:
            return b""
        if body is not READ_BODY:
            return body

        limit = self._body_size_limit
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise self._body_too_large(limit)

        data = await request.body()
        if len(data) > limit:
            raise self._body_too_large(limit)
        return data

    @staticmethod
    def _body_too_large(limit: int) -> AuthenticationError:
        return AuthenticationError(
            ErrorCode.REQUEST_BODY_TOO_LARGE,
            f"Request body exceeds the {limit} byte limit",
            {"limit": limit},
            status_code=413,
        )

    @staticmethod
    def _get_api_key(request: Request) -> str | None:
        api_key = request.headers.get(API_KEY_HEADER)
        if api_key is not None:
            return api_key
        return request.query_params.get(API_KEY_QUERY_PARAM)

    async def _get_secret_for_key(self, api_key: str) -> str | bytes:
        """
        Resolve the secret for an API key through the delegate.

        The first of (delegate result, timeout) wins; a late delegate
        result is discarded.
        """
        if self._secret_for_key is None:
            raise ConfigurationError(
                "No secret_for_key delegate configured. Pass one to Server() "
                "or assign server.secret_for_key before authenticating."
            )

        timeout = self._secret_for_key_timeout_ms / 1000
        start = time.perf_counter()
        try:
            secret = await asyncio.wait_for(self._call_delegate(api_key), timeout=timeout)
        except asyncio.TimeoutError:
            record_secret_lookup("timeout", time.perf_counter() - start)
            logger.warning("Secret lookup timed out", api_key=api_key, timeout_s=timeout)
            raise AuthenticationError(
                ErrorCode.INTERNAL_ERROR_SECRET_TIMEOUT,
                f'Internal failure while attempting to locate secret for API key "{api_key}": '
                f"secret_for_key has timed out after {timeout:g} seconds",
            ) from None
        except AuthenticationError:
            record_secret_lookup("error", time.perf_counter() - start)
            raise
        except _DelegateFailure as exc:
            record_secret_lookup("error", time.perf_counter() - start)
            logger.warning("Secret lookup failed", api_key=api_key, error=str(exc.cause))
            raise AuthenticationError(
                ErrorCode.INTERNAL_ERROR_SECRET_DISCOVERY,
                f'Internal failure while attempting to locate secret for API key "{api_key}"',
            ) from exc.cause

        latency = time.perf_counter() - start
        if secret is None:
            record_secret_lookup("unrecognized", latency)
            raise AuthenticationError(
                ErrorCode.API_KEY_UNRECOGNIZED,
                f"Unrecognized API key: {api_key}",
            )
        if not isinstance(secret, (str, bytes)):
            record_secret_lookup("error", latency)
            logger.warning(
                "Secret lookup returned an unusable value",
                api_key=api_key,
                type=type(secret).__name__,
            )
            raise AuthenticationError(
                ErrorCode.INTERNAL_ERROR_SECRET_DISCOVERY,
                f'Internal failure while attempting to locate secret for API key "{api_key}"',
            )

        record_secret_lookup("found", latency)
        return secret

    async def _call_delegate(self, api_key: str) -> Any:
        delegate = self._secret_for_key
        assert delegate is not None
        try:
            if inspect.iscoroutinefunction(delegate):
                return await delegate(api_key)

            # Plain callables may block; keep them off the event loop.
            result = await asyncio.to_thread(delegate, api_key)
            if isinstance(result, concurrent.futures.Future):
                return await asyncio.wrap_future(result)
            if inspect.isawaitable(result):
                return await result
            return result
        except AuthenticationError:
            raise
        except Exception as exc:
            raise _DelegateFailure(exc) from exc

    def _check_timestamp(self, value: str) -> None:
        now = datetime.now(timezone.utc)
        current = format_datetime(now, usegmt=True)

        request_time = _parse_http_date(value)
        if request_time is None:
            raise AuthenticationError(
                ErrorCode.DATE_HEADER_INVALID,
                f'Timestamp could not be parsed. Received: "{value}" current time: "{current}"',
                {"received": value, "time": current},
            )

        skew_ms = abs((now - request_time).total_seconds()) * 1000
        if skew_ms > self._permitted_timestamp_skew_ms:
            qualifier = "too old" if request_time < now else "in the future"
            raise AuthenticationError(
                ErrorCode.DATE_HEADER_INVALID,
                f'Timestamp is {qualifier}. Received: "{value}" current time: "{current}"',
                {"received": value, "time": current},
            )

    @staticmethod
    def _parse_authorization(value: str) -> tuple[str, str]:
        components = value.split()
        if len(components) != 3 or components[0] != AUTHORIZATION_LABEL:
            raise AuthenticationError(
                ErrorCode.AUTHORIZATION_HEADER_INVALID,
                f'Authorization header is improperly formatted: "{value}"',
                {"expected": f'It should look like: "{_EXAMPLE_AUTHORIZATION}"'},
            )

        _, algorithm, signature = components
        if algorithm not in ALGORITHMS:
            raise AuthenticationError(
                ErrorCode.HMAC_ALGORITHM_INVALID,
                f'Authorization header sent invalid algorithm: "{algorithm}". '
                f'Supported HMAC algorithms: "{", ".join(ALGORITHMS)}"',
                {"algorithms": list(ALGORITHMS)},
            )
        return algorithm, signature
