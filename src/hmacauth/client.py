"""Client-side request signing and an aiohttp transport that uses it."""

from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass
from email.utils import formatdate
from typing import Any

import aiohttp
from yarl import URL

from hmacauth.canonical import Body, Query, canonical_query, canonicalize
from hmacauth.common.logging import get_logger
from hmacauth.common.settings import Settings, get_settings
from hmacauth.signing import DEFAULT_ALGORITHM, format_authorization, sign

logger = get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class SignedRequest:
    """An outgoing request with its signing headers attached."""

    method: str
    path: str
    query_string: str
    headers: dict[str, str]
    body: bytes
    canonical: str

    @property
    def url_path(self) -> str:
        """Path plus query string, ready to append to a base URL."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path


def http_date(timestamp: float | None = None) -> str:
    """Format a timestamp (default: now) as an RFC 1123 GMT date."""
    return formatdate(timestamp if timestamp is not None else time.time(), usegmt=True)


def sign_request(
    api_key: str,
    secret: str | bytes,
    method: str,
    path: str,
    query: Query = None,
    headers: Mapping[str, Any] | None = None,
    body: Body = None,
    algorithm: str = DEFAULT_ALGORITHM,
    date: str | None = None,
) -> SignedRequest:
    """
    Sign an outgoing request.

    The query string sent on the wire is the canonical query itself, so the
    server parses back exactly the pairs that were signed.

    Args:
        api_key: API key identifying the caller
        secret: Shared secret for the API key
        method: HTTP verb
        path: Raw (already encoded) request path
        query: Query mapping, pair sequence or string
        headers: Extra headers to send
        body: Raw body
        algorithm: HMAC algorithm name
        date: RFC 1123 date to send (default: now)

    Returns:
        SignedRequest with all headers to attach
    """
    if isinstance(body, str):
        payload = body.encode("utf-8")
    else:
        payload = bytes(body) if body else b""

    signed_headers = {name.lower(): str(value) for name, value in (headers or {}).items()}
    signed_headers["x-api-key"] = api_key
    signed_headers["date"] = date or http_date()
    if payload:
        signed_headers["content-length"] = str(len(payload))
        signed_headers.setdefault("content-type", DEFAULT_CONTENT_TYPE)
    else:
        signed_headers.pop("content-length", None)

    query_string = canonical_query(query)
    canonical = canonicalize(method, path, query_string, signed_headers, payload)
    signature = sign(canonical, secret, algorithm)
    signed_headers["authorization"] = format_authorization(algorithm, signature)

    return SignedRequest(
        method=method.upper(),
        path=path,
        query_string=query_string,
        headers=signed_headers,
        body=payload,
        canonical=canonical,
    )


class ClientRequestError(Exception):
    """Error calling a signed-request API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.payload = payload


def _encode_data(data: Any) -> tuple[bytes, str | None]:
    if data is None:
        return b"", None
    if isinstance(data, (bytes, bytearray)):
        return bytes(data), DEFAULT_CONTENT_TYPE
    if isinstance(data, str):
        return data.encode("utf-8"), "text/plain; charset=utf-8"
    return json.dumps(data, separators=(",", ":")).encode("utf-8"), "application/json"


def _error_details(payload: Any) -> tuple[str | None, str | None]:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        return error.get("code"), error.get("message")
    return None, None


class Client:
    """
    HTTP client that signs every request it sends.

    Use as an async context manager, or call :meth:`close` when done.
    """

    def __init__(
        self,
        api_key: str | None = None,
        secret: str | None = None,
        settings: Settings | None = None,
        *,
        base_url: str | None = None,
        algorithm: str | None = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: API key (default: settings.api_key)
            secret: Shared secret (default: settings.secret)
            settings: Application settings
            base_url: Service base URL (default: settings.base_url)
            algorithm: HMAC algorithm (default: settings.algorithm)
        """
        settings = settings or get_settings()
        api_key = api_key or settings.api_key
        secret = secret or settings.secret
        if not api_key or not secret:
            raise ValueError("Client requires an API key and a secret")

        self._api_key = api_key
        self._secret = secret
        self._base_url = (base_url or settings.base_url).rstrip("/")
        self._algorithm = algorithm or settings.algorithm
        self._timeout = aiohttp.ClientTimeout(total=settings.http_timeout)
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> "Client":
        """Enter async context."""
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context."""
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure session exists."""
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def sign(
        self,
        method: str,
        path: str,
        query: Query = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> SignedRequest:
        """Sign a request without sending it."""
        body, content_type = _encode_data(data)
        extra = {name.lower(): value for name, value in (headers or {}).items()}
        if body and content_type:
            extra.setdefault("content-type", content_type)
        return sign_request(
            self._api_key,
            self._secret,
            method,
            path,
            query=query,
            headers=extra,
            body=body,
            algorithm=self._algorithm,
        )

    async def request(
        self,
        method: str,
        path: str,
        query: Query = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """
        Send a signed request.

        Args:
            method: HTTP verb
            path: Raw request path
            query: Query parameters
            data: Body; dicts and lists are sent as JSON
            headers: Extra headers

        Returns:
            Decoded JSON response, or response text

        Raises:
            ClientRequestError: On transport failure or a 4xx/5xx response
        """
        signed = self.sign(method, path, query=query, data=data, headers=headers)
        url = URL(f"{self._base_url}{signed.url_path}", encoded=True)
        session = self._ensure_session()

        logger.debug("Sending signed request", method=signed.method, url=str(url))

        try:
            response = await session.request(
                signed.method,
                url,
                headers=signed.headers,
                data=signed.body or None,
            )
        except aiohttp.ClientError as e:
            raise ClientRequestError(f"Request failed: {e}") from e

        async with response:
            if response.content_type == "application/json":
                payload = await response.json()
            else:
                payload = await response.text()

            if response.status >= 400:
                code, message = _error_details(payload)
                raise ClientRequestError(
                    message or f"Request failed with status {response.status}",
                    status_code=response.status,
                    code=code,
                    payload=payload,
                )
            return payload

    async def call(
        self,
        method: str,
        path: str,
        data: Any = None,
        query: Query = None,
    ) -> Any:
        """Shorthand for :meth:`request` with positional body."""
        return await self.request(method, path, query=query, data=data)

    async def get(self, path: str, query: Query = None) -> Any:
        return await self.request("GET", path, query=query)

    async def post(self, path: str, data: Any = None, query: Query = None) -> Any:
        return await self.request("POST", path, query=query, data=data)

    async def put(self, path: str, data: Any = None, query: Query = None) -> Any:
        return await self.request("PUT", path, query=query, data=data)

    async def delete(self, path: str, query: Query = None) -> Any:
        return await self.request("DELETE", path, query=query)
