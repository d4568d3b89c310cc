"""Canonical request form used as the HMAC input.

A request is reduced to five newline-joined sections::

    METHOD
    PATH
    QUERY
    HEADER_LINES
    BODY_HASH

Signer and verifier must produce byte-identical output, so every rule here
is part of the wire contract.

Query flattening
----------------
Structured query values are flattened to string pairs before encoding:

* ``str`` is used as-is, ``bool`` becomes ``true``/``false``, ``None``
  becomes an empty string, ``bytes`` are decoded as UTF-8 and any other
  scalar goes through ``str()``.
* A mapping under ``key`` yields ``key[child]`` for each child.
* A list or tuple under ``key`` yields ``key[0]``, ``key[1]``, ...
* Nesting applies recursively, e.g. ``{"a": {"b": [1]}}`` -> ``a[b][0]=1``.

Keys and values are then percent-encoded like ``encodeURIComponent`` (space
is ``%20``), and pairs are stable-sorted by encoded key.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from typing import Any, Union
from urllib.parse import parse_qsl, quote

SIGNED_HEADERS = ("x-api-key", "date", "content-length", "content-type")
BODY_HEADERS = frozenset({"content-length", "content-type"})

EMPTY_BODY_DIGEST = hashlib.sha256(b"").hexdigest()

# Characters encodeURIComponent leaves alone, on top of quote()'s own set.
_UNRESERVED = "!~*'()"

Query = Union[str, Mapping[str, Any], Iterable[tuple[str, Any]], None]
Body = Union[bytes, bytearray, str, None]


def encode_component(value: str) -> str:
    """Percent-encode a query key or value."""
    return quote(value, safe=_UNRESERVED)


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


def _flatten(key: str, value: Any) -> list[tuple[str, str]]:
    if isinstance(value, Mapping):
        pairs: list[tuple[str, str]] = []
        for child_key, child_value in value.items():
            pairs.extend(_flatten(f"{key}[{child_key}]", child_value))
        return pairs
    if isinstance(value, (list, tuple)):
        pairs = []
        for index, item in enumerate(value):
            pairs.extend(_flatten(f"{key}[{index}]", item))
        return pairs
    return [(key, _scalar(value))]


def flatten_query(query: Query) -> list[tuple[str, str]]:
    """
    Reduce any accepted query form to a flat list of decoded string pairs.

    Args:
        query: Raw query string, mapping (possibly nested) or pair sequence

    Returns:
        List of (key, value) pairs in input order
    """
    if not query:
        return []

    if isinstance(query, (bytes, bytearray)):
        query = bytes(query).decode("latin-1")
    if isinstance(query, str):
        return parse_qsl(query.lstrip("?"), keep_blank_values=True)

    items = query.items() if isinstance(query, Mapping) else query
    pairs: list[tuple[str, str]] = []
    for key, value in items:
        pairs.extend(_flatten(str(key), value))
    return pairs


def canonical_query(query: Query) -> str:
    """Encoded, key-sorted query string (empty when there is no query)."""
    encoded = [
        (encode_component(key), encode_component(value))
        for key, value in flatten_query(query)
    ]
    encoded.sort(key=lambda pair: pair[0])
    return "&".join(f"{key}={value}" for key, value in encoded)


def canonical_headers(headers: Mapping[str, Any] | None, has_body: bool) -> str:
    """
    Header section of the canonical form.

    Only the fixed whitelist is signed; body headers only when a body
    is present.
    """
    if not headers:
        return ""

    normalised: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered not in SIGNED_HEADERS or lowered in normalised:
            continue
        if lowered in BODY_HEADERS and not has_body:
            continue
        if value is None:
            continue
        normalised[lowered] = str(value).strip()

    return "\n".join(f"{name}:{normalised[name]}" for name in sorted(normalised))


def _body_bytes(body: Body) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    return bytes(body)


def body_digest(body: Body) -> str:
    """Hex SHA-256 of the body; the empty-string digest when absent."""
    data = _body_bytes(body)
    if not data:
        return EMPTY_BODY_DIGEST
    return hashlib.sha256(data).hexdigest()


def canonicalize(
    method: str,
    path: str,
    query: Query = None,
    headers: Mapping[str, Any] | None = None,
    body: Body = None,
) -> str:
    """
    Build the canonical string for a request.

    Args:
        method: HTTP verb
        path: Raw request path, without the query
        query: Query string, mapping or pair sequence
        headers: Request headers (any case)
        body: Raw body

    Returns:
        Newline-joined canonical form
    """
    has_body = bool(_body_bytes(body))
    return "\n".join(
        [
            method.upper(),
            path,
            canonical_query(query),
            canonical_headers(headers, has_body),
            body_digest(body),
        ]
    )
