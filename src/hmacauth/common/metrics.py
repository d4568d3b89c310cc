"""Prometheus metrics for request authentication."""

import os

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    multiprocess,
)
from starlette.requests import Request
from starlette.responses import Response

# === Counters ===

AUTHENTICATIONS_TOTAL = Counter(
    "hmacauth_authentications_total",
    "Total signed-request verifications",
    ["outcome", "code"],  # outcome: authenticated, rejected, errored
)

# === Histograms ===

SECRET_LOOKUP_LATENCY = Histogram(
    "hmacauth_secret_lookup_latency_seconds",
    "Latency of the secret-for-key delegate",
    ["result"],  # result: found, unrecognized, error, timeout
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


# === Helper Functions ===


def record_authentication(outcome: str, code: str = "OK") -> None:
    """Record the outcome of a verification."""
    AUTHENTICATIONS_TOTAL.labels(outcome=outcome, code=code).inc()


def record_secret_lookup(result: str, latency: float) -> None:
    """Record a secret lookup with its latency."""
    SECRET_LOOKUP_LATENCY.labels(result=result).observe(latency)


# === HTTP Endpoint ===


async def metrics_endpoint(_request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    multiproc_dir = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
    if multiproc_dir:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)  # type: ignore[no-untyped-call]
        return Response(
            generate_latest(registry),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return Response(
        generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
