"""Prometheus metrics, Sentry integration, and background batch tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- record_batch(): Counters/histogram for IntervalBatchRunner ticks
- record_reconciliation(): Counter for reconciliation runs by final status
- init_sentry(): Initialize Sentry with the Starlette and FastAPI integrations
- get_metrics_response(): Prometheus exposition for the /metrics route
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Background Batch Metrics ─────────────────────────────────────────────────

batch_runs_total = Counter(
    "batch_runs_total",
    "Interval batch runner ticks by outcome",
    ["runner", "outcome"],
)

batch_items_processed_total = Counter(
    "batch_items_processed_total",
    "Work items processed by interval batch runners",
    ["runner"],
)

batch_duration_seconds = Histogram(
    "batch_duration_seconds",
    "Interval batch runner tick duration in seconds",
    ["runner"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)


def record_batch(runner: str, outcome: str, processed: int = 0, duration: float | None = None) -> None:
    """Record one runner tick. ``outcome`` is ok, error or skipped."""
    batch_runs_total.labels(runner=runner, outcome=outcome).inc()
    if processed:
        batch_items_processed_total.labels(runner=runner).inc(processed)
    if duration is not None:
        batch_duration_seconds.labels(runner=runner).observe(duration)


reconciliation_runs_total = Counter(
    "reconciliation_runs_total",
    "Payment reconciliation runs by final status",
    ["status"],
)


def record_reconciliation(status: str) -> None:
    reconciliation_runs_total.labels(status=status).inc()


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", endpoint)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
