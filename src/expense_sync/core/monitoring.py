"""Prometheus metrics, Sentry integration, and sync run tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- track_sync_run(): Context manager recording sync run duration and outcome
- record_sync_outcome(): Counter bump per processed record
- init_sentry(): Initialize Sentry for the FastAPI app
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
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

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_runs_total = Counter(
    "sync_runs_total",
    "Total sync runs by source and final status",
    ["source", "status"],
)

sync_records_total = Counter(
    "sync_records_total",
    "Records processed by sync runs",
    ["source", "outcome"],
)

sync_run_duration_seconds = Histogram(
    "sync_run_duration_seconds",
    "Sync run duration in seconds",
    ["source"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

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


# ── Sync Metrics Helpers ────────────────────────────────────────────────────


@asynccontextmanager
async def track_sync_run(source: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one sync run.

    Usage:
        async with track_sync_run("CARD") as tracker:
            ...
            tracker["status"] = "partial"

    Records the run duration, and the run count labelled with the status the
    caller stored in the tracker ("error" if the body raised).
    """
    tracker: dict[str, Any] = {"status": "success"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        sync_run_duration_seconds.labels(source=source).observe(
            time.perf_counter() - start_time
        )
        sync_runs_total.labels(source=source, status=tracker["status"]).inc()


def record_sync_outcome(source: str, outcome: str) -> None:
    """Count one processed record ("created", "updated" or "error")."""
    sync_records_total.labels(source=source, outcome=outcome).inc()


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

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
