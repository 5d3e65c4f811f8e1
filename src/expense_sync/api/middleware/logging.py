"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- request_id (UUID generated per request, added to response as X-Request-ID
  and bound into structlog contextvars so sync.* events carry it)
- sync_source, sync_log_id, sync_status when a sync route ran a sync

Uses structlog for structured JSON logging in production and
human-readable console output in development.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.expense_sync.config import Environment, get_settings

logger = structlog.get_logger(__name__)

SYNC_STATE_FIELDS = ("sync_source", "sync_log_id", "sync_status")


def configure_structlog() -> None:
    """Configure structlog processors based on environment."""
    settings = get_settings()

    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def sync_context(request: Request) -> dict[str, str]:
    """Sync run fields a sync route left on request.state."""
    context: dict[str, str] = {}
    for name in SYNC_STATE_FIELDS:
        value = getattr(request.state, name, None)
        if value is not None:
            context[name] = value
    return context


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that logs every request with timing.

    Generates a unique X-Request-ID for each request and includes it in
    both the log entry and the response headers.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.monotonic()
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.monotonic() - start_time) * 1000, 2)
            logger.error(
                "request_error",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
                request_id=request_id,
                **sync_context(request),
            )
            raise

        duration_ms = round((time.monotonic() - start_time) * 1000, 2)

        response.headers["X-Request-ID"] = request_id

        log_method = logger.info if response.status_code < 400 else logger.warning
        if response.status_code >= 500:
            log_method = logger.error

        log_method(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
            **sync_context(request),
        )

        return response
