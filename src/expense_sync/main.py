"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization and sync service wiring, and
the v1 API router.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.expense_sync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.expense_sync.api.v1.router import router as v1_router
from src.expense_sync.config import Settings, get_settings
from src.expense_sync.core.database import close_db, get_session, init_db
from src.expense_sync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.expense_sync.expenses.repository import ExpenseRepository, SyncLogRepository
from src.expense_sync.sources.card import CardTransactionAdapter
from src.expense_sync.sources.netsuite import ERPBillAdapter
from src.expense_sync.sync.field_mapping import FieldNormalizer
from src.expense_sync.sync.flags import FlagPreservationStore
from src.expense_sync.sync.orchestrator import SyncOrchestrator
from src.expense_sync.sync.sync_log import SyncLogRecorder


def build_erp_adapter(settings: Settings) -> ERPBillAdapter | None:
    """NetSuite adapter from settings, or None when credentials are missing."""
    if not settings.netsuite_configured():
        return None
    return ERPBillAdapter(
        account_id=settings.NETSUITE_ACCOUNT_ID,
        consumer_key=settings.NETSUITE_CONSUMER_KEY,
        consumer_secret=settings.NETSUITE_CONSUMER_SECRET,
        token_id=settings.NETSUITE_TOKEN_ID,
        token_secret=settings.NETSUITE_TOKEN_SECRET,
        page_size=settings.NETSUITE_PAGE_SIZE,
    )


def build_card_adapter(settings: Settings) -> CardTransactionAdapter | None:
    """Bill.com adapter from settings, or None when the API token is missing."""
    if not settings.BILL_API_TOKEN:
        return None
    return CardTransactionAdapter(
        api_token=settings.BILL_API_TOKEN,
        base_url=settings.BILL_BASE_URL,
        timeout=settings.BILL_TIMEOUT,
    )


def build_orchestrator(
    settings: Settings,
    expense_repository: ExpenseRepository,
    sync_log_recorder: SyncLogRecorder,
) -> SyncOrchestrator:
    """Wire the SyncOrchestrator from settings and repositories."""
    return SyncOrchestrator(
        store=expense_repository,
        flag_store=FlagPreservationStore(
            expense_repository,
            batch_size=settings.FLAG_PREFETCH_BATCH_SIZE,
        ),
        sync_log=sync_log_recorder,
        normalizer=FieldNormalizer(amount_threshold=settings.AMOUNT_MINOR_UNIT_THRESHOLD),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and sync services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Sync services ───────────────────────────────────────────────────
    expense_repository = ExpenseRepository(session_factory=get_session)
    sync_log_recorder = SyncLogRecorder(SyncLogRepository(session_factory=get_session))
    orchestrator = build_orchestrator(settings, expense_repository, sync_log_recorder)

    app.state.expense_repository = expense_repository
    app.state.sync_log_recorder = sync_log_recorder
    app.state.sync_orchestrator = orchestrator
    app.state.erp_adapter = build_erp_adapter(settings)
    app.state.card_adapter = build_card_adapter(settings)

    if app.state.erp_adapter is None:
        log.warning("startup.netsuite_not_configured")
    if app.state.card_adapter is None:
        log.warning("startup.bill_not_configured")

    # ── Scheduled runs ──────────────────────────────────────────────────
    if settings.SYNC_SCHEDULER_ENABLED:
        try:
            from src.expense_sync.sync.scheduler import (
                setup_sync_scheduler,
                start_scheduler_background,
                task_intervals,
            )

            tasks = setup_sync_scheduler(
                orchestrator,
                settings,
                erp_adapter=app.state.erp_adapter,
                card_adapter=app.state.card_adapter,
            )
            await start_scheduler_background(tasks, task_intervals(settings), app.state)
        except Exception:
            log.warning("startup.scheduler_init_failed", exc_info=True)

    log.info(
        "startup.complete",
        environment=settings.ENVIRONMENT.value,
        scheduler=settings.SYNC_SCHEDULER_ENABLED,
    )

    yield

    # ── Shutdown ────────────────────────────────────────────────────────
    scheduler_tasks = getattr(app.state, "sync_scheduler_tasks", None)
    if scheduler_tasks:
        for task_ref in scheduler_tasks:
            task_ref.cancel()
        await asyncio.gather(*scheduler_tasks, return_exceptions=True)

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Expense Sync API",
        version="0.1.0",
        description="Reconciles NetSuite vendor bills and Bill.com card spend into one expense ledger",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
