"""Scheduled sync runs.

Defines async task functions for the ERP bill sync and the incremental card
sync. Tasks are decoupled from the loop that schedules them so tests can
run them directly; start_scheduler_background() runs each one in its own
asyncio loop at its configured interval.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, timedelta

import structlog

from src.expense_sync.config import Settings
from src.expense_sync.expenses.schemas import SyncResult
from src.expense_sync.sources.adapter import SourceAdapter
from src.expense_sync.sync.errors import SyncAlreadyRunningError
from src.expense_sync.sync.orchestrator import SyncOrchestrator

logger = structlog.get_logger(__name__)

SyncTask = Callable[[], Awaitable[SyncResult | None]]


def setup_sync_scheduler(
    orchestrator: SyncOrchestrator,
    settings: Settings,
    erp_adapter: SourceAdapter | None = None,
    card_adapter: SourceAdapter | None = None,
) -> dict[str, SyncTask]:
    """Build the scheduled sync tasks for every configured adapter.

    Each task:
    - Skips quietly when a run for the same source is already in progress
    - Logs and swallows unexpected errors so the loop keeps running
    - Returns the SyncResult, or None when it did not run

    Args:
        orchestrator: Shared SyncOrchestrator (its per-source lock is shared
            with the HTTP triggers).
        settings: Application settings (date windows).
        erp_adapter: NetSuite adapter, or None if not configured.
        card_adapter: Bill.com adapter, or None if not configured.

    Returns:
        Dict mapping task name to async callable.
    """
    tasks: dict[str, SyncTask] = {}

    async def _run(name: str, adapter: SourceAdapter, from_date: date) -> SyncResult | None:
        try:
            result = await orchestrator.run(adapter, from_date)
        except SyncAlreadyRunningError:
            logger.info("scheduler.sync_skipped_running", task=name)
            return None
        except Exception:
            logger.warning("scheduler.sync_failed", task=name, exc_info=True)
            return None
        logger.info(
            "scheduler.sync_completed",
            task=name,
            status=result.status.value,
            fetched=result.stats.fetched,
            errors=result.stats.errors,
        )
        return result

    if erp_adapter is not None:

        async def erp_sync_task() -> SyncResult | None:
            """Sync NetSuite vendor bills from the configured start date."""
            return await _run("erp_sync", erp_adapter, settings.NETSUITE_BILLS_FROM_DATE)

        tasks["erp_sync"] = erp_sync_task

    if card_adapter is not None:

        async def card_sync_task() -> SyncResult | None:
            """Sync card transactions over the scheduled look-back window."""
            from_date = date.today() - timedelta(days=settings.CARD_SCHEDULED_DAYS_BACK)
            return await _run("card_sync", card_adapter, from_date)

        tasks["card_sync"] = card_sync_task

    return tasks


def task_intervals(settings: Settings) -> dict[str, int]:
    """Interval configuration (seconds) per task name."""
    return {
        "erp_sync": settings.ERP_SYNC_INTERVAL_SECONDS,
        "card_sync": settings.CARD_SYNC_INTERVAL_SECONDS,
    }


async def start_scheduler_background(
    tasks: dict[str, SyncTask],
    intervals: dict[str, int],
    app_state,
) -> None:
    """Start scheduler tasks as background asyncio loops.

    Args:
        tasks: Dict mapping task name to async callable (from setup_sync_scheduler).
        intervals: Dict mapping task name to interval seconds.
        app_state: FastAPI app.state object for storing task references.
    """
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():
        interval = intervals.get(task_name, 86400)

        async def _loop(fn=task_fn, name=task_name, sleep=interval):
            """Background loop that runs the task at the configured interval."""
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        bg_task = asyncio.create_task(_loop(), name=f"sync_scheduler_{task_name}")
        background_tasks.append(bg_task)

    app_state.sync_scheduler_tasks = background_tasks

    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
    )
