"""Sync run audit log.

SyncLogRecorder brackets each run: a "running" row on start, one update to a
terminal status on finish. Rows are never deleted; the most recent
successful row answers "when did we last sync".
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.expense_sync.expenses.repository import SyncLogRepository
from src.expense_sync.expenses.schemas import (
    SourceSystem,
    SyncErrorDetail,
    SyncLogEntry,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


class SyncLogRecorder:
    """Persistence wrapper for SyncLogEntry rows."""

    def __init__(self, repository: SyncLogRepository) -> None:
        self._repository = repository

    async def start(self, source: SourceSystem) -> SyncLogEntry:
        entry = await self._repository.create(source, datetime.now(timezone.utc))
        logger.info("sync_log.started", sync_log_id=entry.id, source=source.value)
        return entry

    async def finish(
        self,
        entry_id: str,
        *,
        status: SyncStatus,
        fetched: int = 0,
        created: int = 0,
        updated: int = 0,
        errors: list[SyncErrorDetail] | None = None,
    ) -> SyncLogEntry | None:
        entry = await self._repository.finish(
            entry_id,
            completed_at=datetime.now(timezone.utc),
            status=status,
            fetched=fetched,
            created=created,
            updated=updated,
            errors=errors or [],
        )
        logger.info(
            "sync_log.finished",
            sync_log_id=entry_id,
            status=status.value,
            fetched=fetched,
            created=created,
            updated=updated,
            errors=len(errors or []),
        )
        return entry

    async def last_successful(self, source: SourceSystem | None = None) -> SyncLogEntry | None:
        return await self._repository.latest_successful(source)
