"""Sync orchestration -- one end-to-end run per source.

SyncOrchestrator.run() drives a run:
1. Refuse to start if the same source is already running (per-source lock)
2. Open a "running" sync log entry
3. Fetch raw records (every sync-state partition + dedup for partitioned
   sources). A FetchError ends the run as "failed" with that single error
4. Batch-load stored flags for every external id in the run
5. Process records sequentially; each yields a RecordOutcome carrying either
   its create/update classification or its RecordProcessingError
6. Reduce the outcomes into a RunSummary and finish the log entry

A record's subsidiary lookups (details, line items, names) never fail the
record; the normalizer falls back to placeholders instead.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Protocol

import structlog

from src.expense_sync.core.monitoring import record_sync_outcome, track_sync_run
from src.expense_sync.expenses.schemas import (
    CanonicalExpenseRecord,
    RawRecord,
    SourceSystem,
    SyncErrorDetail,
    SyncResult,
    SyncStats,
    SyncStatus,
)
from src.expense_sync.sources.adapter import PartitionedSourceAdapter, SourceAdapter
from src.expense_sync.sync.dedup import Deduplicator, sync_state_breakdown
from src.expense_sync.sync.errors import (
    FetchError,
    RecordProcessingError,
    SubsidiaryLookupError,
    SyncAlreadyRunningError,
)
from src.expense_sync.sync.field_mapping import FieldNormalizer, external_id_for
from src.expense_sync.sync.flags import FlagPreservationStore, FlagSnapshot
from src.expense_sync.sync.sync_log import SyncLogRecorder

logger = structlog.get_logger(__name__)


class ExpenseStore(Protocol):
    """Canonical store operations the orchestrator needs."""

    async def exists(self, external_id: str) -> bool: ...

    async def upsert(self, record: CanonicalExpenseRecord) -> None: ...


# ── Per-record Results ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class RecordOutcome:
    """Result of processing one record: a classification or an error."""

    external_id: str
    created: bool = False
    flag_preserved: bool = False
    error: RecordProcessingError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunSummary:
    """Outcomes reduced into run totals."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    flags_preserved: int = 0
    errors: list[SyncErrorDetail] = field(default_factory=list)

    @property
    def status(self) -> SyncStatus:
        return classify_status(self.fetched, len(self.errors))

    def stats(self) -> SyncStats:
        return SyncStats(
            fetched=self.fetched,
            created=self.created,
            updated=self.updated,
            flags_preserved=self.flags_preserved,
            errors=len(self.errors),
        )


def classify_status(fetched: int, error_count: int) -> SyncStatus:
    """failed if every fetched record errored, partial if some did, else success."""
    if error_count == 0:
        return SyncStatus.SUCCESS
    if error_count >= fetched:
        return SyncStatus.FAILED
    return SyncStatus.PARTIAL


def summarize(fetched: int, outcomes: Iterable[RecordOutcome]) -> RunSummary:
    """Reduce per-record outcomes into a RunSummary."""
    summary = RunSummary(fetched=fetched)
    for outcome in outcomes:
        if outcome.error is not None:
            summary.errors.append(
                SyncErrorDetail(identifier=outcome.external_id, message=outcome.error.message)
            )
            continue
        if outcome.created:
            summary.created += 1
        else:
            summary.updated += 1
        if outcome.flag_preserved:
            summary.flags_preserved += 1
    return summary


# ── Orchestrator ────────────────────────────────────────────────────────────


class SyncOrchestrator:
    """Drives fetch -> dedupe -> normalize -> preserve flags -> upsert for one source.

    Args:
        store: Canonical expense store (exists + upsert).
        flag_store: Batched reader of stored flags.
        sync_log: Run audit recorder.
        normalizer: Raw record -> canonical record mapper.
        deduplicator: Merger for partitioned listings.
    """

    def __init__(
        self,
        store: ExpenseStore,
        flag_store: FlagPreservationStore,
        sync_log: SyncLogRecorder,
        normalizer: FieldNormalizer | None = None,
        deduplicator: Deduplicator | None = None,
    ) -> None:
        self._store = store
        self._flags = flag_store
        self._sync_log = sync_log
        self._normalizer = normalizer or FieldNormalizer()
        self._dedup = deduplicator or Deduplicator()
        self._locks: dict[SourceSystem, asyncio.Lock] = {}

    def is_running(self, source: SourceSystem) -> bool:
        lock = self._locks.get(source)
        return lock is not None and lock.locked()

    async def run(
        self,
        source: SourceAdapter,
        from_date: date,
        historical: bool = False,
    ) -> SyncResult:
        """Run one sync for ``source`` covering records on or after ``from_date``.

        Raises:
            SyncAlreadyRunningError: A run for the same source is in progress.
        """
        system = source.source_system
        lock = self._locks.setdefault(system, asyncio.Lock())
        if lock.locked():
            raise SyncAlreadyRunningError(system.value)

        async with lock:
            async with track_sync_run(system.value) as tracker:
                result = await self._run_locked(source, from_date, historical)
                tracker["status"] = result.status.value
                return result

    async def _run_locked(
        self,
        source: SourceAdapter,
        from_date: date,
        historical: bool,
    ) -> SyncResult:
        system = source.source_system
        entry = await self._sync_log.start(system)
        logger.info(
            "sync.run_started",
            source=system.value,
            from_date=from_date.isoformat(),
            historical=historical,
            sync_log_id=entry.id,
        )

        try:
            try:
                records = await self._fetch(source, from_date, historical)
            except FetchError as exc:
                error = SyncErrorDetail(identifier=system.value, message=str(exc))
                await self._sync_log.finish(entry.id, status=SyncStatus.FAILED, errors=[error])
                logger.error("sync.fetch_failed", source=system.value, error=str(exc))
                return SyncResult(
                    success=False,
                    status=SyncStatus.FAILED,
                    message=f"Failed to fetch {system.value} records: {exc}",
                    errors=[error],
                    sync_log_id=entry.id,
                )

            external_ids = [external_id_for(system, r.source_id) for r in records]
            snapshot = await self._flags.load(external_ids)

            outcomes = [await self._process(source, raw, snapshot) for raw in records]
            summary = summarize(len(records), outcomes)
        except Exception as exc:
            await self._sync_log.finish(
                entry.id,
                status=SyncStatus.FAILED,
                errors=[SyncErrorDetail(identifier=system.value, message=str(exc))],
            )
            logger.exception("sync.run_crashed", source=system.value, sync_log_id=entry.id)
            raise

        await self._sync_log.finish(
            entry.id,
            status=summary.status,
            fetched=summary.fetched,
            created=summary.created,
            updated=summary.updated,
            errors=summary.errors,
        )

        logger.info(
            "sync.run_complete",
            source=system.value,
            status=summary.status.value,
            fetched=summary.fetched,
            created=summary.created,
            updated=summary.updated,
            flags_preserved=summary.flags_preserved,
            errors=len(summary.errors),
        )

        result = SyncResult(
            success=True,
            status=summary.status,
            message=(
                f"{system.value} sync completed: {summary.created} created, "
                f"{summary.updated} updated, {summary.flags_preserved} flags preserved"
            ),
            stats=summary.stats(),
            errors=summary.errors,
            sync_log_id=entry.id,
        )
        if isinstance(source, PartitionedSourceAdapter):
            result.sync_status_breakdown = sync_state_breakdown(records)
        if historical:
            today = date.today()
            result.date_range = f"{from_date.isoformat()} - {today.isoformat()}"
            result.days_imported = (today - from_date).days
        return result

    # ── Fetch ───────────────────────────────────────────────────────────────

    async def _fetch(
        self,
        source: SourceAdapter,
        from_date: date,
        historical: bool,
    ) -> list[RawRecord]:
        await source.start_run()
        if not isinstance(source, PartitionedSourceAdapter) or not source.sync_state_partitions:
            return await source.fetch_records(from_date)

        days_back = max((date.today() - from_date).days, 0)
        partitions: list[tuple[str, list[RawRecord]]] = []
        for state in source.sync_state_partitions:
            records = await source.fetch_records_by_provider_sync_state(
                days_back, state, historical=historical
            )
            logger.info(
                "sync.partition_fetched",
                source=source.source_system.value,
                sync_state=state,
                count=len(records),
            )
            partitions.append((state, records))
        return self._dedup.merge(partitions)

    # ── Per-record Processing ───────────────────────────────────────────────

    async def _lookup(self, coro: Any, lookup: str, ref: str) -> Any:
        """Await a subsidiary lookup, treating a lookup failure as missing data."""
        try:
            return await coro
        except SubsidiaryLookupError:
            logger.warning("sync.lookup_unavailable", lookup=lookup, ref=ref, exc_info=True)
            return None

    async def _process(
        self,
        source: SourceAdapter,
        raw: RawRecord,
        snapshot: FlagSnapshot,
    ) -> RecordOutcome:
        system = source.source_system
        external_id = external_id_for(system, raw.source_id)
        try:
            details = await self._lookup(source.fetch_details(raw.source_id), "details", raw.source_id)
            line_items = await self._lookup(
                source.fetch_line_items(raw.source_id), "line_items", raw.source_id
            )
            related_name = None
            if raw.related_ref:
                related_name = await self._lookup(
                    source.fetch_related_name(raw.related_ref), "related_name", raw.related_ref
                )

            record = self._normalizer.normalize(system, raw, details, line_items, related_name)
            flag, preserved = snapshot.resolve(external_id, record.category)
            record.flag_category = flag

            existed = await self._store.exists(external_id)
            await self._store.upsert(record)
        except Exception as exc:
            error = RecordProcessingError(external_id, str(exc) or exc.__class__.__name__)
            logger.error(
                "sync.record_error",
                source=system.value,
                external_id=external_id,
                error=error.message,
            )
            record_sync_outcome(system.value, "error")
            return RecordOutcome(external_id=external_id, error=error)

        record_sync_outcome(system.value, "updated" if existed else "created")
        return RecordOutcome(external_id=external_id, created=not existed, flag_preserved=preserved)
