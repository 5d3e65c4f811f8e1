"""Shared test doubles and fixtures for the expense sync tests.

Provides:
- InMemoryExpenseRepository: ExpenseRepository double with the same
  stored-flag-wins upsert semantics, plus a fail_on hook for record errors
- InMemorySyncLogRepository: SyncLogRepository double
- FakeSourceAdapter / FakePartitionedAdapter: Scripted upstream sources
- Fixtures wiring an orchestrator on top of the doubles
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import date, datetime, timezone
from typing import Any

import pytest

from src.expense_sync.expenses.schemas import (
    ApprovalStatus,
    CanonicalExpenseRecord,
    ExpenseRead,
    RawRecord,
    SourceSystem,
    SyncErrorDetail,
    SyncLogEntry,
    SyncStatus,
)
from src.expense_sync.sources.adapter import PartitionedSourceAdapter, SourceAdapter
from src.expense_sync.sync.errors import FetchError, SubsidiaryLookupError
from src.expense_sync.sync.flags import FlagPreservationStore
from src.expense_sync.sync.orchestrator import SyncOrchestrator
from src.expense_sync.sync.sync_log import SyncLogRecorder


# ── In-Memory Repositories ───────────────────────────────────────────────────


class InMemoryExpenseRepository:
    """In-memory ExpenseRepository for testing without database."""

    def __init__(self) -> None:
        self._rows: dict[str, ExpenseRead] = {}
        self.fail_on: set[str] = set()
        self.flag_queries: list[list[str]] = []
        self.upserts: list[CanonicalExpenseRecord] = []

    def seed(self, external_id: str, **fields: Any) -> ExpenseRead:
        """Store a row directly, as if a previous run had written it."""
        now = datetime.now(timezone.utc)
        data: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "external_id": external_id,
            "source_system": SourceSystem.ERP,
            "vendor_name": "Seeded Vendor",
            "transaction_type": "Vendor Bill",
            "created_at": now,
            "updated_at": now,
        }
        data.update(fields)
        row = ExpenseRead(**data)
        self._rows[row.id] = row
        return row

    def by_external_id(self, external_id: str) -> ExpenseRead | None:
        return next((r for r in self._rows.values() if r.external_id == external_id), None)

    async def fetch_flags(self, external_ids: Sequence[str]) -> dict[str, str | None]:
        self.flag_queries.append(list(external_ids))
        wanted = set(external_ids)
        return {r.external_id: r.flag_category for r in self._rows.values() if r.external_id in wanted}

    async def exists(self, external_id: str) -> bool:
        return self.by_external_id(external_id) is not None

    async def upsert(self, record: CanonicalExpenseRecord) -> None:
        if record.external_id in self.fail_on:
            raise RuntimeError(f"write rejected for {record.external_id}")
        self.upserts.append(record)
        now = datetime.now(timezone.utc)
        existing = self.by_external_id(record.external_id)
        if existing is None:
            row = ExpenseRead(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                **record.model_dump(),
            )
            self._rows[row.id] = row
            return
        update = record.model_dump(exclude={"external_id"})
        update["flag_category"] = existing.flag_category or record.flag_category
        update["updated_at"] = now
        self._rows[existing.id] = existing.model_copy(update=update)

    async def get(self, expense_id: str) -> ExpenseRead | None:
        return self._rows.get(expense_id)

    async def get_by_external_id(self, external_id: str) -> ExpenseRead | None:
        return self.by_external_id(external_id)

    async def count(self) -> int:
        return len(self._rows)

    async def set_flag(self, expense_id: str, flag_category: str | None) -> ExpenseRead | None:
        row = self._rows.get(expense_id)
        if row is None:
            return None
        row = row.model_copy(
            update={"flag_category": flag_category, "updated_at": datetime.now(timezone.utc)}
        )
        self._rows[expense_id] = row
        return row

    async def set_approval(
        self,
        expense_id: str,
        approval_status: ApprovalStatus | None,
        modified_by: str | None = None,
    ) -> ExpenseRead | None:
        row = self._rows.get(expense_id)
        if row is None:
            return None
        now = datetime.now(timezone.utc)
        row = row.model_copy(
            update={
                "approval_status": approval_status,
                "approval_modified_by": modified_by,
                "approval_modified_at": now,
                "updated_at": now,
            }
        )
        self._rows[expense_id] = row
        return row


class InMemorySyncLogRepository:
    """In-memory SyncLogRepository for testing without database."""

    def __init__(self) -> None:
        self.entries: dict[str, SyncLogEntry] = {}

    async def create(self, source: SourceSystem, started_at: datetime) -> SyncLogEntry:
        entry = SyncLogEntry(id=str(uuid.uuid4()), source_system=source, started_at=started_at)
        self.entries[entry.id] = entry
        return entry

    async def finish(
        self,
        log_id: str,
        *,
        completed_at: datetime,
        status: SyncStatus,
        fetched: int,
        created: int,
        updated: int,
        errors: list[SyncErrorDetail],
    ) -> SyncLogEntry | None:
        entry = self.entries.get(log_id)
        if entry is None:
            return None
        entry = entry.model_copy(
            update={
                "completed_at": completed_at,
                "status": status,
                "records_fetched": fetched,
                "records_created": created,
                "records_updated": updated,
                "errors": list(errors),
            }
        )
        self.entries[log_id] = entry
        return entry

    async def latest_successful(self, source: SourceSystem | None = None) -> SyncLogEntry | None:
        candidates = [
            e
            for e in self.entries.values()
            if e.status == SyncStatus.SUCCESS
            and e.completed_at is not None
            and (source is None or e.source_system == source)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.completed_at)


# ── Fake Sources ─────────────────────────────────────────────────────────────


def make_bill(bill_id: str, vendor: str = "V1", trandate: str = "2026-02-03") -> RawRecord:
    """Raw vendor bill as the SuiteQL listing returns it."""
    return RawRecord(
        source_id=bill_id,
        payload={"id": bill_id, "tranid": f"BILL-{bill_id}", "trandate": trandate, "entity": vendor},
        related_ref=vendor,
    )


def make_card_txn(txn_id: str, amount: Any = 4500, user_id: str = "U1", **extra: Any) -> RawRecord:
    """Raw card transaction as the spend listing returns it."""
    payload = {
        "id": txn_id,
        "amount": amount,
        "merchantName": "Home Depot",
        "occurredTime": "2026-03-10T15:04:05Z",
        "transactionType": "CLEAR",
        "complete": True,
        "userId": user_id,
    }
    payload.update(extra)
    return RawRecord(source_id=txn_id, payload=payload, related_ref=user_id)


class FakeSourceAdapter(SourceAdapter):
    """Scripted ERP source: fixed records, details, lines and names."""

    source_system = SourceSystem.ERP

    def __init__(
        self,
        records: list[RawRecord] | None = None,
        details: dict[str, dict] | None = None,
        lines: dict[str, list[dict]] | None = None,
        names: dict[str, str] | None = None,
    ) -> None:
        self.records = records or []
        self.details = details or {}
        self.lines = lines or {}
        self.names = names or {}
        self.fetch_error: Exception | None = None
        self.lookup_error = False
        self.fetch_calls: list[date] = []
        self.start_runs = 0

    async def start_run(self) -> None:
        self.start_runs += 1

    async def fetch_records(self, from_date: date) -> list[RawRecord]:
        self.fetch_calls.append(from_date)
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.records)

    async def fetch_details(self, record_id: str) -> dict[str, Any] | None:
        if self.lookup_error:
            raise SubsidiaryLookupError("details", record_id, "upstream 500")
        return self.details.get(record_id)

    async def fetch_line_items(self, record_id: str) -> list[dict[str, Any]] | None:
        if self.lookup_error:
            raise SubsidiaryLookupError("line_items", record_id, "upstream 500")
        return self.lines.get(record_id)

    async def fetch_related_name(self, ref_id: str) -> str | None:
        if self.lookup_error:
            raise SubsidiaryLookupError("related_name", ref_id, "upstream 500")
        return self.names.get(ref_id)


class FakePartitionedAdapter(PartitionedSourceAdapter):
    """Scripted card source: records per provider sync-state partition."""

    source_system = SourceSystem.CARD
    sync_state_partitions = ("SYNCED", "MANUAL_SYNCED", "NOT_SYNCED", "ERROR")

    def __init__(
        self,
        partitions: dict[str, list[RawRecord]] | None = None,
        details: dict[str, dict] | None = None,
        names: dict[str, str] | None = None,
    ) -> None:
        self.partitions = partitions or {}
        self.details = details or {}
        self.names = names or {}
        self.failing_state: str | None = None
        self.calls: list[tuple[int, str, bool]] = []
        self.start_runs = 0

    async def start_run(self) -> None:
        self.start_runs += 1

    async def fetch_records_by_provider_sync_state(
        self,
        days_back: int,
        state: str,
        historical: bool = False,
    ) -> list[RawRecord]:
        self.calls.append((days_back, state, historical))
        if state == self.failing_state:
            raise FetchError("CARD", f"{state}: 401 Unauthorized")
        return list(self.partitions.get(state, []))

    async def fetch_records(self, from_date: date) -> list[RawRecord]:
        merged: list[RawRecord] = []
        for records in self.partitions.values():
            merged.extend(records)
        return merged

    async def fetch_details(self, record_id: str) -> dict[str, Any] | None:
        return self.details.get(record_id)

    async def fetch_line_items(self, record_id: str) -> list[dict[str, Any]] | None:
        return []

    async def fetch_related_name(self, ref_id: str) -> str | None:
        return self.names.get(ref_id)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def expense_repo() -> InMemoryExpenseRepository:
    return InMemoryExpenseRepository()


@pytest.fixture
def sync_log_repo() -> InMemorySyncLogRepository:
    return InMemorySyncLogRepository()


@pytest.fixture
def recorder(sync_log_repo: InMemorySyncLogRepository) -> SyncLogRecorder:
    return SyncLogRecorder(sync_log_repo)


@pytest.fixture
def orchestrator(
    expense_repo: InMemoryExpenseRepository,
    recorder: SyncLogRecorder,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store=expense_repo,
        flag_store=FlagPreservationStore(expense_repo),
        sync_log=recorder,
    )
