"""Pydantic schemas for expense records, sync runs, and raw upstream records.

Defines all structured types shared by the sync engine and the API:
- Enums: SourceSystem, ApprovalStatus, SyncStatus
- Raw upstream payloads: RawRecord
- Canonical records: CanonicalExpenseRecord (sync input), ExpenseRead (stored row)
- Sync runs: SyncErrorDetail, SyncLogEntry, SyncStats, SyncResult
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class SourceSystem(str, Enum):
    """Upstream system a canonical record was replayed from."""

    ERP = "ERP"
    CARD = "CARD"


class ApprovalStatus(str, Enum):
    """Human-controlled approval decision on an expense."""

    APPROVED = "approved"
    REJECTED = "rejected"


class SyncStatus(str, Enum):
    """Lifecycle state of one sync run."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# Flag labels offered to reviewers. The flag endpoint stores any non-empty
# label; sync only ever writes NEEDS_REVIEW_FLAG.
FLAG_CATEGORIES: tuple[str, ...] = (
    "Needs Review",
    "Wrong Department",
    "Duplicate",
    "Personal",
)
NEEDS_REVIEW_FLAG = "Needs Review"


# ── Raw Upstream Records ────────────────────────────────────────────────────


class RawRecord(BaseModel):
    """One record as returned by a SourceAdapter, before normalization.

    ``source_id`` is the upstream id (no namespace prefix). ``related_ref``
    points at the record whose display name the adapter can resolve (vendor
    entity for bills, spender for card transactions). ``sync_state`` is the
    provider's own downstream sync classification, when the record came from
    a partitioned query.
    """

    source_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    related_ref: str | None = None
    sync_state: str | None = None


# ── Canonical Records ───────────────────────────────────────────────────────


class CanonicalExpenseRecord(BaseModel):
    """Source-agnostic transaction produced by the FieldNormalizer.

    approval_status is deliberately absent: sync never writes it.
    """

    external_id: str
    source_system: SourceSystem
    transaction_date: date | None = None
    vendor_name: str
    amount: Decimal = Decimal("0")
    currency: str = "USD"
    status_raw: str | None = None
    department: str | None = None
    branch: str | None = None
    category: str | None = None
    memo: str | None = None
    transaction_type: str
    cardholder: str | None = None
    flag_category: str | None = None
    provider_sync_status: str | None = None
    last_synced_at: datetime | None = None


class ExpenseRead(CanonicalExpenseRecord):
    """Persisted expense row including human-controlled fields."""

    id: str
    approval_status: ApprovalStatus | None = None
    approval_modified_by: str | None = None
    approval_modified_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Sync Runs ───────────────────────────────────────────────────────────────


class SyncErrorDetail(BaseModel):
    """One entry in a run's ordered error list."""

    identifier: str
    message: str


class SyncLogEntry(BaseModel):
    """Audit row for one sync run."""

    id: str
    source_system: SourceSystem
    started_at: datetime
    completed_at: datetime | None = None
    records_fetched: int = 0
    records_created: int = 0
    records_updated: int = 0
    errors: list[SyncErrorDetail] = Field(default_factory=list)
    status: SyncStatus = SyncStatus.RUNNING


class SyncStats(BaseModel):
    """Aggregate counts for one run."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    flags_preserved: int = 0
    errors: int = 0


class SyncResult(BaseModel):
    """Outcome of SyncOrchestrator.run, surfaced directly by the trigger API."""

    success: bool
    status: SyncStatus
    message: str
    stats: SyncStats = Field(default_factory=SyncStats)
    errors: list[SyncErrorDetail] = Field(default_factory=list)
    sync_log_id: str | None = None
    sync_status_breakdown: dict[str, int] | None = None
    date_range: str | None = None
    days_imported: int | None = None
