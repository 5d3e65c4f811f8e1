"""Expense and sync-log repositories -- async persistence for the sync engine.

Provides ExpenseRepository and SyncLogRepository with the session_factory
callable pattern: each method opens one session from the factory, does its
work, and commits. Handles serialization between Pydantic schemas and
SQLAlchemy models.

The canonical upsert is a single INSERT .. ON CONFLICT (external_id) DO UPDATE
statement built for the bound dialect (PostgreSQL in production, SQLite in
tests). Its update set never includes approval fields, and it writes
flag_category as COALESCE(stored, incoming) so a stored flag always wins.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from src.expense_sync.expenses.models import ExpenseModel, SyncLogModel
from src.expense_sync.expenses.schemas import (
    ApprovalStatus,
    CanonicalExpenseRecord,
    ExpenseRead,
    SourceSystem,
    SyncErrorDetail,
    SyncLogEntry,
    SyncStatus,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]

# Columns the sync upsert may overwrite on an existing row.
_SYNC_UPDATABLE_COLUMNS: tuple[str, ...] = (
    "source_system",
    "transaction_date",
    "vendor_name",
    "amount",
    "currency",
    "status_raw",
    "department",
    "branch",
    "category",
    "memo",
    "transaction_type",
    "cardholder",
    "provider_sync_status",
    "last_synced_at",
)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_expense(model: ExpenseModel) -> ExpenseRead:
    """Convert ExpenseModel to ExpenseRead schema."""
    return ExpenseRead(
        id=str(model.id),
        external_id=model.external_id,
        source_system=SourceSystem(model.source_system),
        transaction_date=model.transaction_date,
        vendor_name=model.vendor_name,
        amount=model.amount,
        currency=model.currency,
        status_raw=model.status_raw,
        department=model.department,
        branch=model.branch,
        category=model.category,
        memo=model.memo,
        transaction_type=model.transaction_type,
        cardholder=model.cardholder,
        flag_category=model.flag_category,
        approval_status=ApprovalStatus(model.approval_status) if model.approval_status else None,
        approval_modified_by=model.approval_modified_by,
        approval_modified_at=model.approval_modified_at,
        provider_sync_status=model.provider_sync_status,
        last_synced_at=model.last_synced_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_sync_log(model: SyncLogModel) -> SyncLogEntry:
    """Convert SyncLogModel to SyncLogEntry schema."""
    return SyncLogEntry(
        id=str(model.id),
        source_system=SourceSystem(model.source_system),
        started_at=model.started_at,
        completed_at=model.completed_at,
        records_fetched=model.records_fetched,
        records_created=model.records_created,
        records_updated=model.records_updated,
        errors=[SyncErrorDetail.model_validate(e) for e in (model.errors or [])],
        status=SyncStatus(model.status),
    )


def _insert_for(session: AsyncSession) -> Callable[..., Any]:
    """Return the dialect-specific insert() supporting ON CONFLICT."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert is not supported for dialect {dialect!r}")


# ── Expense Repository ──────────────────────────────────────────────────────


class ExpenseRepository:
    """Async persistence for canonical expense rows.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def fetch_flags(self, external_ids: Sequence[str]) -> dict[str, str | None]:
        """Return external_id -> flag_category for every id that exists.

        Callers are responsible for chunking; this issues one IN query.
        """
        if not external_ids:
            return {}
        async for session in self._session_factory():
            stmt = select(ExpenseModel.external_id, ExpenseModel.flag_category).where(
                ExpenseModel.external_id.in_(list(external_ids))
            )
            result = await session.execute(stmt)
            return {row.external_id: row.flag_category for row in result}
        return {}

    async def exists(self, external_id: str) -> bool:
        """Return True if a canonical row with this external_id is stored."""
        async for session in self._session_factory():
            stmt = select(ExpenseModel.id).where(ExpenseModel.external_id == external_id)
            result = await session.execute(stmt)
            return result.first() is not None
        return False

    async def upsert(self, record: CanonicalExpenseRecord) -> None:
        """Insert or update one canonical record keyed on external_id."""
        now = datetime.now(timezone.utc)
        values = record.model_dump()
        values["source_system"] = record.source_system.value
        values["id"] = uuid.uuid4()
        values["created_at"] = now
        values["updated_at"] = now

        async for session in self._session_factory():
            insert = _insert_for(session)
            stmt = insert(ExpenseModel).values(**values)
            table = ExpenseModel.__table__
            update_set: dict[str, Any] = {
                name: stmt.excluded[name] for name in _SYNC_UPDATABLE_COLUMNS
            }
            update_set["flag_category"] = func.coalesce(
                table.c.flag_category, stmt.excluded.flag_category
            )
            update_set["updated_at"] = now
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.external_id],
                set_=update_set,
            )
            await session.execute(stmt)
            await session.commit()

    async def get(self, expense_id: str) -> ExpenseRead | None:
        """Get an expense by its surrogate id."""
        async for session in self._session_factory():
            model = await session.get(ExpenseModel, uuid.UUID(expense_id))
            if model is None:
                return None
            return _model_to_expense(model)
        return None

    async def get_by_external_id(self, external_id: str) -> ExpenseRead | None:
        """Get an expense by its upstream external id."""
        async for session in self._session_factory():
            stmt = select(ExpenseModel).where(ExpenseModel.external_id == external_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_expense(model)
        return None

    async def count(self) -> int:
        """Return the number of stored canonical rows."""
        async for session in self._session_factory():
            result = await session.execute(select(func.count()).select_from(ExpenseModel))
            return int(result.scalar_one())
        return 0

    async def set_flag(self, expense_id: str, flag_category: str | None) -> ExpenseRead | None:
        """Set or clear (None) the human flag on one expense.

        Returns:
            The updated ExpenseRead, or None if no such expense exists.
        """
        async for session in self._session_factory():
            model = await session.get(ExpenseModel, uuid.UUID(expense_id))
            if model is None:
                return None
            model.flag_category = flag_category
            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "expenses.flag_updated",
                expense_id=expense_id,
                flag_category=flag_category,
            )
            return _model_to_expense(model)
        return None

    async def set_approval(
        self,
        expense_id: str,
        approval_status: ApprovalStatus | None,
        modified_by: str | None = None,
    ) -> ExpenseRead | None:
        """Set or clear (None) the approval decision on one expense.

        Records who changed it and when alongside the decision.

        Returns:
            The updated ExpenseRead, or None if no such expense exists.
        """
        async for session in self._session_factory():
            model = await session.get(ExpenseModel, uuid.UUID(expense_id))
            if model is None:
                return None
            now = datetime.now(timezone.utc)
            model.approval_status = approval_status.value if approval_status else None
            model.approval_modified_by = modified_by
            model.approval_modified_at = now
            model.updated_at = now
            await session.commit()
            await session.refresh(model)
            logger.info(
                "expenses.approval_updated",
                expense_id=expense_id,
                approval_status=model.approval_status,
                modified_by=modified_by,
            )
            return _model_to_expense(model)
        return None


# ── Sync Log Repository ─────────────────────────────────────────────────────


class SyncLogRepository:
    """Async persistence for sync run audit rows.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create(self, source: SourceSystem, started_at: datetime) -> SyncLogEntry:
        """Insert a new row in "running" state."""
        async for session in self._session_factory():
            model = SyncLogModel(
                id=uuid.uuid4(),
                source_system=source.value,
                started_at=started_at,
                status=SyncStatus.RUNNING.value,
                errors=[],
                records_fetched=0,
                records_created=0,
                records_updated=0,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_log(model)
        raise RuntimeError("session_factory yielded no session")

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
        """Move a running row to its terminal state."""
        async for session in self._session_factory():
            model = await session.get(SyncLogModel, uuid.UUID(log_id))
            if model is None:
                return None
            model.completed_at = completed_at
            model.status = status.value
            model.records_fetched = fetched
            model.records_created = created
            model.records_updated = updated
            model.errors = [e.model_dump() for e in errors]
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_log(model)
        return None

    async def latest_successful(self, source: SourceSystem | None = None) -> SyncLogEntry | None:
        """Return the most recently completed successful run, optionally per source."""
        async for session in self._session_factory():
            stmt = select(SyncLogModel).where(SyncLogModel.status == SyncStatus.SUCCESS.value)
            if source is not None:
                stmt = stmt.where(SyncLogModel.source_system == source.value)
            stmt = stmt.order_by(SyncLogModel.completed_at.desc()).limit(1)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_sync_log(model)
        return None
