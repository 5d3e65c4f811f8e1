"""Tests for ExpenseRepository and SyncLogRepository against SQLite (aiosqlite).

Exercises the real ON CONFLICT upsert: stored flags win over incoming ones,
approval fields are never touched by sync, and repeated upserts never
duplicate rows.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from src.expense_sync.core.database import Base
from src.expense_sync.expenses import models  # noqa: F401
from src.expense_sync.expenses.repository import ExpenseRepository, SyncLogRepository
from src.expense_sync.expenses.schemas import (
    ApprovalStatus,
    CanonicalExpenseRecord,
    SourceSystem,
    SyncErrorDetail,
    SyncStatus,
)


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def factory():
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def expense_repository(session_factory) -> ExpenseRepository:
    return ExpenseRepository(session_factory=session_factory)


@pytest_asyncio.fixture
async def sync_log_repository(session_factory) -> SyncLogRepository:
    return SyncLogRepository(session_factory=session_factory)


def _record(external_id: str = "100", **overrides) -> CanonicalExpenseRecord:
    data = {
        "external_id": external_id,
        "source_system": SourceSystem.ERP,
        "transaction_date": date(2026, 2, 3),
        "vendor_name": "Acme",
        "amount": Decimal("250.50"),
        "transaction_type": "Vendor Bill",
        "category": "Supplies",
    }
    data.update(overrides)
    return CanonicalExpenseRecord(**data)


# ── ExpenseRepository ────────────────────────────────────────────────────────


class TestExpenseUpsert:
    """INSERT .. ON CONFLICT (external_id) DO UPDATE."""

    @pytest.mark.asyncio
    async def test_insert_then_update_keeps_one_row(self, expense_repository) -> None:
        await expense_repository.upsert(_record())
        await expense_repository.upsert(_record(vendor_name="Acme Supply Co"))

        assert await expense_repository.count() == 1
        stored = await expense_repository.get_by_external_id("100")
        assert stored.vendor_name == "Acme Supply Co"
        assert stored.amount == Decimal("250.50")

    @pytest.mark.asyncio
    async def test_exists(self, expense_repository) -> None:
        assert await expense_repository.exists("100") is False
        await expense_repository.upsert(_record())
        assert await expense_repository.exists("100") is True

    @pytest.mark.asyncio
    async def test_stored_flag_wins(self, expense_repository) -> None:
        await expense_repository.upsert(_record())
        stored = await expense_repository.get_by_external_id("100")
        await expense_repository.set_flag(stored.id, "Personal")

        await expense_repository.upsert(_record(flag_category="Needs Review"))

        assert (await expense_repository.get_by_external_id("100")).flag_category == "Personal"

    @pytest.mark.asyncio
    async def test_incoming_flag_written_when_none_stored(self, expense_repository) -> None:
        await expense_repository.upsert(_record(flag_category="Needs Review"))
        assert (await expense_repository.get_by_external_id("100")).flag_category == "Needs Review"

    @pytest.mark.asyncio
    async def test_approval_untouched_by_sync(self, expense_repository) -> None:
        await expense_repository.upsert(_record())
        stored = await expense_repository.get_by_external_id("100")
        await expense_repository.set_approval(stored.id, ApprovalStatus.APPROVED, modified_by="ops")

        await expense_repository.upsert(_record(amount=Decimal("300.00")))

        after = await expense_repository.get_by_external_id("100")
        assert after.approval_status == ApprovalStatus.APPROVED
        assert after.approval_modified_by == "ops"
        assert after.amount == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_fetch_flags_only_returns_existing(self, expense_repository) -> None:
        await expense_repository.upsert(_record("1", flag_category="Duplicate"))
        await expense_repository.upsert(_record("2"))

        flags = await expense_repository.fetch_flags(["1", "2", "3"])

        assert flags == {"1": "Duplicate", "2": None}
        assert await expense_repository.fetch_flags([]) == {}


class TestHumanFields:
    """set_flag / set_approval."""

    @pytest.mark.asyncio
    async def test_clear_flag(self, expense_repository) -> None:
        await expense_repository.upsert(_record(flag_category="Needs Review"))
        stored = await expense_repository.get_by_external_id("100")

        updated = await expense_repository.set_flag(stored.id, None)

        assert updated.flag_category is None

    @pytest.mark.asyncio
    async def test_clear_approval(self, expense_repository) -> None:
        await expense_repository.upsert(_record())
        stored = await expense_repository.get_by_external_id("100")
        await expense_repository.set_approval(stored.id, ApprovalStatus.REJECTED)

        updated = await expense_repository.set_approval(stored.id, None, modified_by="ops")

        assert updated.approval_status is None
        assert updated.approval_modified_by == "ops"

    @pytest.mark.asyncio
    async def test_unknown_id(self, expense_repository) -> None:
        missing = "00000000-0000-0000-0000-000000000000"
        assert await expense_repository.get(missing) is None
        assert await expense_repository.set_flag(missing, "Personal") is None
        assert await expense_repository.set_approval(missing, ApprovalStatus.APPROVED) is None


# ── SyncLogRepository ────────────────────────────────────────────────────────


class TestSyncLogRepository:
    """Run rows and latest successful lookup."""

    @pytest.mark.asyncio
    async def test_create_and_finish(self, sync_log_repository) -> None:
        started = datetime.now(timezone.utc)
        entry = await sync_log_repository.create(SourceSystem.CARD, started)
        assert entry.status == SyncStatus.RUNNING

        finished = await sync_log_repository.finish(
            entry.id,
            completed_at=started + timedelta(seconds=5),
            status=SyncStatus.PARTIAL,
            fetched=10,
            created=4,
            updated=3,
            errors=[SyncErrorDetail(identifier="CARD-x", message="boom")],
        )

        assert finished.status == SyncStatus.PARTIAL
        assert finished.records_fetched == 10
        assert finished.errors == [SyncErrorDetail(identifier="CARD-x", message="boom")]

    @pytest.mark.asyncio
    async def test_latest_successful(self, sync_log_repository) -> None:
        base = datetime(2026, 3, 1, tzinfo=timezone.utc)
        for offset, source, status in [
            (1, SourceSystem.ERP, SyncStatus.SUCCESS),
            (2, SourceSystem.CARD, SyncStatus.SUCCESS),
            (3, SourceSystem.ERP, SyncStatus.FAILED),
        ]:
            entry = await sync_log_repository.create(source, base)
            await sync_log_repository.finish(
                entry.id,
                completed_at=base + timedelta(hours=offset),
                status=status,
                fetched=0,
                created=0,
                updated=0,
                errors=[],
            )

        latest = await sync_log_repository.latest_successful()
        assert latest.source_system == SourceSystem.CARD

        latest_erp = await sync_log_repository.latest_successful(SourceSystem.ERP)
        assert latest_erp.completed_at.replace(tzinfo=None) == (base + timedelta(hours=1)).replace(tzinfo=None)
