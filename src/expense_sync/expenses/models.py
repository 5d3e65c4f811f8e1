"""Expense persistence models.

Two SQLAlchemy models on the shared declarative Base:
- ExpenseModel: One canonical row per upstream transaction, unique by external_id
- SyncLogModel: One audit row per sync run, never deleted by the engine

Column types are the dialect-neutral SQLAlchemy 2.0 generics (Uuid, JSON,
Numeric) so the same models run on PostgreSQL and on SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.expense_sync.core.database import Base


class ExpenseModel(Base):
    """Canonical expense row.

    external_id is the upsert key: the bare NetSuite id for vendor bills,
    "CARD-" + transaction id for card spend. flag_category and
    approval_status are human-controlled; sync writes flag_category only
    when no value is stored and never touches approval_status.
    """

    __tablename__ = "expenses"
    __table_args__ = (
        CheckConstraint(
            "approval_status IS NULL OR approval_status IN ('approved', 'rejected')",
            name="ck_expenses_approval_status",
        ),
        Index("ix_expenses_source_date", "source_system", "transaction_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    source_system: Mapped[str] = mapped_column(String(10), nullable=False)
    transaction_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    vendor_name: Mapped[str] = mapped_column(String(300), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    status_raw: Mapped[str | None] = mapped_column(String(100), nullable=True)
    department: Mapped[str | None] = mapped_column(String(200), nullable=True)
    branch: Mapped[str | None] = mapped_column(String(200), nullable=True)
    category: Mapped[str | None] = mapped_column(String(300), nullable=True)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    cardholder: Mapped[str | None] = mapped_column(String(200), nullable=True)
    flag_category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    approval_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    approval_modified_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    approval_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_sync_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=True,
    )


class SyncLogModel(Base):
    """Audit row for one sync run.

    Created in "running" state when a run starts and updated exactly once
    when it reaches a terminal status.
    """

    __tablename__ = "sync_logs"
    __table_args__ = (
        Index("ix_sync_logs_status_completed", "status", "completed_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_system: Mapped[str] = mapped_column(String(10), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    records_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
