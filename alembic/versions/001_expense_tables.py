"""Initial schema: expenses and sync_logs tables.

Revision ID: 001_expense_tables
Revises:
Create Date: 2026-01-05

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_expense_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Canonical expense rows, one per upstream transaction
    op.create_table(
        "expenses",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(100), nullable=False),
        sa.Column("source_system", sa.String(10), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=True),
        sa.Column("vendor_name", sa.String(300), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(10), nullable=False, server_default="USD"),
        sa.Column("status_raw", sa.String(100), nullable=True),
        sa.Column("department", sa.String(200), nullable=True),
        sa.Column("branch", sa.String(200), nullable=True),
        sa.Column("category", sa.String(300), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("transaction_type", sa.String(50), nullable=False),
        sa.Column("cardholder", sa.String(200), nullable=True),
        sa.Column("flag_category", sa.String(100), nullable=True),
        sa.Column("approval_status", sa.String(20), nullable=True),
        sa.Column("approval_modified_by", sa.String(200), nullable=True),
        sa.Column("approval_modified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_sync_status", sa.String(50), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.UniqueConstraint("external_id", name="uq_expenses_external_id"),
        sa.CheckConstraint(
            "approval_status IS NULL OR approval_status IN ('approved', 'rejected')",
            name="ck_expenses_approval_status",
        ),
    )
    op.create_index(
        "ix_expenses_source_date",
        "expenses",
        ["source_system", "transaction_date"],
    )

    # Sync run audit log
    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("source_system", sa.String(10), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
    )
    op.create_index(
        "ix_sync_logs_status_completed",
        "sync_logs",
        ["status", "completed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_sync_logs_status_completed", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_expenses_source_date", table_name="expenses")
    op.drop_table("expenses")
