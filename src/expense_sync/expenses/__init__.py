"""Expense persistence module -- canonical expense and sync-log storage.

Provides SQLAlchemy models (ExpenseModel, SyncLogModel), Pydantic schemas
(canonical records, sync results, raw upstream records), and the async
ExpenseRepository / SyncLogRepository used by the sync engine and the API.
"""
