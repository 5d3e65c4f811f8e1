#!/usr/bin/env python3
"""CLI script to run one sync outside the API.

Usage:
    uv run python scripts/run_sync.py erp
    uv run python scripts/run_sync.py cards --days-back 14
    uv run python scripts/run_sync.py cards --historical --since 2025-10-01

Connects directly to the database using DATABASE_URL from environment or .env file,
wires the same orchestrator the API uses, and prints the run summary as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import date, timedelta

# Ensure project root is on sys.path so we can import src.expense_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(source: str, days_back: int | None, historical: bool, since: date | None) -> int:
    """Run one sync and print its result. Returns the process exit code."""
    from src.expense_sync.api.middleware.logging import configure_structlog
    from src.expense_sync.config import get_settings
    from src.expense_sync.core.database import close_db, get_session, init_db
    from src.expense_sync.expenses.repository import ExpenseRepository, SyncLogRepository
    from src.expense_sync.main import build_card_adapter, build_erp_adapter, build_orchestrator
    from src.expense_sync.sync.sync_log import SyncLogRecorder

    settings = get_settings()
    configure_structlog()
    await init_db()

    try:
        orchestrator = build_orchestrator(
            settings,
            ExpenseRepository(session_factory=get_session),
            SyncLogRecorder(SyncLogRepository(session_factory=get_session)),
        )

        if source == "erp":
            adapter = build_erp_adapter(settings)
            from_date = settings.NETSUITE_BILLS_FROM_DATE
        else:
            adapter = build_card_adapter(settings)
            if historical:
                from_date = since or settings.CARD_HISTORICAL_START
            else:
                from_date = date.today() - timedelta(days=days_back or settings.CARD_SYNC_DAYS_BACK)

        if adapter is None:
            print(f"{source} integration is not configured", file=sys.stderr)
            return 2

        result = await orchestrator.run(adapter, from_date, historical=historical)
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return 0 if result.success else 1
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run an expense sync")
    parser.add_argument("source", choices=["erp", "cards"], help="Upstream system to sync")
    parser.add_argument("--days-back", type=int, default=None, help="Card look-back window in days")
    parser.add_argument("--historical", action="store_true", help="Bulk card import")
    parser.add_argument(
        "--since",
        type=date.fromisoformat,
        default=None,
        help="Historical import start date (YYYY-MM-DD)",
    )
    args = parser.parse_args()

    if args.historical and args.source != "cards":
        parser.error("--historical only applies to cards")

    sys.exit(asyncio.run(run(args.source, args.days_back, args.historical, args.since)))


if __name__ == "__main__":
    main()
