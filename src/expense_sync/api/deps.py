"""FastAPI dependencies for sync and expense services.

Services are created once in the lifespan and stored on app.state. Each
accessor returns 503 when its service is not configured (for example the
NetSuite adapter without credentials), so the rest of the API keeps working.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status


def _get_state_service(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not available",
        )
    return service


def get_sync_orchestrator(request: Request) -> Any:
    """Retrieve the SyncOrchestrator from app.state, 503 if not available."""
    return _get_state_service(request, "sync_orchestrator", "Sync orchestrator")


def get_sync_log_recorder(request: Request) -> Any:
    """Retrieve the SyncLogRecorder from app.state, 503 if not available."""
    return _get_state_service(request, "sync_log_recorder", "Sync log")


def get_expense_repository(request: Request) -> Any:
    """Retrieve the ExpenseRepository from app.state, 503 if not available."""
    return _get_state_service(request, "expense_repository", "Expense repository")


def get_erp_adapter(request: Request) -> Any:
    """Retrieve the NetSuite adapter from app.state, 503 if not configured."""
    return _get_state_service(request, "erp_adapter", "NetSuite integration")


def get_card_adapter(request: Request) -> Any:
    """Retrieve the Bill.com adapter from app.state, 503 if not configured."""
    return _get_state_service(request, "card_adapter", "Bill.com integration")
