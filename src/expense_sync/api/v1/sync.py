"""REST API endpoints that trigger sync runs and report sync history.

Provides:
- POST /sync/erp: NetSuite vendor-bill sync
- POST /sync/cards: Incremental card-transaction sync
- POST /sync/cards/historical: Bulk card import from a start date
- GET /sync/last-sync: Completion time of the latest successful run

Trigger endpoints return 200 with counts and an errors array for partial
and failed runs. Only an exception escaping the orchestrator yields 500;
a second trigger while the same source is running yields 409.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any

import structlog
from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.expense_sync.api.deps import (
    get_card_adapter,
    get_erp_adapter,
    get_sync_log_recorder,
    get_sync_orchestrator,
)
from src.expense_sync.config import get_settings
from src.expense_sync.expenses.schemas import SourceSystem, SyncResult
from src.expense_sync.sources.adapter import SourceAdapter
from src.expense_sync.sync.errors import SyncAlreadyRunningError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncStatsResponse(_CamelModel):
    """Run counts."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    flags_preserved: int = 0
    errors: int = 0


class SyncErrorResponse(_CamelModel):
    """One record-level error."""

    identifier: str
    message: str


class SyncRunResponse(_CamelModel):
    """Response for every sync trigger."""

    success: bool
    status: str
    message: str
    stats: SyncStatsResponse = Field(default_factory=SyncStatsResponse)
    errors: list[SyncErrorResponse] | None = None
    sync_log_id: str | None = None
    sync_status_breakdown: dict[str, int] | None = None
    date_range: str | None = None
    days_imported: int | None = None


class LastSyncResponse(_CamelModel):
    """Completion time of the latest successful run."""

    success: bool = True
    last_sync_time: datetime | None = None
    source: str | None = None


def _to_response(result: SyncResult) -> dict[str, Any]:
    response = SyncRunResponse(
        success=result.success,
        status=result.status.value,
        message=result.message,
        stats=SyncStatsResponse(**result.stats.model_dump()),
        errors=[SyncErrorResponse(**e.model_dump()) for e in result.errors] or None,
        sync_log_id=result.sync_log_id,
        sync_status_breakdown=result.sync_status_breakdown,
        date_range=result.date_range,
        days_imported=result.days_imported,
    )
    return response.model_dump(mode="json", by_alias=True, exclude_none=True)


async def _trigger(
    request: Request,
    adapter: SourceAdapter,
    from_date: date,
    historical: bool = False,
) -> JSONResponse:
    orchestrator = get_sync_orchestrator(request)
    request.state.sync_source = adapter.source_system.value
    try:
        result = await orchestrator.run(adapter, from_date, historical=historical)
    except SyncAlreadyRunningError as exc:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"success": False, "error": str(exc)},
        )
    except Exception as exc:
        logger.error(
            "sync.trigger_failed",
            source=adapter.source_system.value,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": str(exc) or exc.__class__.__name__},
        )
    request.state.sync_log_id = result.sync_log_id
    request.state.sync_status = result.status.value
    return JSONResponse(status_code=status.HTTP_200_OK, content=_to_response(result))


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/erp", response_model=SyncRunResponse)
async def sync_erp_bills(request: Request) -> JSONResponse:
    """Sync NetSuite vendor bills dated on or after NETSUITE_BILLS_FROM_DATE."""
    adapter = get_erp_adapter(request)
    settings = get_settings()
    return await _trigger(request, adapter, settings.NETSUITE_BILLS_FROM_DATE)


@router.post("/cards", response_model=SyncRunResponse)
async def sync_card_transactions(
    request: Request,
    days_back: int | None = Query(default=None, ge=1, le=366, alias="daysBack"),
) -> JSONResponse:
    """Sync card transactions from the last CARD_SYNC_DAYS_BACK days."""
    adapter = get_card_adapter(request)
    settings = get_settings()
    window = days_back or settings.CARD_SYNC_DAYS_BACK
    return await _trigger(request, adapter, date.today() - timedelta(days=window))


@router.post("/cards/historical", response_model=SyncRunResponse)
async def sync_card_transactions_historical(
    request: Request,
    since: date | None = Query(default=None),
) -> JSONResponse:
    """Import every card transaction since ``since`` (default CARD_HISTORICAL_START)."""
    adapter = get_card_adapter(request)
    settings = get_settings()
    return await _trigger(
        request,
        adapter,
        since or settings.CARD_HISTORICAL_START,
        historical=True,
    )


@router.get("/last-sync", response_model=LastSyncResponse, response_model_by_alias=True)
async def last_sync(
    request: Request,
    source: SourceSystem | None = Query(default=None),
) -> LastSyncResponse:
    """Completion time of the latest successful sync, optionally for one source."""
    recorder = get_sync_log_recorder(request)
    entry = await recorder.last_successful(source)
    return LastSyncResponse(
        success=True,
        last_sync_time=entry.completed_at if entry else None,
        source=entry.source_system.value if entry else None,
    )
