"""REST API endpoints for the human-controlled expense fields.

Provides:
- PATCH /expenses/flag: Set or clear (null/empty) a reviewer flag
- PATCH /expenses/approval: Set or clear (null) an approval decision

These are the only write paths for flag_category outside the sync's
auto-flag-when-absent rule, and the only write path for approval_status.
Malformed input is rejected with 400 before any state changes.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.expense_sync.api.deps import get_expense_repository
from src.expense_sync.expenses.schemas import FLAG_CATEGORIES, ApprovalStatus
from src.expense_sync.sync.errors import ValidationError

router = APIRouter(prefix="/expenses", tags=["expenses"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class FlagUpdateRequest(BaseModel):
    """Request body for setting or clearing a flag."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    expense_id: str | None = None
    flag_category: str | None = None


class ApprovalUpdateRequest(BaseModel):
    """Request body for setting or clearing an approval decision."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    expense_id: str | None = None
    approval_status: str | None = None
    modified_by: str | None = None


# ── Validation ───────────────────────────────────────────────────────────────


def _require_expense_id(expense_id: str | None) -> str:
    if not expense_id or not expense_id.strip():
        raise ValidationError("expenseId is required")
    try:
        uuid.UUID(expense_id)
    except ValueError as exc:
        raise ValidationError("expenseId must be a UUID") from exc
    return expense_id


def _parse_approval(body: ApprovalUpdateRequest) -> ApprovalStatus | None:
    if "approval_status" not in body.model_fields_set:
        raise ValidationError("approvalStatus is required (use null to clear)")
    if body.approval_status is None:
        return None
    try:
        return ApprovalStatus(body.approval_status)
    except ValueError as exc:
        allowed = ", ".join(s.value for s in ApprovalStatus)
        raise ValidationError(f"approvalStatus must be one of: {allowed}, or null") from exc


def _bad_request(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _not_found(expense_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Expense {expense_id} not found",
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/flag-categories")
async def list_flag_categories() -> dict[str, Any]:
    """Flag labels offered to reviewers."""
    return {"success": True, "categories": list(FLAG_CATEGORIES)}


@router.patch("/flag")
async def update_flag(body: FlagUpdateRequest, request: Request) -> dict[str, Any]:
    """Set a flag, or clear it with null or an empty string."""
    try:
        expense_id = _require_expense_id(body.expense_id)
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    flag = body.flag_category.strip() if body.flag_category else None
    repo = get_expense_repository(request)
    expense = await repo.set_flag(expense_id, flag or None)
    if expense is None:
        raise _not_found(expense_id)
    return {"success": True, "expense": expense.model_dump(mode="json")}


@router.patch("/approval")
async def update_approval(body: ApprovalUpdateRequest, request: Request) -> dict[str, Any]:
    """Set approved/rejected, or clear the decision with null."""
    try:
        expense_id = _require_expense_id(body.expense_id)
        approval = _parse_approval(body)
    except ValidationError as exc:
        raise _bad_request(exc) from exc

    repo = get_expense_repository(request)
    expense = await repo.set_approval(expense_id, approval, modified_by=body.modified_by)
    if expense is None:
        raise _not_found(expense_id)
    return {"success": True, "expense": expense.model_dump(mode="json")}
