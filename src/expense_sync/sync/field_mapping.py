"""Field extraction tables and the FieldNormalizer for both upstream shapes.

Defines:
- ERP_FIELD_SOURCES / CARD_FIELD_SOURCES: For each canonical field, the
  ordered candidate paths tried against the raw record, its detail object,
  and its first line item. The first non-empty value wins.
- first_present(): Walks one candidate list.
- normalize_amount(): Minor-unit heuristic for implausibly large amounts.
- external_id_for(): Namespaced canonical key for an upstream id.
- FieldNormalizer: Builds a CanonicalExpenseRecord from one raw record.

Path roots are "raw" (the listed record), "details" (the detail object or
resolved custom fields), "line" (first line item only) and "derived"
(values computed before lookup, such as a usable budget label).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from src.expense_sync.expenses.schemas import (
    CanonicalExpenseRecord,
    RawRecord,
    SourceSystem,
)
from src.expense_sync.sync.branches import BranchNormalizer

CARD_ID_PREFIX = "CARD-"

DEFAULT_AMOUNT_THRESHOLD = Decimal("10000")

ERP_TRANSACTION_TYPE = "Vendor Bill"
CARD_TRANSACTION_TYPE = "Credit Card"


# ── Extraction Tables ──────────────────────────────────────────────────────

ERP_FIELD_SOURCES: dict[str, tuple[str, ...]] = {
    "transaction_date": ("raw.trandate", "details.tranDate"),
    "amount": ("details.total", "details.userTotal"),
    "status_raw": ("details.status.refName", "details.status.id"),
    "currency": ("details.currency.refName",),
    "department": ("line.department.refName",),
    "branch": ("line.location.refName",),
    "category": ("line.category.refName", "line.account.refName"),
    "memo": ("line.memo", "details.memo"),
}

CARD_FIELD_SOURCES: dict[str, tuple[str, ...]] = {
    "transaction_date": ("raw.occurredTime",),
    "amount": ("raw.amount",),
    "vendor_name": ("raw.merchantName",),
    "department": ("details.department",),
    "branch": ("details.branch", "derived.budget_branch"),
    "category": ("details.category",),
    "memo": ("line.memo", "details.memo", "raw.id"),
}

FIELD_DEFAULTS: dict[str, Any] = {
    "amount": 0,
    "currency": "USD",
}


# ── Helpers ─────────────────────────────────────────────────────────────────


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _text(value: Any) -> str | None:
    return None if _is_empty(value) else str(value)


def _dig(obj: Any, keys: Sequence[str]) -> Any:
    for key in keys:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def first_present(sources: Mapping[str, Any], paths: Sequence[str], default: Any = None) -> Any:
    """Return the first non-empty value among dotted ``paths``.

    Args:
        sources: Root objects keyed by path prefix ("raw", "details", ...).
        paths: Candidate paths in priority order, e.g. "details.status.refName".
        default: Returned when every candidate is missing or blank.
    """
    for path in paths:
        root, _, rest = path.partition(".")
        value = _dig(sources.get(root), rest.split(".")) if rest else sources.get(root)
        if not _is_empty(value):
            return value
    return default


def normalize_amount(value: Any, threshold: Decimal = DEFAULT_AMOUNT_THRESHOLD) -> Decimal:
    """Convert a raw amount to major units.

    Values strictly above ``threshold`` are assumed to be minor units and are
    divided by 100. A genuine major-unit amount above the threshold is
    misread; the behaviour matches what the card platform has always sent.
    """
    amount = Decimal(str(value))
    if amount > threshold:
        amount = amount / 100
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def external_id_for(source: SourceSystem, source_id: str) -> str:
    """Namespace an upstream id so ERP and card ids never collide."""
    if source == SourceSystem.CARD:
        return f"{CARD_ID_PREFIX}{source_id}"
    return str(source_id)


def parse_transaction_date(value: Any) -> date | None:
    """Parse ISO timestamps/dates and NetSuite's M/D/YYYY display format."""
    if _is_empty(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text.split("T")[0])
    except ValueError:
        pass
    return datetime.strptime(text, "%m/%d/%Y").date()


def usable_budget_label(budget_id: Any) -> str | None:
    """Return a budget id only when it reads like a branch name, not an opaque key."""
    if not isinstance(budget_id, str) or not budget_id:
        return None
    if "=" in budget_id or "-" in budget_id or len(budget_id) >= 50:
        return None
    return budget_id


# ── Normalizer ──────────────────────────────────────────────────────────────


class FieldNormalizer:
    """Maps a raw upstream record plus optional subsidiary objects to canonical fields.

    Args:
        branch_normalizer: Canonicalizes branch labels. Defaults to the
            built-in alias table.
        amount_threshold: Minor-unit heuristic threshold for card amounts.
    """

    def __init__(
        self,
        branch_normalizer: BranchNormalizer | None = None,
        amount_threshold: Decimal | float | int = DEFAULT_AMOUNT_THRESHOLD,
    ) -> None:
        self._branches = branch_normalizer or BranchNormalizer()
        self._threshold = Decimal(str(amount_threshold))

    def normalize(
        self,
        source: SourceSystem,
        raw: RawRecord,
        details: Mapping[str, Any] | None,
        line_items: Sequence[Mapping[str, Any]] | None,
        related_name: str | None,
    ) -> CanonicalExpenseRecord:
        """Build the canonical record for one raw record.

        ``details``, ``line_items`` and ``related_name`` may each be None when
        the corresponding lookup was unavailable; fallbacks apply.
        """
        if source == SourceSystem.ERP:
            return self._normalize_erp(raw, details, line_items, related_name)
        return self._normalize_card(raw, details, line_items, related_name)

    def _sources(
        self,
        raw: RawRecord,
        details: Mapping[str, Any] | None,
        line_items: Sequence[Mapping[str, Any]] | None,
        derived: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "raw": raw.payload,
            "details": details or {},
            "line": line_items[0] if line_items else {},
            "derived": derived or {},
        }

    def _normalize_erp(
        self,
        raw: RawRecord,
        details: Mapping[str, Any] | None,
        line_items: Sequence[Mapping[str, Any]] | None,
        related_name: str | None,
    ) -> CanonicalExpenseRecord:
        sources = self._sources(raw, details, line_items)

        def field(name: str) -> Any:
            return first_present(sources, ERP_FIELD_SOURCES[name], FIELD_DEFAULTS.get(name))

        status_raw = field("status_raw")
        return CanonicalExpenseRecord(
            external_id=external_id_for(SourceSystem.ERP, raw.source_id),
            source_system=SourceSystem.ERP,
            transaction_date=parse_transaction_date(field("transaction_date")),
            vendor_name=related_name or f"Vendor ID: {raw.related_ref}",
            amount=Decimal(str(field("amount"))),
            currency=str(field("currency")),
            status_raw=str(status_raw) if status_raw is not None else None,
            department=_text(field("department")),
            branch=self._branches.normalize(_text(field("branch"))),
            category=_text(field("category")),
            memo=_text(field("memo")),
            transaction_type=ERP_TRANSACTION_TYPE,
            cardholder=None,
            provider_sync_status=raw.sync_state,
            last_synced_at=datetime.now(timezone.utc),
        )

    def _normalize_card(
        self,
        raw: RawRecord,
        details: Mapping[str, Any] | None,
        line_items: Sequence[Mapping[str, Any]] | None,
        related_name: str | None,
    ) -> CanonicalExpenseRecord:
        derived = {"budget_branch": usable_budget_label(raw.payload.get("budgetId"))}
        sources = self._sources(raw, details, line_items, derived)

        def field(name: str) -> Any:
            return first_present(sources, CARD_FIELD_SOURCES[name], FIELD_DEFAULTS.get(name))

        return CanonicalExpenseRecord(
            external_id=external_id_for(SourceSystem.CARD, raw.source_id),
            source_system=SourceSystem.CARD,
            transaction_date=parse_transaction_date(field("transaction_date")),
            vendor_name=field("vendor_name") or "Unknown Merchant",
            amount=normalize_amount(field("amount"), self._threshold),
            currency="USD",
            status_raw="Complete" if raw.payload.get("complete") else "Incomplete",
            department=_text(field("department")),
            branch=self._branches.normalize(_text(field("branch"))),
            category=_text(field("category")),
            memo=_text(field("memo")),
            transaction_type=CARD_TRANSACTION_TYPE,
            cardholder=related_name or "Unknown User",
            provider_sync_status=raw.sync_state,
            last_synced_at=datetime.now(timezone.utc),
        )
