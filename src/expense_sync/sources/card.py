"""Bill.com Spend & Expense (Divvy) card transaction adapter.

Provides CardTransactionAdapter:
- fetch_records_by_provider_sync_state(): One syncStatus partition of the
  transaction listing, paged by nextPage with a pause between pages
- fetch_records(): Unpartitioned listing (not guaranteed exhaustive upstream)
- get_user_name_mapping(): userId -> "First Last" for every spender
- get_custom_field_uuid_by_label(): Resolve a custom field's uuid by name
- extract_custom_field_value(): Read one custom field off a transaction

Only posted ("CLEAR") transactions are returned. Custom attributes arrive as
an association list, so fetch_details() resolves the category, branch,
department and memo fields for a listed transaction into a flat dict.

Listed transactions, the user mapping and custom field uuids are cached for
one run only; start_run() drops them.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.expense_sync.expenses.schemas import RawRecord, SourceSystem
from src.expense_sync.sources.adapter import PartitionedSourceAdapter
from src.expense_sync.sources.netsuite import is_transient_http_error
from src.expense_sync.sync.dedup import SYNC_STATE_PARTITIONS
from src.expense_sync.sync.errors import FetchError, SubsidiaryLookupError

logger = structlog.get_logger(__name__)

_bill_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(is_transient_http_error),
    reraise=True,
)

POSTED_TRANSACTION_TYPE = "CLEAR"

# Canonical field -> custom field label configured in the spend platform.
CUSTOM_FIELD_LABELS: dict[str, str] = {
    "category": "Purchase Category",
    "branch": "Branch",
    "department": "Department",
}


@dataclass(frozen=True)
class PageLimits:
    """Pagination settings for one listing mode."""

    page_size: int
    max_pages: int
    delay_seconds: float


INCREMENTAL_LIMITS = PageLimits(page_size=25, max_pages=20, delay_seconds=0.5)
HISTORICAL_LIMITS = PageLimits(page_size=50, max_pages=100, delay_seconds=0.3)


class CardTransactionAdapter(PartitionedSourceAdapter):
    """Bill.com card spend as a partitioned SourceAdapter.

    Args:
        api_token: Bill.com Spend & Expense API token.
        base_url: API base URL (".../connect/v3").
        timeout: Per-request timeout in seconds.
        include_incomplete: Include transactions still missing receipts or
            coding. When False, filters on complete:eq:true.
    """

    source_system = SourceSystem.CARD
    sync_state_partitions = SYNC_STATE_PARTITIONS

    def __init__(
        self,
        api_token: str,
        base_url: str,
        timeout: float = 30.0,
        include_incomplete: bool = True,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._include_incomplete = include_incomplete
        self._headers = {
            "apiToken": api_token,
            "Accept": "application/json",
        }
        # Per-run state, reset by start_run().
        self._transactions: dict[str, dict[str, Any]] = {}
        self._user_names: dict[str, str] | None = None
        self._field_uuids: dict[str, str] | None = None

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    @_bill_retry
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict:
        async with self._client() as client:
            response = await client.get(f"{self._base_url}{path}", params=params)
            response.raise_for_status()
            return response.json()

    # ── Listing ─────────────────────────────────────────────────────────────

    async def _list_transactions(self, filters: str, limits: PageLimits) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"max": limits.page_size, "filters": filters}
        results: list[dict[str, Any]] = []

        for page in range(1, limits.max_pages + 1):
            data = await self._get("/spend/transactions", params)
            page_results = data.get("results") or []
            if not page_results:
                break
            results.extend(page_results)
            next_page = data.get("nextPage")
            if not next_page:
                break
            if page == limits.max_pages:
                logger.warning(
                    "bill.page_limit_reached",
                    max_pages=limits.max_pages,
                    fetched=len(results),
                    filters=filters,
                )
                break
            params["nextPage"] = next_page
            await asyncio.sleep(limits.delay_seconds)

        posted = [t for t in results if t.get("transactionType") == POSTED_TRANSACTION_TYPE]
        for transaction in posted:
            self._transactions[str(transaction["id"])] = transaction
        logger.info(
            "bill.transactions_fetched",
            filters=filters,
            fetched=len(results),
            posted=len(posted),
        )
        return posted

    def _filters(self, start: date, state: str | None = None) -> str:
        filters = f"occurredTime:gte:{start.isoformat()}"
        if state:
            filters = f"{filters},syncStatus:eq:{state}"
        if not self._include_incomplete:
            filters = f"complete:eq:true,{filters}"
        return filters

    @staticmethod
    def _to_raw(transaction: dict[str, Any]) -> RawRecord:
        user_id = transaction.get("userId")
        return RawRecord(
            source_id=str(transaction["id"]),
            payload=transaction,
            related_ref=str(user_id) if user_id else None,
        )

    async def start_run(self) -> None:
        self._transactions.clear()
        self._reset_lookups()

    def _reset_lookups(self) -> None:
        # Users and custom fields are re-read after every listing.
        self._user_names = None
        self._field_uuids = None

    async def fetch_records_by_provider_sync_state(
        self,
        days_back: int,
        state: str,
        historical: bool = False,
    ) -> list[RawRecord]:
        """List posted transactions from the last ``days_back`` days with one syncStatus."""
        start = date.today() - timedelta(days=days_back)
        limits = HISTORICAL_LIMITS if historical else INCREMENTAL_LIMITS
        self._reset_lookups()
        try:
            transactions = await self._list_transactions(self._filters(start, state), limits)
            return [self._to_raw(t) for t in transactions]
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("bill.fetch_failed", sync_state=state, error=str(exc))
            raise FetchError(self.source_system.value, f"{state}: {exc}") from exc

    async def fetch_records(self, from_date: date) -> list[RawRecord]:
        """List posted transactions since from_date without sync-state partitioning."""
        await self.start_run()
        try:
            transactions = await self._list_transactions(self._filters(from_date), INCREMENTAL_LIMITS)
            return [self._to_raw(t) for t in transactions]
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            logger.error("bill.fetch_failed", error=str(exc))
            raise FetchError(self.source_system.value, str(exc)) from exc

    # ── Users and Custom Fields ─────────────────────────────────────────────

    async def get_user_name_mapping(self) -> dict[str, str]:
        """Return userId -> display name for every spender, paging 100 at a time."""
        mapping: dict[str, str] = {}
        params: dict[str, Any] = {"max": 100}
        while True:
            data = await self._get("/spend/users", params)
            users = data.get("results") or []
            if not users:
                break
            for user in users:
                full_name = " ".join(
                    part for part in (user.get("firstName"), user.get("lastName")) if part
                )
                mapping[str(user["id"])] = full_name or "Unknown User"
            next_page = data.get("nextPage")
            if not next_page:
                break
            params["nextPage"] = next_page
        logger.info("bill.users_loaded", count=len(mapping))
        return mapping

    async def get_custom_field_uuid_by_label(self, label: str) -> str | None:
        """Return the uuid of the first non-retired custom field named ``label``.

        The custom field list is read once per run. A failed read is
        remembered as "no fields" until the next run.
        """
        if self._field_uuids is None:
            self._field_uuids = await self._load_field_uuids()
        uuid = self._field_uuids.get(label)
        if uuid is None:
            logger.debug("bill.custom_field_missing", label=label)
        return uuid

    async def _load_field_uuids(self) -> dict[str, str]:
        try:
            data = await self._get("/spend/custom-fields", {"max": 100})
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("bill.custom_fields_failed", error=str(exc))
            return {}

        uuids: dict[str, str] = {}
        for custom_field in data.get("results") or []:
            name = custom_field.get("name")
            if name and custom_field.get("uuid") and not custom_field.get("retired"):
                uuids.setdefault(name, custom_field["uuid"])
        return uuids

    @staticmethod
    def extract_custom_field_value(record: dict[str, Any], uuid: str) -> str | None:
        """Read a custom field's value: its note, else its selected values joined by ", "."""
        for custom_field in record.get("customFields") or []:
            if uuid not in (custom_field.get("customFieldUuid"), custom_field.get("uuid")):
                continue
            if custom_field.get("note"):
                return custom_field["note"]
            values = [v.get("value") for v in custom_field.get("selectedValues") or [] if v.get("value")]
            return ", ".join(values) if values else None
        return None

    @staticmethod
    def first_note(record: dict[str, Any]) -> str | None:
        """Return the first non-blank custom field note (the spender's description)."""
        for custom_field in record.get("customFields") or []:
            note = custom_field.get("note")
            if note and note.strip():
                return note
        return None

    # ── SourceAdapter ───────────────────────────────────────────────────────

    async def fetch_details(self, record_id: str) -> dict[str, Any] | None:
        """Resolve custom attributes of a listed transaction into canonical keys."""
        transaction = self._transactions.get(record_id)
        if transaction is None:
            logger.warning("bill.detail_unknown_transaction", transaction_id=record_id)
            return None

        details: dict[str, Any] = {"memo": self.first_note(transaction)}
        for key, label in CUSTOM_FIELD_LABELS.items():
            uuid = await self.get_custom_field_uuid_by_label(label)
            details[key] = self.extract_custom_field_value(transaction, uuid) if uuid else None
        return details

    async def fetch_line_items(self, record_id: str) -> list[dict[str, Any]] | None:
        # Card transactions have no line items.
        return []

    async def fetch_related_name(self, ref_id: str) -> str | None:
        """Resolve a spender id through the user mapping loaded for this run."""
        if self._user_names is None:
            try:
                self._user_names = await self._load_user_names()
            except SubsidiaryLookupError:
                # Not cached: the next lookup tries the users endpoint again.
                logger.warning("bill.user_mapping_failed", exc_info=True)
                return None
        return self._user_names.get(ref_id)

    async def _load_user_names(self) -> dict[str, str]:
        try:
            return await self.get_user_name_mapping()
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise SubsidiaryLookupError("user_mapping", "*", str(exc)) from exc
