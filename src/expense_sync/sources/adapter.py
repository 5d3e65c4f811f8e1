"""Source adapter abstract base classes -- the interface every upstream backend implements.

The SyncOrchestrator only talks to upstream systems through these ABCs, so
tests substitute in-memory fakes and production wires the NetSuite and
Bill.com adapters with injected credentials.

Contract for subsidiary lookups (details, line items, display names): a
failure means "data unavailable". Implementations log it and return None;
they never raise for a single record's lookup.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Any

from src.expense_sync.expenses.schemas import RawRecord, SourceSystem


class SourceAdapter(ABC):
    """Abstract interface for one upstream transaction source.

    Methods:
        fetch_records: List raw records dated on or after from_date. Raises
            FetchError when the record set cannot be retrieved.
        fetch_details: Detail object for one record, or None.
        fetch_line_items: Line items for one record, or None.
        fetch_related_name: Display name for a referenced entity, or None.
        start_run: Drop per-run caches before a run lists records.
    """

    source_system: SourceSystem

    async def start_run(self) -> None:
        """Reset state cached for the previous run. No-op by default."""
        return None

    @abstractmethod
    async def fetch_records(self, from_date: date) -> list[RawRecord]:
        """List raw records on or after from_date."""
        ...

    @abstractmethod
    async def fetch_details(self, record_id: str) -> dict[str, Any] | None:
        """Fetch the detail object for a record."""
        ...

    @abstractmethod
    async def fetch_line_items(self, record_id: str) -> list[dict[str, Any]] | None:
        """Fetch line items for a record."""
        ...

    @abstractmethod
    async def fetch_related_name(self, ref_id: str) -> str | None:
        """Resolve a vendor/merchant/spender reference to a display name."""
        ...


class PartitionedSourceAdapter(SourceAdapter):
    """Source whose listing is only exhaustive when split by provider sync state.

    The orchestrator queries every partition in ``sync_state_partitions``
    and merges the results with the Deduplicator.
    """

    sync_state_partitions: tuple[str, ...] = ()

    @abstractmethod
    async def fetch_records_by_provider_sync_state(
        self,
        days_back: int,
        state: str,
        historical: bool = False,
    ) -> list[RawRecord]:
        """List raw records from the last ``days_back`` days in one sync-state partition."""
        ...
