"""Flag preservation for re-synced records.

A reviewer's flag on a canonical record must survive every automated sync.
FlagPreservationStore reads the stored flags for a whole run up front, in
fixed-size chunks, and hands back a FlagSnapshot that decides the flag each
outgoing record carries:

- id present in the snapshot: the stored value is copied, even when null
- id absent: the auto-flag heuristic may assign a flag
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from src.expense_sync.expenses.schemas import NEEDS_REVIEW_FLAG

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000

AUTO_FLAG_KEYWORD = "reimburse"


class FlagSource(Protocol):
    """Anything that can read stored flags for a list of external ids."""

    async def fetch_flags(self, external_ids: Sequence[str]) -> dict[str, str | None]: ...


def auto_flag_for(category: str | None) -> str | None:
    """Flag a first-seen record whose category mentions reimbursement."""
    if category and AUTO_FLAG_KEYWORD in category.lower():
        return NEEDS_REVIEW_FLAG
    return None


@dataclass
class FlagSnapshot:
    """Stored flags for one run, keyed by external id."""

    flags: dict[str, str | None] = field(default_factory=dict)

    def __contains__(self, external_id: str) -> bool:
        return external_id in self.flags

    def __len__(self) -> int:
        return len(self.flags)

    def resolve(self, external_id: str, category: str | None) -> tuple[str | None, bool]:
        """Return (flag to write, whether a stored flag was preserved)."""
        if external_id in self.flags:
            stored = self.flags[external_id]
            return stored, bool(stored)
        return auto_flag_for(category), False


class FlagPreservationStore:
    """Batched reader of stored flags.

    Args:
        source: Repository exposing fetch_flags().
        batch_size: Ids per query; keeps IN lists inside backend limits.
    """

    def __init__(self, source: FlagSource, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._source = source
        self._batch_size = batch_size

    async def load(self, external_ids: Sequence[str]) -> FlagSnapshot:
        """Read stored flags for every id, one chunk at a time."""
        flags: dict[str, str | None] = {}
        ids = list(dict.fromkeys(external_ids))
        for start in range(0, len(ids), self._batch_size):
            chunk = ids[start:start + self._batch_size]
            flags.update(await self._source.fetch_flags(chunk))

        logger.info(
            "sync.flags_loaded",
            requested=len(ids),
            existing=len(flags),
            flagged=sum(1 for v in flags.values() if v),
        )
        return FlagSnapshot(flags=flags)
