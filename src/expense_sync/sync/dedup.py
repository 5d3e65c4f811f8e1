"""Merging of sync-state partitioned query results.

The card platform only guarantees complete coverage when transactions are
queried once per downstream sync state, so the same transaction can show up
in more than one partition. Deduplicator collapses those into one record
per upstream id, preferring a known sync state over an unknown one.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

import structlog

from src.expense_sync.expenses.schemas import RawRecord

logger = structlog.get_logger(__name__)

# Partition queried upstream -> sync state recorded on the merged record.
# None means "not known to be synced".
PARTITION_STATES: dict[str, str | None] = {
    "SYNCED": "SYNCED",
    "MANUAL_SYNCED": "SYNCED",
    "NOT_SYNCED": None,
    "ERROR": "ERROR",
}

SYNC_STATE_PARTITIONS: tuple[str, ...] = tuple(PARTITION_STATES)


def sync_state_breakdown(records: Iterable[RawRecord]) -> dict[str, int]:
    """Count merged records per reported sync state (unknown counts as NOT_SYNCED)."""
    breakdown = {"SYNCED": 0, "NOT_SYNCED": 0, "ERROR": 0}
    for record in records:
        if record.sync_state in ("SYNCED", "ERROR"):
            breakdown[record.sync_state] += 1
        else:
            breakdown["NOT_SYNCED"] += 1
    return breakdown


class Deduplicator:
    """Collapse partitioned results into one record per upstream id.

    Args:
        partition_states: Partition name -> known sync state mapping.
    """

    def __init__(self, partition_states: Mapping[str, str | None] | None = None) -> None:
        self._states = dict(PARTITION_STATES if partition_states is None else partition_states)

    def known_state(self, partition: str) -> str | None:
        return self._states.get(partition)

    def merge(self, partitions: Iterable[tuple[str, Sequence[RawRecord]]]) -> list[RawRecord]:
        """Tag each record with its partition's known state, then dedupe.

        Args:
            partitions: (partition name, records) pairs in query order.

        Returns:
            One record per source_id, in first-seen order.
        """
        tagged: list[RawRecord] = []
        for partition, records in partitions:
            state = self.known_state(partition)
            tagged.extend(r.model_copy(update={"sync_state": state}) for r in records)
        return self.dedupe(tagged)

    def dedupe(self, records: Iterable[RawRecord]) -> list[RawRecord]:
        """Keep the first record per source_id unless a later one has a known state and it doesn't."""
        kept: dict[str, RawRecord] = {}
        seen = 0
        for record in records:
            seen += 1
            current = kept.get(record.source_id)
            if current is None:
                kept[record.source_id] = record
            elif record.sync_state and not current.sync_state:
                kept[record.source_id] = record

        logger.info("sync.dedup_complete", received=seen, unique=len(kept))
        return list(kept.values())
