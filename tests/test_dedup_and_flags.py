"""Tests for partition merging and flag preservation.

Covers:
- Deduplicator precedence (known sync state beats unknown, in both orders)
- merge() tagging partitions with their known state
- sync_state_breakdown counts
- FlagPreservationStore chunked loading
- FlagSnapshot resolution: stored flag copied, null copied, auto-flag on new ids
"""

from __future__ import annotations

import pytest

from conftest import InMemoryExpenseRepository, make_card_txn
from src.expense_sync.expenses.schemas import NEEDS_REVIEW_FLAG, RawRecord
from src.expense_sync.sync.dedup import Deduplicator, sync_state_breakdown
from src.expense_sync.sync.flags import FlagPreservationStore, FlagSnapshot, auto_flag_for


def _tagged(txn_id: str, state: str | None) -> RawRecord:
    return make_card_txn(txn_id).model_copy(update={"sync_state": state})


# ── Deduplicator ─────────────────────────────────────────────────────────────


class TestDeduplicator:
    """One record per source id; known state wins over unknown."""

    def test_known_state_replaces_unknown(self) -> None:
        result = Deduplicator().dedupe([_tagged("a", None), _tagged("a", "SYNCED")])
        assert len(result) == 1
        assert result[0].sync_state == "SYNCED"

    def test_unknown_does_not_replace_known(self) -> None:
        result = Deduplicator().dedupe([_tagged("a", "SYNCED"), _tagged("a", None)])
        assert len(result) == 1
        assert result[0].sync_state == "SYNCED"

    def test_first_known_state_kept(self) -> None:
        result = Deduplicator().dedupe([_tagged("a", "ERROR"), _tagged("a", "SYNCED")])
        assert result[0].sync_state == "ERROR"

    def test_first_seen_order(self) -> None:
        result = Deduplicator().dedupe([_tagged("b", None), _tagged("a", None), _tagged("b", None)])
        assert [r.source_id for r in result] == ["b", "a"]

    def test_merge_tags_partitions(self) -> None:
        merged = Deduplicator().merge(
            [
                ("SYNCED", [make_card_txn("a")]),
                ("MANUAL_SYNCED", [make_card_txn("b")]),
                ("NOT_SYNCED", [make_card_txn("c"), make_card_txn("a")]),
                ("ERROR", [make_card_txn("d")]),
            ]
        )
        states = {r.source_id: r.sync_state for r in merged}
        assert states == {"a": "SYNCED", "b": "SYNCED", "c": None, "d": "ERROR"}

    def test_merge_not_synced_then_synced(self) -> None:
        merged = Deduplicator().merge(
            [("NOT_SYNCED", [make_card_txn("a")]), ("SYNCED", [make_card_txn("a")])]
        )
        assert len(merged) == 1
        assert merged[0].sync_state == "SYNCED"

    def test_breakdown(self) -> None:
        records = [_tagged("a", "SYNCED"), _tagged("b", None), _tagged("c", "ERROR"), _tagged("d", "SYNCED")]
        assert sync_state_breakdown(records) == {"SYNCED": 2, "NOT_SYNCED": 1, "ERROR": 1}


# ── Auto-flag ────────────────────────────────────────────────────────────────


class TestAutoFlag:
    """Reimbursement categories are flagged for review."""

    @pytest.mark.parametrize("category", ["Employee Reimbursement", "REIMBURSE", "reimbursable travel"])
    def test_reimbursement_flagged(self, category) -> None:
        assert auto_flag_for(category) == NEEDS_REVIEW_FLAG

    @pytest.mark.parametrize("category", ["Materials", "", None])
    def test_other_categories(self, category) -> None:
        assert auto_flag_for(category) is None


# ── FlagSnapshot ─────────────────────────────────────────────────────────────


class TestFlagSnapshot:
    """Stored value always wins for known ids."""

    def test_stored_flag_preserved(self) -> None:
        snapshot = FlagSnapshot(flags={"1": "Personal"})
        assert snapshot.resolve("1", "Employee Reimbursement") == ("Personal", True)

    def test_stored_null_is_copied_not_auto_flagged(self) -> None:
        snapshot = FlagSnapshot(flags={"1": None})
        assert snapshot.resolve("1", "Employee Reimbursement") == (None, False)

    def test_new_id_auto_flagged(self) -> None:
        snapshot = FlagSnapshot()
        assert snapshot.resolve("2", "Reimbursement") == (NEEDS_REVIEW_FLAG, False)

    def test_new_id_without_keyword(self) -> None:
        assert FlagSnapshot().resolve("2", "Materials") == (None, False)


# ── FlagPreservationStore ────────────────────────────────────────────────────


class TestFlagPreservationStore:
    """Chunked reads of stored flags."""

    @pytest.mark.asyncio
    async def test_loads_in_chunks(self) -> None:
        repo = InMemoryExpenseRepository()
        for i in range(5):
            repo.seed(str(i), flag_category="Duplicate" if i == 3 else None)

        snapshot = await FlagPreservationStore(repo, batch_size=2).load([str(i) for i in range(7)])

        assert [len(q) for q in repo.flag_queries] == [2, 2, 2, 1]
        assert len(snapshot) == 5
        assert "6" not in snapshot
        assert snapshot.flags["3"] == "Duplicate"

    @pytest.mark.asyncio
    async def test_duplicate_ids_queried_once(self) -> None:
        repo = InMemoryExpenseRepository()
        await FlagPreservationStore(repo, batch_size=10).load(["a", "b", "a"])
        assert repo.flag_queries == [["a", "b"]]

    @pytest.mark.asyncio
    async def test_empty_run_issues_no_queries(self) -> None:
        repo = InMemoryExpenseRepository()
        snapshot = await FlagPreservationStore(repo).load([])
        assert repo.flag_queries == []
        assert len(snapshot) == 0

    def test_batch_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            FlagPreservationStore(InMemoryExpenseRepository(), batch_size=0)
