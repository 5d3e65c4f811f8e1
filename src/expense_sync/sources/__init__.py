"""Upstream source adapters -- pluggable fetchers for the sync engine.

Provides the abstract SourceAdapter / PartitionedSourceAdapter interfaces
with concrete implementations:
- ERPBillAdapter: NetSuite vendor bills via SuiteQL and the REST record API
- CardTransactionAdapter: Bill.com Spend & Expense card transactions
"""

from src.expense_sync.sources.adapter import PartitionedSourceAdapter, SourceAdapter
from src.expense_sync.sources.card import CardTransactionAdapter
from src.expense_sync.sources.netsuite import ERPBillAdapter

__all__ = [
    "SourceAdapter",
    "PartitionedSourceAdapter",
    "ERPBillAdapter",
    "CardTransactionAdapter",
]
