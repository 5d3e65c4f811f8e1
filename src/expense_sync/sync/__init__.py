"""Reconciliation engine -- turns upstream listings into canonical expense rows.

Modules:
- field_mapping: Declared extraction tables and the FieldNormalizer
- branches: Branch label alias table and prefix rule
- dedup: Merge of sync-state partitioned listings
- flags: Batched flag prefetch and the auto-flag heuristic
- sync_log: Run audit recorder
- orchestrator: SyncOrchestrator, one run per source
- scheduler: Background loops for scheduled runs
- errors: FetchError, SubsidiaryLookupError, RecordProcessingError, ValidationError
"""
