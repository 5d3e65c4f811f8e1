"""Sync error taxonomy.

Only FetchError aborts a run. SubsidiaryLookupError is absorbed where the
lookup happens and replaced by placeholder values. RecordProcessingError is
collected per record and reported in the run's error list. ValidationError
rejects malformed caller input on the flag and approval interfaces.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for expense sync errors."""


class FetchError(SyncError):
    """The upstream record set itself could not be retrieved."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"{source} fetch failed: {message}")


class SubsidiaryLookupError(SyncError):
    """A detail, line-item, or display-name lookup for one record failed."""

    def __init__(self, lookup: str, ref: str, message: str) -> None:
        self.lookup = lookup
        self.ref = ref
        super().__init__(f"{lookup} lookup for {ref} failed: {message}")


class RecordProcessingError(SyncError):
    """Normalization or upsert of one record failed."""

    def __init__(self, external_id: str, message: str) -> None:
        self.external_id = external_id
        self.message = message
        super().__init__(f"{external_id}: {message}")


class ValidationError(SyncError):
    """Malformed input on a human-facing update interface."""


class SyncAlreadyRunningError(SyncError):
    """A run for the same source is already in progress."""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"A {source} sync is already running")
