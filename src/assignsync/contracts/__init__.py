"""Data contracts exchanged between extraction, reconciliation and callers."""

from assignsync.contracts.records import (
    Record,
    RecordStatus,
    SyncAction,
    SyncResult,
    SyncSummary,
)

__all__ = [
    "Record",
    "RecordStatus",
    "SyncAction",
    "SyncResult",
    "SyncSummary",
]
