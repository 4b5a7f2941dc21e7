"""
Reconciliation of Source records into the Sink.

Extraction turns Source JSON into Records; the engine looks each one up,
diffs it against the cache and creates or updates the Sink record.
"""

from __future__ import annotations

from assignsync.sync.engine import EngineConfig, ReconciliationEngine
from assignsync.sync.extract import ExtractionResult, extract_records
from assignsync.sync.messages import FriendlyMessage, friendly_error
from assignsync.sync.retry import run_with_retry
from assignsync.sync.sanitize import strip_html

__all__ = [
    "EngineConfig",
    "ExtractionResult",
    "FriendlyMessage",
    "ReconciliationEngine",
    "extract_records",
    "friendly_error",
    "run_with_retry",
    "strip_html",
]
