"""
Reconciliation engine: Records -> Sink, one pass at a time.

Pass phases:
1. Lookup   - cache first, then batched Sink queries by external id
2. Diff     - skip records whose cached snapshot is unchanged; changed cached
               records get their live Sink status re-read for the status guard
3. Dispatch - batched create/update calls with per-kind retries
4. Complete - cache refresh and optional cleanup of removed records

Every record that enters a pass produces exactly one SyncResult. Failures
of individual records never abort the pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from assignsync.connectors.errors import ApiError, ErrorKind
from assignsync.contracts.records import Record, SyncAction, SyncResult, SyncSummary
from assignsync.sync.messages import friendly_error
from assignsync.sync.properties import (
    apply_status_guard,
    build_properties,
    extract_external_id,
    extract_status,
    payload_status,
)
from assignsync.sync.retry import run_with_retry
from assignsync.sync.sanitize import strip_html

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from assignsync.cache.assignments import AssignmentCache, AssignmentCacheEntry
    from assignsync.connectors.backoff import RetryPolicies
    from assignsync.connectors.sink_client import SinkClient

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """
    Reconciliation pass tuning.

    Attributes:
        lookup_batch_size: Concurrent Sink lookups per group.
        lookup_batch_delay_ms: Pause between lookup groups.
        dispatch_batch_size: Concurrent create/update calls per batch.
        dispatch_batch_delay_ms: Pause between dispatch batches.
        delete_missing: Archive Sink records whose Source record disappeared
            from a still-active group.
        title_fallback_lookup: When the id lookup misses, adopt a Sink record
            with the same title that carries no external id yet.
        include_description: Write the Description property.
        dry_run: Plan only; no Sink writes and no cache changes.
    """

    lookup_batch_size: int = 5
    lookup_batch_delay_ms: int = 100
    dispatch_batch_size: int = 4
    dispatch_batch_delay_ms: int = 100
    delete_missing: bool = False
    title_fallback_lookup: bool = False
    include_description: bool = True
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.lookup_batch_size < 1:
            raise ValueError("lookup_batch_size must be >= 1")
        if self.dispatch_batch_size < 1:
            raise ValueError("dispatch_batch_size must be >= 1")
        if self.lookup_batch_delay_ms < 0:
            raise ValueError("lookup_batch_delay_ms must be >= 0")
        if self.dispatch_batch_delay_ms < 0:
            raise ValueError("dispatch_batch_delay_ms must be >= 0")


@dataclass
class _Lookup:
    """Where a record lives in the Sink, if anywhere."""

    record: Record
    sink_record_id: str | None = None
    existing_status: str | None = None
    from_cache: bool = False
    error: ApiError | None = None


@dataclass
class _PlannedWrite:
    record: Record
    properties: dict[str, Any]
    sink_record_id: str | None
    from_cache: bool = False
    status_retained: bool = False

    @property
    def action(self) -> SyncAction:
        return SyncAction.UPDATED if self.sink_record_id else SyncAction.CREATED


@dataclass
class _PassCounters:
    cache_hits: int = 0
    cache_misses: int = 0
    sink_lookups: int = 0
    # external id -> Sink id for creates that landed during this pass
    created: dict[str, str] = field(default_factory=dict)


class ReconciliationEngine:
    """
    Drives one reconciliation pass against the Sink.

    Usage:
        engine = ReconciliationEngine(sink, cache)
        summary = await engine.reconcile(records, active_group_ids)
    """

    def __init__(
        self,
        sink: SinkClient,
        cache: AssignmentCache,
        *,
        config: EngineConfig | None = None,
        sanitize: Callable[[str], str] | None = strip_html,
        retry_policies: RetryPolicies | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._sink = sink
        self._cache = cache
        self._config = config or EngineConfig()
        self._sanitize = sanitize
        self._retry_policies = retry_policies
        self._sleep = sleep_fn or asyncio.sleep
        self._running = asyncio.Lock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    async def _pause(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._sleep(delay_ms / 1000.0)

    def _error_result(
        self, record: Record, error: BaseException, *, attempts: int = 1
    ) -> SyncResult:
        kind = error.kind.value if isinstance(error, ApiError) else ErrorKind.UNKNOWN.value
        if isinstance(error, ApiError):
            attempts = max(attempts, error.attempts)
        return SyncResult(
            action=SyncAction.ERROR,
            record_id=record.external_id or None,
            title=record.title,
            detail=friendly_error(error, "sink").one_line(),
            error_kind=kind,
            attempts=attempts,
        )

    async def reconcile(
        self,
        records: Iterable[Record],
        active_group_ids: Iterable[str | int] | None = None,
    ) -> SyncSummary:
        """
        Run one pass over ``records``.

        Args:
            records: Source records for this pass.
            active_group_ids: Groups that were fully extracted. When given,
                cached records missing from ``records`` are cleaned up.

        Returns:
            SyncSummary with one result per input record.
        """
        async with self._running:
            return await self._reconcile(list(records), active_group_ids)

    async def _reconcile(
        self,
        records: list[Record],
        active_group_ids: Iterable[str | int] | None,
    ) -> SyncSummary:
        started = time.monotonic()
        counters = _PassCounters()
        results: list[SyncResult] = []

        unique: list[Record] = []
        seen: set[str] = set()
        for record in records:
            if not record.external_id:
                results.append(
                    SyncResult(
                        action=SyncAction.ERROR,
                        title=record.title,
                        detail="Record has no external id",
                        error_kind=ErrorKind.VALIDATION.value,
                        attempts=0,
                    )
                )
                continue
            if record.external_id in seen:
                logger.warning("duplicate_record_ignored", extra={"record_id": record.external_id})
                results.append(
                    SyncResult(
                        action=SyncAction.SKIPPED,
                        record_id=record.external_id,
                        title=record.title,
                        detail="Duplicate external id in this pass",
                        attempts=0,
                    )
                )
                continue
            seen.add(record.external_id)
            unique.append(record)

        logger.info(
            "reconciliation_started",
            extra={"records": len(unique), "dry_run": self._config.dry_run},
        )

        if unique:
            try:
                await self._sink.resolve_data_source_id()
            except ApiError as e:
                logger.error(
                    "sink_unavailable",
                    extra={"kind": e.kind.value, "status": e.status},
                )
                results.extend(self._error_result(r, e) for r in unique)
                return self._finish(results, counters, started)

        lookups = await self._lookup_all(unique, counters)
        await self._refresh_live_status(lookups, counters)

        writes: list[_PlannedWrite] = []
        for lookup in lookups:
            if lookup.error is not None:
                results.append(self._error_result(lookup.record, lookup.error))
                continue
            planned = self._plan(lookup)
            if isinstance(planned, SyncResult):
                results.append(planned)
                if not self._config.dry_run:
                    await self._cache.cache_record(
                        lookup.record.external_id,
                        lookup.record,
                        lookup.sink_record_id,
                        lookup.existing_status,
                    )
            else:
                writes.append(planned)

        if self._config.dry_run:
            results.extend(
                SyncResult(
                    action=SyncAction.SKIPPED,
                    record_id=w.record.external_id,
                    title=w.record.title,
                    detail=f"dry run: would {'update' if w.sink_record_id else 'create'}",
                    sink_record_id=w.sink_record_id,
                    attempts=0,
                )
                for w in writes
            )
            return self._finish(results, counters, started)

        results.extend(await self._dispatch_all(writes, counters))

        deleted = 0
        removed = 0
        if active_group_ids is not None:
            deleted, removed = await self._cleanup(
                [r.external_id for r in unique], active_group_ids
            )

        return self._finish(results, counters, started, deleted=deleted, removed=removed)

    def _finish(
        self,
        results: list[SyncResult],
        counters: _PassCounters,
        started: float,
        *,
        deleted: int = 0,
        removed: int = 0,
    ) -> SyncSummary:
        summary = SyncSummary(
            results=results,
            deleted=deleted,
            removed_from_cache=removed,
            cache_hits=counters.cache_hits,
            cache_misses=counters.cache_misses,
            sink_lookups=counters.sink_lookups,
        )
        logger.info(
            "reconciliation_complete",
            extra={
                **summary.as_dict(),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return summary

    # Lookup

    @staticmethod
    def _usable_cache_entry(entry: AssignmentCacheEntry | None) -> bool:
        # Stubs from migration carry a mapping but no known Sink status
        return entry is not None and bool(entry.sink_record_id) and not entry.is_stub

    async def _lookup_all(self, records: list[Record], counters: _PassCounters) -> list[_Lookup]:
        lookups: list[_Lookup] = []
        misses: list[_Lookup] = []

        for record in records:
            entry = self._cache.get_cached_record(record.external_id)
            if self._usable_cache_entry(entry):
                assert entry is not None  # Type narrowing
                counters.cache_hits += 1
                lookup = _Lookup(
                    record=record,
                    sink_record_id=entry.sink_record_id,
                    existing_status=entry.sink_status or entry.status,
                    from_cache=True,
                )
            else:
                counters.cache_misses += 1
                lookup = _Lookup(record=record)
                misses.append(lookup)
            lookups.append(lookup)

        size = self._config.lookup_batch_size
        for start in range(0, len(misses), size):
            if start:
                await self._pause(self._config.lookup_batch_delay_ms)
            group = misses[start : start + size]
            counters.sink_lookups += len(group)
            outcomes = await asyncio.gather(
                *(self._query_sink(lookup.record) for lookup in group),
                return_exceptions=True,
            )
            for lookup, outcome in zip(group, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    lookup.error = self._lookup_error(lookup, outcome)
                elif outcome is not None:
                    lookup.sink_record_id = str(outcome["id"])
                    lookup.existing_status = extract_status(outcome)

        logger.debug(
            "lookup_complete",
            extra={
                "cache_hits": counters.cache_hits,
                "cache_misses": counters.cache_misses,
                "found": sum(1 for lk in lookups if lk.sink_record_id),
            },
        )
        return lookups

    @staticmethod
    def _lookup_error(lookup: _Lookup, exc: BaseException) -> ApiError:
        if isinstance(exc, ApiError):
            return exc
        if isinstance(exc, asyncio.CancelledError):
            raise exc
        logger.error(
            "sink_lookup_failed",
            extra={"record_id": lookup.record.external_id, "error": repr(exc)},
        )
        return ApiError.from_kind(ErrorKind.UNKNOWN, str(exc) or type(exc).__name__, service="sink")

    async def _refresh_live_status(self, lookups: list[_Lookup], counters: _PassCounters) -> None:
        """
        Read the current Sink status of cached records that are about to be written.

        The cached status may be older than an edit made directly in the Sink,
        so the status guard needs the live value. Unchanged records are left
        alone and cost no call.
        """
        due = [
            lookup
            for lookup in lookups
            if lookup.from_cache
            and lookup.error is None
            and self._cache.compare_and_needs_update(
                lookup.record.external_id, lookup.record
            ).needs_update
        ]

        size = self._config.lookup_batch_size
        for start in range(0, len(due), size):
            if start:
                await self._pause(self._config.lookup_batch_delay_ms)
            group = due[start : start + size]
            counters.sink_lookups += len(group)
            outcomes = await asyncio.gather(
                *(self._read_live(lookup) for lookup in group),
                return_exceptions=True,
            )
            for lookup, outcome in zip(group, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    lookup.error = self._lookup_error(lookup, outcome)

    async def _read_live(self, lookup: _Lookup) -> None:
        assert lookup.sink_record_id is not None  # Type narrowing
        try:
            page: dict[str, Any] | None = await self._sink.get_record(lookup.sink_record_id)
        except ApiError as e:
            if e.kind != ErrorKind.NOT_FOUND:
                raise
            page = None

        if page is not None and not page.get("archived") and not page.get("in_trash"):
            lookup.existing_status = extract_status(page)
            return

        # Mapped record is gone; fall back to a lookup by external id
        logger.info(
            "stale_sink_mapping",
            extra={
                "record_id": lookup.record.external_id,
                "sink_record_id": lookup.sink_record_id,
            },
        )
        lookup.from_cache = False
        found = await self._query_sink(lookup.record)
        lookup.sink_record_id = str(found["id"]) if found else None
        lookup.existing_status = extract_status(found) if found else None

    async def _query_sink(self, record: Record) -> dict[str, Any] | None:
        page = await self._sink.find_by_external_id(record.external_id)
        if page is None and self._config.title_fallback_lookup:
            candidate = await self._sink.find_by_title(record.title)
            if candidate is not None and not extract_external_id(candidate):
                logger.info(
                    "sink_record_adopted_by_title",
                    extra={"record_id": record.external_id, "sink_record_id": candidate.get("id")},
                )
                page = candidate
        return page

    # Diff

    def _plan(self, lookup: _Lookup) -> _PlannedWrite | SyncResult:
        record = lookup.record
        if lookup.sink_record_id:
            change = self._cache.compare_and_needs_update(record.external_id, record)
            if not change.needs_update:
                return SyncResult(
                    action=SyncAction.SKIPPED,
                    record_id=record.external_id,
                    title=record.title,
                    detail="unchanged",
                    sink_record_id=lookup.sink_record_id,
                    attempts=0,
                )
            if change.changed_fields:
                logger.debug(
                    "record_changed",
                    extra={"record_id": record.external_id, "fields": change.changed_fields},
                )

        properties = build_properties(
            record,
            self._sanitize,
            include_description=self._config.include_description,
        )
        retained = apply_status_guard(properties, lookup.existing_status)
        return _PlannedWrite(
            record=record,
            properties=properties,
            sink_record_id=lookup.sink_record_id,
            from_cache=lookup.from_cache,
            status_retained=retained,
        )

    # Dispatch

    async def _dispatch_all(
        self, writes: Sequence[_PlannedWrite], counters: _PassCounters
    ) -> list[SyncResult]:
        results: list[SyncResult] = []
        size = self._config.dispatch_batch_size

        for start in range(0, len(writes), size):
            if start:
                await self._pause(self._config.dispatch_batch_delay_ms)
            batch = writes[start : start + size]
            outcomes = await asyncio.gather(
                *(self._dispatch_one(w, counters) for w in batch),
                return_exceptions=True,
            )

            failed: list[_PlannedWrite] = []
            for write, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    logger.warning(
                        "dispatch_batch_item_failed",
                        extra={"record_id": write.record.external_id, "error": repr(outcome)},
                    )
                    failed.append(write)
                else:
                    results.append(outcome)

            # Sequential second chance for items the concurrent batch lost
            for write in failed:
                try:
                    await self._find_landed_create(write, counters)
                    results.append(await self._dispatch_one(write, counters))
                except Exception as e:
                    logger.exception(
                        "dispatch_failed", extra={"record_id": write.record.external_id}
                    )
                    results.append(self._error_result(write.record, e))

        return results

    async def _find_landed_create(self, write: _PlannedWrite, counters: _PassCounters) -> None:
        """A create whose response was lost may still have landed; reuse it if so."""
        external_id = write.record.external_id
        if write.sink_record_id or external_id in counters.created:
            return
        counters.sink_lookups += 1
        page = await self._sink.find_by_external_id(external_id)
        if page is not None:
            logger.info(
                "landed_create_found",
                extra={"record_id": external_id, "sink_record_id": page.get("id")},
            )
            counters.created[external_id] = str(page["id"])

    async def _write(
        self, write: _PlannedWrite, counters: _PassCounters
    ) -> tuple[dict[str, Any], int]:
        external_id = write.record.external_id
        # A create that already landed in this pass must not be repeated
        sink_record_id = write.sink_record_id or counters.created.get(external_id)

        if sink_record_id:
            outcome = await run_with_retry(
                lambda: self._sink.update_record(sink_record_id, write.properties),
                operation_name="update",
                policies=self._retry_policies,
                sleep_fn=self._sleep,
            )
        else:
            outcome = await run_with_retry(
                lambda: self._sink.create_record(write.properties),
                operation_name="create",
                policies=self._retry_policies,
                sleep_fn=self._sleep,
            )
            if outcome.value and outcome.value.get("id"):
                counters.created[external_id] = str(outcome.value["id"])
        return outcome.value or {}, outcome.attempts

    async def _dispatch_one(self, write: _PlannedWrite, counters: _PassCounters) -> SyncResult:
        record = write.record
        action = write.action
        try:
            page, attempts = await self._write(write, counters)
        except ApiError as e:
            if not (e.kind == ErrorKind.NOT_FOUND and write.from_cache and write.sink_record_id):
                logger.warning(
                    "record_sync_failed",
                    extra={
                        "record_id": record.external_id,
                        "action": action.value,
                        "kind": e.kind.value,
                        "attempts": e.attempts,
                    },
                )
                return self._error_result(record, e)
            try:
                page, attempts, action = await self._recover_stale_mapping(write, counters)
            except ApiError as recover_error:
                return self._error_result(record, recover_error)

        sink_record_id = str(page.get("id") or write.sink_record_id or "") or None
        await self._cache.cache_record(
            record.external_id,
            record,
            sink_record_id,
            payload_status(write.properties),
        )
        return SyncResult(
            action=action,
            record_id=record.external_id,
            title=record.title,
            detail="status retained" if write.status_retained else None,
            sink_record_id=sink_record_id,
            attempts=attempts,
        )

    async def _recover_stale_mapping(
        self, write: _PlannedWrite, counters: _PassCounters
    ) -> tuple[dict[str, Any], int, SyncAction]:
        """The cached Sink record is gone; look it up again, else recreate it."""
        external_id = write.record.external_id
        logger.info(
            "stale_sink_mapping",
            extra={"record_id": external_id, "sink_record_id": write.sink_record_id},
        )
        await self._cache.remove_record(external_id)
        counters.sink_lookups += 1
        page = await self._sink.find_by_external_id(external_id)

        properties = build_properties(
            write.record,
            self._sanitize,
            include_description=self._config.include_description,
        )
        retry = _PlannedWrite(
            record=write.record,
            properties=properties,
            sink_record_id=str(page["id"]) if page else None,
        )
        if page is not None:
            retry.status_retained = apply_status_guard(properties, extract_status(page))
        result_page, attempts = await self._write(retry, counters)
        write.properties = retry.properties
        write.status_retained = retry.status_retained
        return result_page, attempts, retry.action

    # Cleanup

    async def _cleanup(
        self,
        current_ids: list[str],
        active_group_ids: Iterable[str | int],
    ) -> tuple[int, int]:
        active = [str(g) for g in active_group_ids]
        self._cache.set_active_groups(active)
        plan = self._cache.cleanup_inactive_groups(current_ids, active)

        deleted = 0
        removed = 0
        if self._config.delete_missing:
            for stale in plan.to_delete:
                assert stale.sink_record_id is not None  # Type narrowing
                sink_record_id = stale.sink_record_id
                try:
                    await run_with_retry(
                        lambda: self._sink.archive_record(sink_record_id),
                        operation_name="archive",
                        policies=self._retry_policies,
                        sleep_fn=self._sleep,
                    )
                except ApiError as e:
                    if e.kind != ErrorKind.NOT_FOUND:
                        logger.warning(
                            "archive_failed",
                            extra={
                                "record_id": stale.external_id,
                                "sink_record_id": sink_record_id,
                                "kind": e.kind.value,
                            },
                        )
                        continue
                else:
                    deleted += 1
                if await self._cache.remove_record(stale.external_id):
                    removed += 1
        elif plan.to_delete:
            logger.info(
                "stale_records_kept",
                extra={"count": len(plan.to_delete), "hint": "enable delete_missing to archive"},
            )

        for stale in plan.to_remove:
            if await self._cache.remove_record(stale.external_id):
                removed += 1

        if deleted or removed:
            logger.info("cleanup_complete", extra={"archived": deleted, "removed": removed})
        return deleted, removed
