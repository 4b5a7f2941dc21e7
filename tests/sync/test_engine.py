"""
Tests for the reconciliation engine.

The Sink is an in-memory fake that tracks concurrency and can inject errors
per call, so lookup batching, dispatch retries, stale mappings and cleanup
are exercised without a network.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import pytest

from assignsync.cache.assignments import AssignmentCache
from assignsync.connectors.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    TransientServerError,
)
from assignsync.contracts.records import Record, RecordStatus, SyncAction
from assignsync.sync.engine import EngineConfig, ReconciliationEngine
from assignsync.sync.properties import extract_external_id, extract_status


class FakeSink:
    """In-memory stand-in for SinkClient."""

    def __init__(self) -> None:
        self.pages: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        # (operation, key) -> errors raised by successive calls
        self.errors: dict[tuple[str, str], list[BaseException]] = {}
        self.resolve_error: BaseException | None = None
        # External ids whose create lands but whose response is lost
        self.lost_create_responses: set[str] = set()
        self.max_active: dict[str, int] = {"find": 0, "write": 0}
        self._active: dict[str, int] = {"find": 0, "write": 0}
        self._ids = itertools.count(1)

    def add_page(
        self,
        external_id: str | None,
        *,
        title: str = "Existing",
        status: str = "Not Started",
    ) -> str:
        page_id = f"page-{next(self._ids)}"
        properties: dict[str, Any] = {
            "Assignment Name": {"title": [{"text": {"content": title}}]},
            "Status": {"select": {"name": status}},
        }
        if external_id is not None:
            properties["Canvas ID"] = {"rich_text": [{"text": {"content": external_id}}]}
        self.pages[page_id] = {"id": page_id, "archived": False, "properties": properties}
        return page_id

    def live_pages(self) -> list[dict[str, Any]]:
        return [p for p in self.pages.values() if not p["archived"]]

    def status_of(self, page_id: str) -> str | None:
        return extract_status(self.pages[page_id])

    def _raise_injected(self, operation: str, key: str) -> None:
        queue = self.errors.get((operation, key))
        if queue:
            raise queue.pop(0)

    async def _enter(self, kind: str) -> None:
        self._active[kind] += 1
        self.max_active[kind] = max(self.max_active[kind], self._active[kind])
        await asyncio.sleep(0)

    def _leave(self, kind: str) -> None:
        self._active[kind] -= 1

    async def resolve_data_source_id(self) -> str:
        self.calls.append(("resolve", ""))
        if self.resolve_error is not None:
            raise self.resolve_error
        return "ds-1"

    async def find_by_external_id(self, external_id: str) -> dict[str, Any] | None:
        self.calls.append(("find", external_id))
        await self._enter("find")
        try:
            self._raise_injected("find", external_id)
            for page in self.live_pages():
                if extract_external_id(page) == external_id:
                    return page
            return None
        finally:
            self._leave("find")

    async def find_by_title(self, title: str) -> dict[str, Any] | None:
        self.calls.append(("find_title", title))
        for page in self.live_pages():
            if page["properties"]["Assignment Name"]["title"][0]["text"]["content"] == title:
                return page
        return None

    async def create_record(self, properties: dict[str, Any]) -> dict[str, Any]:
        external_id = properties["Canvas ID"]["rich_text"][0]["text"]["content"]
        self.calls.append(("create", external_id))
        await self._enter("write")
        try:
            self._raise_injected("create", external_id)
            page_id = f"page-{next(self._ids)}"
            self.pages[page_id] = {"id": page_id, "archived": False, "properties": properties}
            if external_id in self.lost_create_responses:
                self.lost_create_responses.discard(external_id)
                raise TimeoutError("response lost")
            return self.pages[page_id]
        finally:
            self._leave("write")

    async def get_record(self, record_id: str) -> dict[str, Any]:
        self.calls.append(("get", record_id))
        self._raise_injected("get", record_id)
        page = self.pages.get(record_id)
        if page is None:
            raise NotFoundError("gone", status=404, service="sink")
        return page

    async def update_record(self, record_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update", record_id))
        await self._enter("write")
        try:
            self._raise_injected("update", record_id)
            page = self.pages.get(record_id)
            if page is None or page["archived"]:
                raise NotFoundError("gone", status=404, service="sink")
            page["properties"].update(properties)
            return page
        finally:
            self._leave("write")

    async def archive_record(self, record_id: str) -> dict[str, Any]:
        self.calls.append(("archive", record_id))
        self._raise_injected("archive", record_id)
        page = self.pages.get(record_id)
        if page is None:
            raise NotFoundError("gone", status=404, service="sink")
        page["archived"] = True
        return page

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)


def _record(i: int, **overrides: Any) -> Record:
    data: dict[str, Any] = {
        "external_id": str(1000 + i),
        "title": f"Assignment {i}",
        "group_id": "7",
        "group_name": "CSC 413",
        "due_at": "2026-03-01T23:59:00Z",
        "points_possible": 10,
        "status": RecordStatus.NOT_STARTED,
        "url": f"https://lms.example.edu/courses/7/assignments/{1000 + i}",
        "description": "<p>Do the work</p>",
    }
    data.update(overrides)
    return Record(**data)


def _records(n: int) -> list[Record]:
    return [_record(i) for i in range(n)]


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def cache(clock) -> AssignmentCache:
    return AssignmentCache(time_fn=clock.time_fn)


def _engine(sink: FakeSink, cache: AssignmentCache, clock, **config: Any) -> ReconciliationEngine:
    return ReconciliationEngine(
        sink,  # type: ignore[arg-type]
        cache,
        config=EngineConfig(**config),
        sleep_fn=clock.sleep,
    )


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.lookup_batch_size == 5
        assert config.dispatch_batch_size == 4
        assert config.delete_missing is False
        assert config.dry_run is False

    def test_invalid(self) -> None:
        with pytest.raises(ValueError, match="lookup_batch_size"):
            EngineConfig(lookup_batch_size=0)
        with pytest.raises(ValueError, match="dispatch_batch_delay_ms"):
            EngineConfig(dispatch_batch_delay_ms=-1)


class TestColdAndWarmSync:
    @pytest.mark.asyncio
    async def test_cold_sync_creates_everything(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)

        summary = await engine.reconcile(_records(25))

        assert summary.total == 25
        assert summary.created == 25
        assert summary.success
        assert summary.cache_misses == 25
        assert summary.sink_lookups == 25
        assert sink.count("find") == 25
        assert sink.max_active["find"] == 5
        assert sink.max_active["write"] <= 4
        assert len(sink.live_pages()) == 25
        assert all(r.sink_record_id for r in summary.results)
        assert cache.get_stats().with_sink_mapping == 25

    @pytest.mark.asyncio
    async def test_lookup_groups_are_paced(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock, dispatch_batch_delay_ms=0)
        await engine.reconcile(_records(25))
        # Four pauses between five lookup groups
        assert clock.sleeps == [0.1] * 4

    @pytest.mark.asyncio
    async def test_warm_sync_makes_no_sink_calls(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile(_records(25))
        sink.calls.clear()

        summary = await engine.reconcile(_records(25))

        assert summary.created == 0
        assert summary.updated == 0
        assert summary.skipped == 25
        assert summary.cache_hit_rate >= 0.9
        assert summary.sink_lookups == 0
        assert [op for op, _ in sink.calls] == ["resolve"]

    @pytest.mark.asyncio
    async def test_changed_record_is_updated(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile(_records(5))

        fresh = _records(5)
        fresh[2] = _record(2, title="Assignment 2 (revised)")
        summary = await engine.reconcile(fresh)

        assert summary.updated == 1
        assert summary.skipped == 4
        result = summary.by_record_id()["1002"]
        assert result.action == SyncAction.UPDATED
        page = sink.pages[result.sink_record_id]
        assert page["properties"]["Assignment Name"]["title"][0]["text"]["content"] == (
            "Assignment 2 (revised)"
        )

    @pytest.mark.asyncio
    async def test_repeated_passes_never_duplicate(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        for _ in range(3):
            await engine.reconcile(_records(10))
        assert len(sink.live_pages()) == 10
        assert sink.count("create") == 10

    @pytest.mark.asyncio
    async def test_lost_cache_finds_existing_records(self, sink, clock) -> None:
        first_cache = AssignmentCache(time_fn=clock.time_fn)
        await _engine(sink, first_cache, clock).reconcile(_records(5))

        fresh_cache = AssignmentCache(time_fn=clock.time_fn)
        summary = await _engine(sink, fresh_cache, clock).reconcile(_records(5))

        assert summary.created == 0
        assert summary.updated == 5
        assert len(sink.live_pages()) == 5

    @pytest.mark.asyncio
    async def test_empty_pass(self, sink, cache, clock) -> None:
        summary = await _engine(sink, cache, clock).reconcile([])
        assert summary.total == 0
        assert sink.calls == []

    @pytest.mark.asyncio
    async def test_description_sanitised(self, sink, cache, clock) -> None:
        summary = await _engine(sink, cache, clock).reconcile([_record(0)])
        page = sink.pages[summary.results[0].sink_record_id]
        content = page["properties"]["Description"]["rich_text"][0]["text"]["content"]
        assert content == "Do the work"


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_duplicate_ids_in_one_pass(self, sink, cache, clock) -> None:
        records = [_record(1), _record(1, title="Same id again")]

        summary = await _engine(sink, cache, clock).reconcile(records)

        assert summary.total == 2
        assert summary.created == 1
        assert summary.skipped == 1
        skipped = [r for r in summary.results if r.action == SyncAction.SKIPPED]
        assert skipped[0].detail == "Duplicate external id in this pass"
        assert len(sink.live_pages()) == 1


class TestStatusGuard:
    @pytest.mark.asyncio
    async def test_existing_forward_status_retained(self, sink, cache, clock) -> None:
        page_id = sink.add_page("1001", status="Graded")
        record = _record(1, status=RecordStatus.OVERDUE)

        summary = await _engine(sink, cache, clock).reconcile([record])

        result = summary.results[0]
        assert result.action == SyncAction.UPDATED
        assert result.detail == "status retained"
        assert sink.status_of(page_id) == "Graded"
        entry = cache.peek_record("1001")
        assert entry is not None
        assert entry.sink_status == "Graded"

    @pytest.mark.asyncio
    async def test_cached_sink_status_guards_updates(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile([_record(1, status=RecordStatus.SUBMITTED)])
        page_id = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]

        summary = await engine.reconcile(
            [_record(1, status=RecordStatus.NOT_STARTED, title="Renamed")]
        )

        assert summary.updated == 1
        assert sink.status_of(page_id) == "Submitted"
        assert sink.count("find") == 1

    @pytest.mark.asyncio
    async def test_status_edited_in_sink_survives_changed_record(
        self, sink, cache, clock
    ) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile([_record(1)])
        page_id = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]
        # Student moves the card by hand; the cache still says Not Started
        sink.pages[page_id]["properties"]["Status"] = {"select": {"name": "In Progress"}}
        sink.calls.clear()

        summary = await engine.reconcile([_record(1, due_at="2026-03-08T23:59:00Z")])

        result = summary.results[0]
        assert result.action == SyncAction.UPDATED
        assert result.detail == "status retained"
        assert sink.status_of(page_id) == "In Progress"
        assert ("get", page_id) in sink.calls
        assert sink.count("find") == 0
        assert summary.sink_lookups == 1
        entry = cache.peek_record("1001")
        assert entry is not None
        assert entry.sink_status == "In Progress"

    @pytest.mark.asyncio
    async def test_unchanged_record_reads_nothing(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile([_record(1)])
        sink.calls.clear()

        summary = await engine.reconcile([_record(1)])

        assert summary.skipped == 1
        assert sink.count("get") == 0
        assert sink.count("update") == 0

    @pytest.mark.asyncio
    async def test_live_status_read_failure_isolated(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile(_records(3))
        page_id = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]
        sink.errors[("get", page_id)] = [TransientServerError("down", status=502, service="sink")]

        summary = await engine.reconcile([_record(i, title=f"Renamed {i}") for i in range(3)])

        assert summary.updated == 2
        failed = summary.by_record_id()["1001"]
        assert failed.action == SyncAction.ERROR
        assert failed.error_kind == "TRANSIENT_SERVER"
        assert ("update", page_id) not in sink.calls

    @pytest.mark.asyncio
    async def test_archived_mapping_is_recreated(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile([_record(1)])
        page_id = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]
        sink.pages[page_id]["archived"] = True

        summary = await engine.reconcile([_record(1, title="Renamed")])

        result = summary.results[0]
        assert result.action == SyncAction.CREATED
        assert result.sink_record_id != page_id
        assert len(sink.live_pages()) == 1
        assert sink.count("update") == 0

    @pytest.mark.asyncio
    async def test_forward_progress_written(self, sink, cache, clock) -> None:
        page_id = sink.add_page("1001", status="In Progress")
        await _engine(sink, cache, clock).reconcile([_record(1, status=RecordStatus.GRADED)])
        assert sink.status_of(page_id) == "Graded"

    @pytest.mark.asyncio
    async def test_migrated_stub_is_looked_up(self, sink, cache, clock) -> None:
        page_id = sink.add_page("1001", status="Graded")
        await cache.update_sink_mapping("1001", page_id)

        summary = await _engine(sink, cache, clock).reconcile(
            [_record(1, status=RecordStatus.NOT_STARTED)]
        )

        assert summary.cache_misses == 1
        assert summary.sink_lookups == 1
        assert summary.results[0].action == SyncAction.UPDATED
        assert sink.status_of(page_id) == "Graded"


class TestStaleMapping:
    @pytest.mark.asyncio
    async def test_missing_record_is_recreated(self, sink, cache, clock) -> None:
        await cache.cache_record("1001", _record(1, title="Old title"), "gone-page", "Not Started")

        summary = await _engine(sink, cache, clock).reconcile([_record(1)])

        result = summary.results[0]
        assert result.action == SyncAction.CREATED
        assert result.sink_record_id != "gone-page"
        assert len(sink.live_pages()) == 1
        entry = cache.peek_record("1001")
        assert entry is not None
        assert entry.sink_record_id == result.sink_record_id

    @pytest.mark.asyncio
    async def test_record_found_under_new_id(self, sink, cache, clock) -> None:
        page_id = sink.add_page("1001", status="Graded")
        await cache.cache_record("1001", _record(1, title="Old title"), "gone-page", "Not Started")

        summary = await _engine(sink, cache, clock).reconcile([_record(1)])

        result = summary.results[0]
        assert result.action == SyncAction.UPDATED
        assert result.sink_record_id == page_id
        assert result.detail == "status retained"
        assert sink.status_of(page_id) == "Graded"
        assert sink.count("create") == 0

    @pytest.mark.asyncio
    async def test_record_deleted_between_read_and_write(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile([_record(1)])
        page_id = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]
        sink.errors[("update", page_id)] = [NotFoundError("gone", status=404, service="sink")]

        summary = await engine.reconcile([_record(1, title="Renamed")])

        result = summary.results[0]
        assert result.action == SyncAction.UPDATED
        assert result.sink_record_id == page_id
        assert sink.count("update") == 2
        assert sink.count("create") == 1


class TestRetriesAndErrors:
    @pytest.mark.asyncio
    async def test_conflict_retried(self, sink, cache, clock) -> None:
        sink.errors[("create", "1001")] = [
            ConflictError("conflict", status=409, service="sink"),
            ConflictError("conflict", status=409, service="sink"),
        ]

        summary = await _engine(sink, cache, clock).reconcile([_record(1)])

        result = summary.results[0]
        assert result.action == SyncAction.CREATED
        assert result.attempts == 3
        assert len(sink.live_pages()) == 1

    @pytest.mark.asyncio
    async def test_persistent_error_isolated_to_record(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile(_records(3))
        page_id = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]
        sink.errors[("update", page_id)] = [AuthError("denied", status=403, service="sink")]

        fresh = [_record(i, title=f"Renamed {i}") for i in range(3)]
        summary = await engine.reconcile(fresh)

        assert not summary.success
        assert summary.updated == 2
        failed = summary.by_record_id()["1001"]
        assert failed.action == SyncAction.ERROR
        assert failed.error_kind == "AUTH"
        assert failed.detail is not None
        assert failed.detail.startswith("Sink Permission Denied")
        assert summary.error_details() == [f"Renamed 1: {failed.detail}"]

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_with_attempt_count(self, sink, cache, clock) -> None:
        sink.errors[("create", "1001")] = [
            TransientServerError("down", status=503, service="sink") for _ in range(3)
        ]

        summary = await _engine(sink, cache, clock).reconcile([_record(1)])

        result = summary.results[0]
        assert result.action == SyncAction.ERROR
        assert result.error_kind == "TRANSIENT_SERVER"
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_gets_second_chance(self, sink, cache, clock) -> None:
        sink.errors[("create", "1001")] = [RuntimeError("socket hiccup")]

        summary = await _engine(sink, cache, clock).reconcile(_records(3))

        assert summary.created == 3
        assert len(sink.live_pages()) == 3

    @pytest.mark.asyncio
    async def test_lost_create_response_not_duplicated(self, sink, cache, clock) -> None:
        sink.lost_create_responses.add("1001")

        summary = await _engine(sink, cache, clock).reconcile(_records(3))

        assert summary.created == 3
        result = summary.by_record_id()["1001"]
        assert result.action == SyncAction.CREATED
        assert len(sink.live_pages()) == 3
        assert sink.count("create") == 3
        assert ("update", result.sink_record_id) in sink.calls
        entry = cache.peek_record("1001")
        assert entry is not None
        assert entry.sink_record_id == result.sink_record_id

    @pytest.mark.asyncio
    async def test_unexpected_error_twice_is_reported(self, sink, cache, clock) -> None:
        sink.errors[("create", "1001")] = [RuntimeError("boom"), RuntimeError("boom")]

        summary = await _engine(sink, cache, clock).reconcile([_record(1)])

        result = summary.results[0]
        assert result.action == SyncAction.ERROR
        assert result.error_kind == "UNKNOWN"

    @pytest.mark.asyncio
    async def test_lookup_failure_isolated(self, sink, cache, clock) -> None:
        sink.errors[("find", "1002")] = [
            TransientServerError("down", status=500, service="sink")
        ]

        summary = await _engine(sink, cache, clock).reconcile(_records(4))

        assert summary.created == 3
        assert summary.by_record_id()["1002"].action == SyncAction.ERROR
        assert sink.count("create") == 3

    @pytest.mark.asyncio
    async def test_auth_failure_on_resolve(self, sink, cache, clock) -> None:
        sink.resolve_error = AuthError("unauthorized", status=401, service="sink")

        summary = await _engine(sink, cache, clock).reconcile(_records(3))

        assert summary.error_count == 3
        assert all(r.detail and r.detail.startswith("Invalid Sink Token") for r in summary.results)
        assert sink.count("find") == 0
        assert sink.count("create") == 0


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removed_records_archived(self, sink, cache, clock) -> None:
        await _engine(sink, cache, clock).reconcile(_records(3), active_group_ids=["7"])
        gone_page = cache.peek_record("1002").sink_record_id  # type: ignore[union-attr]

        engine = _engine(sink, cache, clock, delete_missing=True)
        summary = await engine.reconcile(_records(2), active_group_ids=["7"])

        assert summary.deleted == 1
        assert summary.removed_from_cache == 1
        assert sink.pages[gone_page]["archived"] is True
        assert cache.peek_record("1002") is None
        assert summary.skipped == 2

    @pytest.mark.asyncio
    async def test_removed_records_kept_without_delete_missing(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)
        await engine.reconcile(_records(3), active_group_ids=["7"])

        summary = await engine.reconcile(_records(2), active_group_ids=["7"])

        assert summary.deleted == 0
        assert sink.count("archive") == 0
        assert cache.peek_record("1002") is not None

    @pytest.mark.asyncio
    async def test_inactive_group_only_leaves_cache(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock, delete_missing=True)
        await engine.reconcile(_records(3), active_group_ids=["7"])

        summary = await engine.reconcile([], active_group_ids=[])

        assert summary.deleted == 0
        assert summary.removed_from_cache == 3
        assert sink.count("archive") == 0
        assert len(sink.live_pages()) == 3

    @pytest.mark.asyncio
    async def test_no_active_groups_means_no_cleanup(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock, delete_missing=True)
        await engine.reconcile(_records(3))

        summary = await engine.reconcile(_records(1))

        assert summary.deleted == 0
        assert summary.removed_from_cache == 0
        assert len(cache.all_records()) == 3

    @pytest.mark.asyncio
    async def test_already_archived_counts_as_removed(self, sink, cache, clock) -> None:
        await _engine(sink, cache, clock).reconcile(_records(2), active_group_ids=["7"])
        gone_page = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]
        del sink.pages[gone_page]

        engine = _engine(sink, cache, clock, delete_missing=True)
        summary = await engine.reconcile(_records(1), active_group_ids=["7"])

        assert summary.deleted == 0
        assert summary.removed_from_cache == 1

    @pytest.mark.asyncio
    async def test_failed_archive_keeps_cache_entry(self, sink, cache, clock) -> None:
        await _engine(sink, cache, clock).reconcile(_records(2), active_group_ids=["7"])
        gone_page = cache.peek_record("1001").sink_record_id  # type: ignore[union-attr]
        sink.errors[("archive", gone_page)] = [AuthError("no", status=403, service="sink")]

        engine = _engine(sink, cache, clock, delete_missing=True)
        summary = await engine.reconcile(_records(1), active_group_ids=["7"])

        assert summary.deleted == 0
        assert cache.peek_record("1001") is not None


class TestDryRunAndFallback:
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, sink, cache, clock) -> None:
        existing = sink.add_page("1001", status="Not Started")
        engine = _engine(sink, cache, clock, dry_run=True, delete_missing=True)

        summary = await engine.reconcile(_records(3), active_group_ids=["7"])

        assert summary.skipped == 3
        details = {r.record_id: r.detail for r in summary.results}
        assert details["1001"] == "dry run: would update"
        assert details["1000"] == "dry run: would create"
        assert summary.by_record_id()["1001"].sink_record_id == existing
        assert sink.count("create") == 0
        assert sink.count("update") == 0
        assert cache.all_records() == []

    @pytest.mark.asyncio
    async def test_title_fallback_adopts_unlinked_record(self, sink, cache, clock) -> None:
        page_id = sink.add_page(None, title="Assignment 1")
        engine = _engine(sink, cache, clock, title_fallback_lookup=True)

        summary = await engine.reconcile([_record(1)])

        result = summary.results[0]
        assert result.action == SyncAction.UPDATED
        assert result.sink_record_id == page_id
        assert extract_external_id(sink.pages[page_id]) == "1001"
        assert len(sink.live_pages()) == 1

    @pytest.mark.asyncio
    async def test_title_fallback_ignores_linked_record(self, sink, cache, clock) -> None:
        sink.add_page("9999", title="Assignment 1")
        engine = _engine(sink, cache, clock, title_fallback_lookup=True)

        summary = await engine.reconcile([_record(1)])

        assert summary.results[0].action == SyncAction.CREATED
        assert len(sink.live_pages()) == 2

    @pytest.mark.asyncio
    async def test_title_fallback_off_by_default(self, sink, cache, clock) -> None:
        sink.add_page(None, title="Assignment 1")
        summary = await _engine(sink, cache, clock).reconcile([_record(1)])
        assert summary.results[0].action == SyncAction.CREATED
        assert sink.count("find_title") == 0


class TestConcurrentPasses:
    @pytest.mark.asyncio
    async def test_passes_are_serialised(self, sink, cache, clock) -> None:
        engine = _engine(sink, cache, clock)

        first, second = await asyncio.gather(
            engine.reconcile(_records(5)), engine.reconcile(_records(5))
        )

        assert first.created == 5
        assert second.skipped == 5
        assert len(sink.live_pages()) == 5
