"""
Change-aware assignment cache.

Stores, per Source record, a normalised snapshot of the fields that are
written to the Sink plus the Source-id -> Sink-id mapping. The mapping
outlives a single run (30 day TTL, persisted), which lets a warm
reconciliation skip Sink lookups and unchanged records entirely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from assignsync.cache.store import CacheConfig, CacheManager, CacheStats
from assignsync.contracts.records import Record

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from assignsync.cache.storage import KeyValueStorage

logger = logging.getLogger(__name__)

ASSIGNMENT_NAMESPACE = "assignment_cache"
ASSIGNMENT_KEY_PREFIX = "record:"
ASSIGNMENT_CACHE_VERSION = 1
ASSIGNMENT_TTL_MS = 30 * 24 * 60 * 60 * 1000
ASSIGNMENT_MAX_SIZE = 500

# Fields compared to decide whether the Sink record needs rewriting
COMPARISON_FIELDS: tuple[str, ...] = (
    "title",
    "group_name",
    "group_code",
    "due_at",
    "points_possible",
    "status",
    "kind",
    "description",
    "grade",
    "score_percent",
    "url",
)

# Stored alongside the comparison fields but not compared
_SNAPSHOT_EXTRA_FIELDS: tuple[str, ...] = ("group_id",)


def record_key(external_id: str | int) -> str:
    return f"{ASSIGNMENT_KEY_PREFIX}{external_id}"


def _normalize(value: Any) -> Any:
    """Canonical form for comparison and storage."""
    if isinstance(value, Enum):
        value = value.value
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return float(value)
    return value


def _values_equal(a: Any, b: Any) -> bool:
    a = _normalize(a)
    b = _normalize(b)
    if a is None or b is None:
        return a is b
    if isinstance(a, float) or isinstance(b, float):
        try:
            return float(a) == float(b)
        except (TypeError, ValueError):
            return False
    return a == b


def snapshot_fields(data: Record | Mapping[str, Any]) -> dict[str, Any]:
    """Normalised snapshot of comparison fields (plus group_id)."""
    source: Mapping[str, Any] = data.model_dump(mode="json") if isinstance(data, Record) else data
    return {
        name: _normalize(source.get(name))
        for name in (*COMPARISON_FIELDS, *_SNAPSHOT_EXTRA_FIELDS)
    }


@dataclass
class AssignmentCacheEntry:
    """Cached snapshot + Sink mapping for one Source record."""

    external_id: str
    source_data: dict[str, Any] | None
    sink_record_id: str | None
    last_synced_ms: int
    expires_at_ms: int
    # Status last written to (or read from) the Sink; guards against regressions
    sink_status: str | None = None
    version: int = ASSIGNMENT_CACHE_VERSION
    migrated: bool = False

    @property
    def is_stub(self) -> bool:
        """Mapping-only entry without a snapshot (from migration or mapping update)."""
        return self.source_data is None

    @property
    def group_id(self) -> str | None:
        if not self.source_data:
            return None
        group_id = self.source_data.get("group_id")
        return str(group_id) if group_id is not None else None

    @property
    def status(self) -> str | None:
        return self.source_data.get("status") if self.source_data else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_data": self.source_data,
            "sink_record_id": self.sink_record_id,
            "last_synced": self.last_synced_ms,
            "expires_at": self.expires_at_ms,
            "sink_status": self.sink_status,
            "version": self.version,
            "migrated": self.migrated,
        }

    @classmethod
    def from_dict(cls, external_id: str, data: Mapping[str, Any]) -> AssignmentCacheEntry:
        return cls(
            external_id=external_id,
            source_data=data.get("source_data"),
            sink_record_id=data.get("sink_record_id"),
            last_synced_ms=int(data.get("last_synced", 0)),
            expires_at_ms=int(data.get("expires_at", 0)),
            sink_status=data.get("sink_status"),
            version=int(data.get("version", ASSIGNMENT_CACHE_VERSION)),
            migrated=bool(data.get("migrated", False)),
        )


@dataclass(frozen=True)
class ChangeSet:
    """Result of comparing fresh Source data against the cached snapshot."""

    needs_update: bool
    changed_fields: list[str] = field(default_factory=list)
    cached_entry: AssignmentCacheEntry | None = None


@dataclass(frozen=True)
class StaleRecord:
    """Cached record that no longer exists upstream."""

    external_id: str
    sink_record_id: str | None
    group_id: str | None


@dataclass(frozen=True)
class CleanupPlan:
    """Stale records split by whether their group is still active.

    to_delete: group still active, so the record was removed upstream and
        its Sink record should be archived.
    to_remove: group no longer tracked; only the cache entry is dropped.
    """

    to_delete: list[StaleRecord] = field(default_factory=list)
    to_remove: list[StaleRecord] = field(default_factory=list)


@dataclass(frozen=True)
class AssignmentCacheStats:
    """Base cache stats plus mapping coverage."""

    base: CacheStats
    record_count: int
    with_sink_mapping: int
    without_sink_mapping: int
    active_groups: int
    version: int

    @property
    def hit_rate(self) -> float:
        return self.base.hit_rate

    def as_dict(self) -> dict[str, Any]:
        return {
            **self.base.as_dict(),
            "record_count": self.record_count,
            "with_sink_mapping": self.with_sink_mapping,
            "without_sink_mapping": self.without_sink_mapping,
            "active_groups": self.active_groups,
            "version": self.version,
        }


class AssignmentCache:
    """
    Source-record snapshots and Sink mappings on top of CacheManager.

    Usage:
        cache = AssignmentCache(JsonFileStorage(path))
        await cache.load()
        change = cache.compare_and_needs_update(record.external_id, record)
        ...
        await cache.cache_record(record.external_id, record, sink_record_id)
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        *,
        config: CacheConfig | None = None,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._config = config or CacheConfig(
            max_size=ASSIGNMENT_MAX_SIZE,
            default_ttl_ms=ASSIGNMENT_TTL_MS,
            persist=storage is not None,
            namespace=ASSIGNMENT_NAMESPACE,
        )
        self._cache = CacheManager(self._config, storage, time_fn=time_fn)
        self._active_groups: set[str] = set()

    @property
    def cache(self) -> CacheManager:
        return self._cache

    async def load(self) -> int:
        return await self._cache.load()

    def _now_ms(self) -> int:
        return self._cache.now_ms()

    def _entry_from_value(self, external_id: str, value: Any) -> AssignmentCacheEntry | None:
        if not isinstance(value, dict):
            return None
        return AssignmentCacheEntry.from_dict(external_id, value)

    async def _store(self, entry: AssignmentCacheEntry) -> None:
        ttl_ms = max(entry.expires_at_ms - self._now_ms(), 1)
        await self._cache.set(record_key(entry.external_id), entry.to_dict(), ttl_ms=ttl_ms)

    async def cache_record(
        self,
        external_id: str | int,
        source_data: Record | Mapping[str, Any],
        sink_record_id: str | None = None,
        sink_status: str | None = None,
    ) -> AssignmentCacheEntry:
        """
        Store a fresh snapshot for ``external_id``.

        An existing Sink mapping (and Sink status) is kept when the new value
        is None, so a snapshot refresh never clears a known mapping.
        """
        external_id = str(external_id)
        now_ms = self._now_ms()
        existing = self._entry_from_value(external_id, self._cache.peek(record_key(external_id)))
        if existing is not None:
            if sink_record_id is None:
                sink_record_id = existing.sink_record_id
            if sink_status is None:
                sink_status = existing.sink_status

        entry = AssignmentCacheEntry(
            external_id=external_id,
            source_data=snapshot_fields(source_data),
            sink_record_id=sink_record_id,
            last_synced_ms=now_ms,
            expires_at_ms=now_ms + self._config.default_ttl_ms,
            sink_status=sink_status,
        )
        await self._store(entry)
        return entry

    def get_cached_record(self, external_id: str | int) -> AssignmentCacheEntry | None:
        """Counted lookup (feeds hit/miss statistics)."""
        external_id = str(external_id)
        return self._entry_from_value(external_id, self._cache.get(record_key(external_id)))

    def peek_record(self, external_id: str | int) -> AssignmentCacheEntry | None:
        external_id = str(external_id)
        return self._entry_from_value(external_id, self._cache.peek(record_key(external_id)))

    async def update_sink_mapping(
        self,
        external_id: str | int,
        sink_record_id: str,
        sink_status: str | None = None,
    ) -> AssignmentCacheEntry:
        """Set the Sink mapping, preserving the snapshot (or creating a stub)."""
        external_id = str(external_id)
        now_ms = self._now_ms()
        existing = self.peek_record(external_id)
        if existing is None:
            entry = AssignmentCacheEntry(
                external_id=external_id,
                source_data=None,
                sink_record_id=sink_record_id,
                last_synced_ms=now_ms,
                expires_at_ms=now_ms + self._config.default_ttl_ms,
                sink_status=sink_status,
            )
        else:
            entry = AssignmentCacheEntry(
                external_id=external_id,
                source_data=existing.source_data,
                sink_record_id=sink_record_id,
                last_synced_ms=now_ms,
                expires_at_ms=existing.expires_at_ms,
                sink_status=sink_status or existing.sink_status,
                version=existing.version,
                migrated=existing.migrated,
            )
        await self._store(entry)
        return entry

    def compare_and_needs_update(
        self,
        external_id: str | int,
        fresh: Record | Mapping[str, Any],
    ) -> ChangeSet:
        """
        Field-by-field comparison of ``fresh`` against the cached snapshot.

        None, missing and empty string compare equal. Without a snapshot the
        result always asks for an update with no changed fields.
        """
        cached = self.peek_record(external_id)
        if cached is None or cached.source_data is None:
            return ChangeSet(needs_update=True, changed_fields=[], cached_entry=cached)

        fresh_snapshot = snapshot_fields(fresh)
        changed = [
            name
            for name in COMPARISON_FIELDS
            if not _values_equal(cached.source_data.get(name), fresh_snapshot.get(name))
        ]
        return ChangeSet(needs_update=bool(changed), changed_fields=changed, cached_entry=cached)

    def set_active_groups(self, group_ids: Iterable[str | int]) -> None:
        self._active_groups = {str(g) for g in group_ids}

    @property
    def active_groups(self) -> frozenset[str]:
        return frozenset(self._active_groups)

    def all_records(self) -> list[AssignmentCacheEntry]:
        entries = []
        for key, value in self._cache.items():
            if not key.startswith(ASSIGNMENT_KEY_PREFIX):
                continue
            entry = self._entry_from_value(key[len(ASSIGNMENT_KEY_PREFIX) :], value)
            if entry is not None:
                entries.append(entry)
        return entries

    def get_batch(self, external_ids: Iterable[str | int]) -> dict[str, AssignmentCacheEntry]:
        """Entries for the given ids that are cached (missing ids are omitted)."""
        found: dict[str, AssignmentCacheEntry] = {}
        for external_id in external_ids:
            entry = self.peek_record(external_id)
            if entry is not None:
                found[str(external_id)] = entry
        return found

    def cleanup_inactive_groups(
        self,
        current_ids: Iterable[str | int],
        active_group_ids: Iterable[str | int] | None = None,
    ) -> CleanupPlan:
        """
        Partition cached records missing from ``current_ids``.

        Records whose group is still active (and that have a Sink mapping)
        go to ``to_delete``; everything else goes to ``to_remove``.
        """
        current = {str(i) for i in current_ids}
        active = (
            {str(g) for g in active_group_ids}
            if active_group_ids is not None
            else set(self._active_groups)
        )

        plan = CleanupPlan()
        for entry in self.all_records():
            if entry.external_id in current:
                continue
            stale = StaleRecord(
                external_id=entry.external_id,
                sink_record_id=entry.sink_record_id,
                group_id=entry.group_id,
            )
            if entry.group_id is not None and entry.group_id in active and entry.sink_record_id:
                plan.to_delete.append(stale)
            else:
                plan.to_remove.append(stale)
        return plan

    async def remove_record(self, external_id: str | int) -> bool:
        return await self._cache.delete(record_key(external_id))

    async def clear_all(self) -> None:
        await self._cache.invalidate(f"{ASSIGNMENT_KEY_PREFIX}*")

    def get_stats(self) -> AssignmentCacheStats:
        records = self.all_records()
        with_mapping = sum(1 for e in records if e.sink_record_id)
        return AssignmentCacheStats(
            base=self._cache.get_stats(),
            record_count=len(records),
            with_sink_mapping=with_mapping,
            without_sink_mapping=len(records) - with_mapping,
            active_groups=len(self._active_groups),
            version=ASSIGNMENT_CACHE_VERSION,
        )

    async def close(self) -> None:
        await self._cache.close()
