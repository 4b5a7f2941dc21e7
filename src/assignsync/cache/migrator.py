"""
One-time migration of persisted cache blobs to the current schema.

Version history:
- 0: separate ``sink_lookup_cache`` blob keyed ``sink:lookup:<id>`` holding
  only the Sink record id (plus ``source_cache`` / ``sink_cache`` blobs)
- 1: unified ``assignment_cache`` namespace keyed ``record:<id>``

Legacy lookups become mapping-only stubs; their snapshots are backfilled by
the next reconciliation.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from assignsync.cache.assignments import (
    ASSIGNMENT_CACHE_VERSION,
    ASSIGNMENT_NAMESPACE,
    ASSIGNMENT_TTL_MS,
    AssignmentCacheEntry,
    record_key,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from assignsync.cache.storage import KeyValueStorage

logger = logging.getLogger(__name__)

VERSION_KEY = "cache_version"
LEGACY_LOOKUP_NAMESPACE = "sink_lookup_cache"
LEGACY_LOOKUP_PREFIX = "sink:lookup:"
LEGACY_NAMESPACES: tuple[str, ...] = (LEGACY_LOOKUP_NAMESPACE, "source_cache", "sink_cache")


class CacheMigrator:
    """
    Brings persisted cache state up to CURRENT_VERSION.

    Usage:
        await CacheMigrator(storage).migrate()  # once at startup, before load()
    """

    CURRENT_VERSION = ASSIGNMENT_CACHE_VERSION

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        time_fn: Callable[[], int] | None = None,
    ) -> None:
        self._storage = storage
        self._time_fn = time_fn

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    async def current_version(self) -> int:
        version = await self._storage.get(VERSION_KEY)
        return int(version) if isinstance(version, (int, float)) else 0

    async def migrate(self) -> bool:
        """
        Run pending migrations.

        Returns:
            True if a migration ran, False if already current.
        """
        version = await self.current_version()
        if version >= self.CURRENT_VERSION:
            logger.debug("cache_migration_not_needed", extra={"version": version})
            return False

        logger.info(
            "cache_migration_started",
            extra={"from_version": version, "to_version": self.CURRENT_VERSION},
        )
        if version < 1:
            await self._migrate_to_v1()

        await self._storage.set(VERSION_KEY, self.CURRENT_VERSION)
        logger.info("cache_migration_complete", extra={"version": self.CURRENT_VERSION})
        return True

    async def force_migration(self) -> bool:
        await self._storage.remove(VERSION_KEY)
        return await self.migrate()

    async def _migrate_to_v1(self) -> None:
        try:
            legacy = await self._storage.get(LEGACY_LOOKUP_NAMESPACE)
            existing = await self._storage.get(ASSIGNMENT_NAMESPACE)
            unified: dict[str, Any] = dict(existing) if isinstance(existing, dict) else {}

            migrated = 0
            if isinstance(legacy, dict):
                now_ms = self._now_ms()
                for old_key, old_entry in legacy.items():
                    stub = self._stub_from_legacy(old_key, old_entry, now_ms)
                    if stub is None:
                        continue
                    new_key = record_key(stub.external_id)
                    if new_key in unified:
                        continue
                    unified[new_key] = {
                        "value": stub.to_dict(),
                        "expires_at": stub.expires_at_ms,
                        "last_accessed": stub.last_synced_ms,
                    }
                    migrated += 1

            await self._storage.set(ASSIGNMENT_NAMESPACE, unified)
            await self._storage.remove(*LEGACY_NAMESPACES)
            logger.info("cache_migrated_v1", extra={"migrated": migrated})
        except Exception:
            logger.exception("cache_migration_failed")
            await self._storage.set(ASSIGNMENT_NAMESPACE, {})
            raise

    @staticmethod
    def _stub_from_legacy(
        old_key: str, old_entry: Any, now_ms: int
    ) -> AssignmentCacheEntry | None:
        if not old_key.startswith(LEGACY_LOOKUP_PREFIX) or not isinstance(old_entry, dict):
            return None
        # Legacy blobs were written either raw or wrapped in a cache entry
        payload = old_entry.get("value") if isinstance(old_entry.get("value"), dict) else old_entry
        sink_record_id = payload.get("sink_record_id")
        if not sink_record_id:
            return None
        timestamp = payload.get("timestamp")
        return AssignmentCacheEntry(
            external_id=old_key[len(LEGACY_LOOKUP_PREFIX) :],
            source_data=None,
            sink_record_id=str(sink_record_id),
            last_synced_ms=int(timestamp) if isinstance(timestamp, (int, float)) else now_ms,
            expires_at_ms=now_ms + ASSIGNMENT_TTL_MS,
            migrated=True,
        )
