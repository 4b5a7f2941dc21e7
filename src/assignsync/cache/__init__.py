"""
TTL/LRU cache with pluggable persistence, and the assignment cache built on it.
"""

from __future__ import annotations

from assignsync.cache.assignments import AssignmentCache, AssignmentCacheEntry, ChangeSet
from assignsync.cache.migrator import CacheMigrator
from assignsync.cache.storage import JsonFileStorage, KeyValueStorage, MemoryStorage
from assignsync.cache.store import CacheConfig, CacheManager, CacheStats

__all__ = [
    "AssignmentCache",
    "AssignmentCacheEntry",
    "CacheConfig",
    "CacheManager",
    "CacheMigrator",
    "CacheStats",
    "ChangeSet",
    "JsonFileStorage",
    "KeyValueStorage",
    "MemoryStorage",
]
