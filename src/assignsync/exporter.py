"""
Prometheus metrics for the sync pipeline.

Exports limiter, cache and pass metrics with low-cardinality labels only
(``limiter`` is "source" or "sink"; ``action`` is a SyncAction value). No
record ids, course ids or URLs are ever used as labels.

The CLI writes the registry to a textfile after each pass so a node
exporter textfile collector can pick it up.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, write_to_textfile
from prometheus_client.registry import CollectorRegistry

from assignsync.contracts.records import SyncAction

if TYPE_CHECKING:
    from pathlib import Path

    from assignsync.cache.assignments import AssignmentCacheStats
    from assignsync.connectors.leaky_bucket import LeakyBucketLimiter
    from assignsync.connectors.serial_queue import SerialOperationQueue
    from assignsync.connectors.sliding_window import SlidingWindowLimiter
    from assignsync.contracts.records import SyncSummary

FORBIDDEN_LABELS = frozenset(
    {
        "record_id",
        "external_id",
        "sink_record_id",
        "course_id",
        "group_id",
        "url",
        "title",
        "token",
    }
)

# LimiterMetrics fields exported as monotonic counters
_LIMITER_COUNTERS: tuple[str, ...] = (
    "submitted",
    "completed",
    "failed",
    "retried",
    "dropped_cancelled",
    "delayed",
)


class SyncMetricsExporter:
    """
    Prometheus view of limiter state, cache stats and pass outcomes.

    Usage:
        exporter = SyncMetricsExporter()
        exporter.update(source_limiter=src, sink_limiter=sink,
                        cache_stats=cache.get_stats(), summary=summary)
        exporter.write_textfile("/var/lib/node_exporter/assignsync.prom")
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._limiter_events = Counter(
            "assignsync_limiter_events",
            "Limiter operation events by kind",
            ["limiter", "event"],
            registry=self._registry,
        )
        self._limiter_delay_ms = Counter(
            "assignsync_limiter_delay_ms",
            "Total admission delay imposed by the limiter in milliseconds",
            ["limiter"],
            registry=self._registry,
        )
        self._limiter_queue_depth = Gauge(
            "assignsync_limiter_queue_depth",
            "Operations waiting in the limiter queue",
            ["limiter"],
            registry=self._registry,
        )
        self._source_bucket_level = Gauge(
            "assignsync_source_bucket_level",
            "Estimated remaining Source quota",
            registry=self._registry,
        )
        self._source_cost_estimate = Gauge(
            "assignsync_source_cost_estimate",
            "Moving-average cost of one Source request",
            registry=self._registry,
        )
        self._sink_burst_count = Gauge(
            "assignsync_sink_burst_window_count",
            "Sink dispatches inside the burst window",
            registry=self._registry,
        )
        self._sink_average_count = Gauge(
            "assignsync_sink_average_window_count",
            "Sink dispatches inside the average window",
            registry=self._registry,
        )

        self._cache_size = Gauge(
            "assignsync_cache_records",
            "Records held in the assignment cache",
            registry=self._registry,
        )
        self._cache_mapped = Gauge(
            "assignsync_cache_mapped_records",
            "Cached records with a Sink mapping",
            registry=self._registry,
        )
        self._cache_hit_rate = Gauge(
            "assignsync_cache_hit_rate",
            "Assignment cache hit rate (0-1)",
            registry=self._registry,
        )
        self._cache_evictions = Counter(
            "assignsync_cache_evictions",
            "LRU evictions from the assignment cache",
            registry=self._registry,
        )

        self._records = Counter(
            "assignsync_records",
            "Reconciled records by outcome",
            ["action"],
            registry=self._registry,
        )
        self._archived = Counter(
            "assignsync_records_archived",
            "Sink records archived because they disappeared upstream",
            registry=self._registry,
        )
        self._last_pass_success = Gauge(
            "assignsync_last_pass_success",
            "1 if the last pass had no record errors",
            registry=self._registry,
        )
        self._last_pass_hit_rate = Gauge(
            "assignsync_last_pass_cache_hit_rate",
            "Share of lookups answered by the cache in the last pass",
            registry=self._registry,
        )

        # Last seen values for delta increments (counters are monotonic)
        self._last_limiter: dict[tuple[str, str], int] = {}
        self._last_cache_evictions = 0

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def update(
        self,
        source_limiter: LeakyBucketLimiter | None = None,
        sink_limiter: SlidingWindowLimiter | None = None,
        cache_stats: AssignmentCacheStats | None = None,
        summary: SyncSummary | None = None,
    ) -> None:
        if source_limiter is not None:
            self._update_limiter(source_limiter)
            status = source_limiter.get_status()
            self._source_bucket_level.set(status["level"])
            self._source_cost_estimate.set(status["estimated_cost"])
        if sink_limiter is not None:
            self._update_limiter(sink_limiter)
            status = sink_limiter.get_status()
            self._sink_burst_count.set(status["burst_count"])
            self._sink_average_count.set(status["average_count"])
        if cache_stats is not None:
            self._update_cache(cache_stats)
        if summary is not None:
            self.record_summary(summary)

    def _inc_delta(self, key: tuple[str, str], current: int, counter: Counter) -> None:
        delta = current - self._last_limiter.get(key, 0)
        if delta > 0:
            counter.inc(delta)
        self._last_limiter[key] = current

    def _update_limiter(self, limiter: SerialOperationQueue) -> None:
        name = limiter.name
        self._limiter_queue_depth.labels(limiter=name).set(limiter.queue_depth)
        for event in _LIMITER_COUNTERS:
            self._inc_delta(
                (name, event),
                getattr(limiter.metrics, event),
                self._limiter_events.labels(limiter=name, event=event),
            )
        self._inc_delta(
            (name, "total_delay_ms"),
            limiter.metrics.total_delay_ms,
            self._limiter_delay_ms.labels(limiter=name),
        )

    def _update_cache(self, stats: AssignmentCacheStats) -> None:
        self._cache_size.set(stats.record_count)
        self._cache_mapped.set(stats.with_sink_mapping)
        self._cache_hit_rate.set(stats.hit_rate)
        delta = stats.base.evictions - self._last_cache_evictions
        if delta > 0:
            self._cache_evictions.inc(delta)
        self._last_cache_evictions = stats.base.evictions

    def record_summary(self, summary: SyncSummary) -> None:
        """Count one pass's outcomes (call once per pass)."""
        counts = {
            SyncAction.CREATED: summary.created,
            SyncAction.UPDATED: summary.updated,
            SyncAction.SKIPPED: summary.skipped,
            SyncAction.ERROR: summary.error_count,
        }
        for action, count in counts.items():
            if count > 0:
                self._records.labels(action=action.value).inc(count)
        if summary.deleted:
            self._archived.inc(summary.deleted)
        self._last_pass_success.set(1 if summary.success else 0)
        self._last_pass_hit_rate.set(summary.cache_hit_rate)

    def reset_counter_tracking(self) -> None:
        """Forget last seen values (after limiters are recreated)."""
        self._last_limiter.clear()
        self._last_cache_evictions = 0

    def write_textfile(self, path: str | Path) -> None:
        """Atomically write the registry in Prometheus text format."""
        write_to_textfile(str(path), self._registry)


# Counters are exported with a _total suffix by prometheus_client
REQUIRED_METRIC_NAMES: frozenset[str] = frozenset(
    {
        "assignsync_limiter_events_total",
        "assignsync_limiter_delay_ms_total",
        "assignsync_limiter_queue_depth",
        "assignsync_source_bucket_level",
        "assignsync_source_cost_estimate",
        "assignsync_sink_burst_window_count",
        "assignsync_sink_average_window_count",
        "assignsync_cache_records",
        "assignsync_cache_mapped_records",
        "assignsync_cache_hit_rate",
        "assignsync_cache_evictions_total",
        "assignsync_records_total",
        "assignsync_records_archived_total",
        "assignsync_last_pass_success",
        "assignsync_last_pass_cache_hit_rate",
    }
)
