#!/usr/bin/env python3
"""
Run one assignment sync pass: Source (LMS) -> Sink (database).

Usage:
    python -m scripts.run_sync --config sync.yaml
    python -m scripts.run_sync --dry-run          # extract and diff only
    python -m scripts.run_sync --delete-missing --metrics-file sync.prom

Secrets come from the environment (SOURCE_API_TOKEN, SINK_API_TOKEN,
SINK_DATABASE_ID, SOURCE_BASE_URL); see assignsync.config.

Exit codes:
    0  every record synced
    1  at least one record failed, or the Source could not be read
    2  configuration error
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

import orjson

from assignsync.cache.assignments import AssignmentCache
from assignsync.cache.migrator import CacheMigrator
from assignsync.cache.storage import JsonFileStorage
from assignsync.config import EnvCredentialProvider, load_config
from assignsync.connectors.errors import ApiError
from assignsync.connectors.http import HttpTransport
from assignsync.connectors.leaky_bucket import LeakyBucketLimiter
from assignsync.connectors.sink_client import SINK_VERSION_HEADER, SinkClient
from assignsync.connectors.sliding_window import SlidingWindowLimiter
from assignsync.connectors.source_client import SourceClient
from assignsync.exporter import SyncMetricsExporter
from assignsync.logging_config import setup_logging
from assignsync.sync.engine import ReconciliationEngine
from assignsync.sync.extract import extract_records
from assignsync.sync.messages import friendly_error

if TYPE_CHECKING:
    from assignsync.config import CredentialProvider, SyncConfig
    from assignsync.contracts.records import SyncSummary

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


async def _open_cache(path: Path | None) -> AssignmentCache:
    if path is None:
        cache = AssignmentCache()
        await cache.load()
        return cache

    path.parent.mkdir(parents=True, exist_ok=True)
    storage = JsonFileStorage(path)
    try:
        await CacheMigrator(storage).migrate()
    except (OSError, ValueError, TypeError, KeyError):
        # The migrator already reset the namespace; start cold
        logger.warning("cache_migration_failed", extra={"cache_file": str(path)}, exc_info=True)
    cache = AssignmentCache(storage)
    await cache.load()
    return cache


def _write_summary(summary: SyncSummary, out: TextIO) -> None:
    payload = {
        **summary.as_dict(),
        "cache_hit_rate": round(summary.cache_hit_rate, 3),
        "errors_detail": summary.error_details(),
    }
    out.write(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode() + "\n")


async def run_sync(
    config: SyncConfig,
    credentials: CredentialProvider,
    *,
    out: TextIO = sys.stdout,
) -> int:
    """Wire clients, limiters, cache and engine; run one pass."""
    creds = credentials.get_credentials()

    source_limiter = LeakyBucketLimiter(config.source.limiter)
    sink_limiter = SlidingWindowLimiter(config.sink.limiter)
    source = SourceClient(
        HttpTransport(
            config.source.base_url,
            creds.source_token,
            service="source",
            timeout_s=config.source.timeout_s,
        ),
        source_limiter,
    )
    sink = SinkClient(
        HttpTransport(
            config.sink.base_url,
            creds.sink_token,
            service="sink",
            timeout_s=config.sink.timeout_s,
            extra_headers={SINK_VERSION_HEADER: config.sink.api_version},
        ),
        sink_limiter,
        config.sink.database_id,
    )
    cache = await _open_cache(config.cache_path)
    engine = ReconciliationEngine(sink, cache, config=config.engine)
    exporter = SyncMetricsExporter()

    summary: SyncSummary | None = None
    try:
        try:
            extraction = await extract_records(source)
        except ApiError as e:
            message = friendly_error(e, "source")
            logger.error(
                "source_extraction_failed",
                extra={"kind": e.kind.value, "status": e.status, "detail": message.one_line()},
            )
            out.write(message.one_line() + "\n")
            return EXIT_FAILED

        summary = await engine.reconcile(extraction.records, extraction.active_group_ids)
        _write_summary(summary, out)
        return EXIT_OK if summary.success else EXIT_FAILED
    finally:
        exporter.update(
            source_limiter=source_limiter,
            sink_limiter=sink_limiter,
            cache_stats=cache.get_stats(),
            summary=summary,
        )
        if config.metrics_file:
            exporter.write_textfile(config.metrics_file)
        await source_limiter.close()
        await sink_limiter.close()
        await source.close()
        await sink.close()
        await cache.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync LMS assignments into a database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file (default: environment variables only)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Extract and diff only; no Sink writes, no cache changes",
    )
    parser.add_argument(
        "--cache-file",
        type=Path,
        default=None,
        help="Assignment cache file (overrides cache.path)",
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Keep the assignment cache in memory only",
    )
    parser.add_argument(
        "--delete-missing",
        action="store_true",
        help="Archive Sink records whose assignment disappeared from an active course",
    )
    parser.add_argument(
        "--metrics-file",
        type=Path,
        default=None,
        help="Write Prometheus metrics to this textfile after the pass",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines instead of the human format",
    )
    return parser


def apply_overrides(config: SyncConfig, args: argparse.Namespace) -> SyncConfig:
    """CLI flags win over file/env configuration."""
    engine = config.engine
    if args.dry_run or args.delete_missing:
        engine = replace(
            engine,
            dry_run=engine.dry_run or args.dry_run,
            delete_missing=engine.delete_missing or args.delete_missing,
        )
    cache = config.cache
    if args.cache_file is not None or args.no_cache:
        cache = replace(
            cache,
            path=str(args.cache_file) if args.cache_file is not None else cache.path,
            enabled=not args.no_cache,
        )
    metrics_file = str(args.metrics_file) if args.metrics_file else config.metrics_file
    return replace(config, engine=engine, cache=cache, metrics_file=metrics_file)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, json_format=args.json_logs)

    try:
        config = apply_overrides(load_config(args.config), args)
        credentials = EnvCredentialProvider()
        credentials.get_credentials()
    except (ValueError, FileNotFoundError) as e:
        logger.error("config_invalid", extra={"error": str(e)})
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    return asyncio.run(run_sync(config, credentials))


if __name__ == "__main__":
    sys.exit(main())
