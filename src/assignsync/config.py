"""
Sync configuration.

Dataclass sections validated in ``__post_init__``. Secrets are never read
from YAML defaults; they fall back to environment variables:

    SOURCE_API_TOKEN   Source (LMS) access token
    SOURCE_BASE_URL    Source API root, e.g. https://lms.example.edu/api/v1
    SINK_API_TOKEN     Sink integration token
    SINK_DATABASE_ID   Sink database holding the records
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml  # type: ignore[import-untyped]

from assignsync.connectors.leaky_bucket import LeakyBucketConfig
from assignsync.connectors.sink_client import SINK_API_VERSION, SINK_BASE_URL
from assignsync.connectors.sliding_window import SlidingWindowConfig
from assignsync.sync.engine import EngineConfig

# Never logged or echoed back
REDACTED_ENV_VARS = frozenset({
    "SOURCE_API_TOKEN",
    "SINK_API_TOKEN",
})

DEFAULT_CACHE_FILE = ".assignsync/cache.json"


@dataclass(frozen=True)
class Credentials:
    """Tokens for both services."""

    source_token: str
    sink_token: str

    def __repr__(self) -> str:
        return "Credentials(source_token=***, sink_token=***)"


@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies credentials at startup."""

    def get_credentials(self) -> Credentials: ...


class EnvCredentialProvider:
    """Reads tokens from SOURCE_API_TOKEN / SINK_API_TOKEN."""

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def get_credentials(self) -> Credentials:
        source_token = self._environ.get("SOURCE_API_TOKEN", "")
        sink_token = self._environ.get("SINK_API_TOKEN", "")
        if not source_token:
            raise ValueError("SOURCE_API_TOKEN is not set")
        if not sink_token:
            raise ValueError("SINK_API_TOKEN is not set")
        return Credentials(source_token=source_token, sink_token=sink_token)


@dataclass
class SourceConfig:
    """Source (LMS) API settings."""

    base_url: str = ""  # From SOURCE_BASE_URL env var
    timeout_s: float = 30.0
    limiter: LeakyBucketConfig = field(default_factory=LeakyBucketConfig)

    def __post_init__(self) -> None:
        if not self.base_url:
            self.base_url = os.environ.get("SOURCE_BASE_URL", "")
        if not self.base_url:
            raise ValueError("SOURCE_BASE_URL required (config source.base_url or env var)")
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"source.base_url must be an http(s) URL, got {self.base_url!r}")
        self.base_url = self.base_url.rstrip("/")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")


@dataclass
class SinkConfig:
    """Sink (database) API settings."""

    database_id: str = ""  # From SINK_DATABASE_ID env var
    base_url: str = SINK_BASE_URL
    api_version: str = SINK_API_VERSION
    timeout_s: float = 30.0
    limiter: SlidingWindowConfig = field(default_factory=SlidingWindowConfig)

    def __post_init__(self) -> None:
        if not self.database_id:
            self.database_id = os.environ.get("SINK_DATABASE_ID", "")
        if not self.database_id:
            raise ValueError("SINK_DATABASE_ID required (config sink.database_id or env var)")
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be > 0, got {self.timeout_s}")


@dataclass
class CacheFileConfig:
    """Where the persistent assignment cache lives."""

    path: str = DEFAULT_CACHE_FILE
    enabled: bool = True


@dataclass
class SyncConfig:
    """Main sync configuration."""

    source: SourceConfig = field(default_factory=SourceConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    cache: CacheFileConfig = field(default_factory=CacheFileConfig)
    metrics_file: str | None = None

    @property
    def cache_path(self) -> Path | None:
        return Path(self.cache.path).expanduser() if self.cache.enabled else None


def _build(cls: type[Any], data: Any, section: str) -> Any:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"config section '{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"unknown keys in '{section}': {', '.join(unknown)}")
    return cls(**data)


def config_from_dict(data: dict[str, Any] | None) -> SyncConfig:
    """Build a SyncConfig from a plain mapping (e.g. parsed YAML)."""
    data = dict(data or {})
    unknown = sorted(set(data) - {"source", "sink", "engine", "cache", "metrics_file"})
    if unknown:
        raise ValueError(f"unknown top-level config keys: {', '.join(unknown)}")

    source_data = dict(data.get("source") or {})
    source_limiter = _build(LeakyBucketConfig, source_data.pop("limiter", None), "source.limiter")
    sink_data = dict(data.get("sink") or {})
    sink_limiter = _build(SlidingWindowConfig, sink_data.pop("limiter", None), "sink.limiter")

    return SyncConfig(
        source=_build(SourceConfig, {**source_data, "limiter": source_limiter}, "source"),
        sink=_build(SinkConfig, {**sink_data, "limiter": sink_limiter}, "sink"),
        engine=_build(EngineConfig, data.get("engine"), "engine"),
        cache=_build(CacheFileConfig, data.get("cache"), "cache"),
        metrics_file=data.get("metrics_file"),
    )


def load_config(path: str | Path | None = None) -> SyncConfig:
    """
    Load configuration from a YAML file, or from env vars only.

    Raises:
        ValueError: Missing required settings or malformed file.
        FileNotFoundError: ``path`` does not exist.
    """
    if path is None:
        return config_from_dict({})
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML in {path}: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return config_from_dict(data)
