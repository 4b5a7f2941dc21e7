"""
Structured logging for assignsync.

One JSON object per line (or a compact human format for terminals), with
credentials filtered out before anything is written:
- fields named like tokens/authorization are dropped
- bearer tokens and token=... fragments in free text are masked
- URLs are reduced to their path (query strings can carry tokens)

Usage:
    from assignsync.logging_config import setup_logging, get_logger

    setup_logging(level="INFO", json_format=True)
    logger = get_logger(__name__)
    logger.info("sync_started", extra={"records": 25})
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

import orjson

_URL_PATTERN = re.compile(r"(https?://[^\s\"'<>]+)")

_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bbearer\s+[\w\-\.~+/=]+", re.I), "Bearer [TOKEN]"),
    (
        re.compile(
            r"\b(access_token|token|api[_-]?key|secret)[=:]\s*['\"]?[\w\-\.~+/=]+['\"]?", re.I
        ),
        r"\1=[REDACTED]",
    ),
    # Sink integration tokens and Source personal tokens
    (re.compile(r"\b(secret_|ntn_)[A-Za-z0-9]{20,}\b"), "[TOKEN]"),
    (re.compile(r"\b\d{4,5}~[A-Za-z0-9]{32,}\b"), "[TOKEN]"),
    (re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
]

BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "token",
        "authorization",
        "api_key",
        "secret",
        "password",
        "credential",
        "source_api_token",
        "sink_api_token",
        "email",
    }
)

# Replaced wholesale: record payloads and descriptions can be large or personal
_REDACTED_VALUES: dict[str, str] = {
    "body": "[BODY]",
    "payload": "[PAYLOAD]",
    "properties": "[PROPERTIES]",
    "description": "[DESCRIPTION]",
    "params": "[PARAMS]",
}

_MAX_LIST_ITEMS = 10
_MAX_DEPTH = 3

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _url_path(url: str) -> str:
    return urlsplit(url).path or "/"


def _sanitize_text(text: str) -> str:
    """Mask credentials and strip URL query strings from free text."""
    if not text:
        return text
    result = _URL_PATTERN.sub(lambda m: _url_path(m.group(1)), text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _is_blocked(key: str) -> bool:
    key_lower = key.lower()
    return any(blocked in key_lower for blocked in BLOCKED_FIELDS)


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Drop credential fields and sanitise values, recursing into dicts."""
    if _depth > _MAX_DEPTH:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}
    for key, value in record.items():
        if _is_blocked(key):
            continue
        key_lower = key.lower()
        if key_lower in _REDACTED_VALUES:
            filtered[key] = _REDACTED_VALUES[key_lower]
        elif key_lower == "url" and isinstance(value, str):
            filtered["endpoint"] = _url_path(value)
        elif value is None or isinstance(value, (bool, int, float)):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = _sanitize_text(value)
        elif isinstance(value, (list, tuple, set, frozenset)):
            if len(value) <= _MAX_LIST_ITEMS:
                filtered[key] = [
                    _sanitize_text(v) if isinstance(v, str) else v for v in value
                ]
            else:
                filtered[key] = f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = _filter_log_record(value, _depth=_depth + 1)
        else:
            filtered[key] = _sanitize_text(str(value))
    return filtered


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    extra = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}
    return _filter_log_record(extra) if extra else {}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, then extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }
        if record.levelno >= logging.WARNING:
            entry["file"] = record.filename
            entry["line"] = record.lineno
        if record.exc_info:
            entry["exc"] = _sanitize_text(self.formatException(record.exc_info))
        for key, value in _extra_fields(record).items():
            entry.setdefault(key, value)
        return orjson.dumps(entry, default=str).decode()


class SimpleFormatter(logging.Formatter):
    """Human-readable single line: ``LEVEL logger: msg | k=v ...``."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"
        extra = _extra_fields(record)
        if extra:
            line = f"{line} | " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info:
            line = f"{line}\n{_sanitize_text(self.formatException(record.exc_info))}"
        return line


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """
    Configure the root logger once at startup.

    Args:
        level: Log level name or number.
        json_format: JSON lines (True) or the simple human format.
        stream: Output stream (default stderr).
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
