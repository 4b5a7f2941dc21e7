"""
Record -> Sink property payload mapping and the status regression guard.

Sink schema (property name -> type):
    Assignment Name   title
    Course            select
    Due Date          date
    Status            select
    Points            number
    Grade             number (score percent)
    Link to Resources url
    Canvas ID         rich_text (external id)
    Description       rich_text (sanitised free text)
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from assignsync.connectors.sink_client import EXTERNAL_ID_PROPERTY, TITLE_PROPERTY
from assignsync.contracts.records import RecordStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from assignsync.contracts.records import Record

logger = logging.getLogger(__name__)

GROUP_PROPERTY = "Course"
DUE_PROPERTY = "Due Date"
STATUS_PROPERTY = "Status"
POINTS_PROPERTY = "Points"
SCORE_PROPERTY = "Grade"
URL_PROPERTY = "Link to Resources"
DESCRIPTION_PROPERTY = "Description"

MAX_SELECT_CHARS = 100
MAX_RICH_TEXT_CHARS = 2000


def _text_block(content: str) -> list[dict[str, Any]]:
    return [{"type": "text", "text": {"content": content}}]


def clip_select(value: str | None) -> str | None:
    """Trim a select option name to the Sink's length limit."""
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed[:MAX_SELECT_CHARS]


def clip_rich_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value[:MAX_RICH_TEXT_CHARS]


def normalize_date(value: str | None) -> str | None:
    """Return an ISO-8601 string the Sink accepts, or None if unparseable."""
    if not value:
        return None
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("invalid_due_date_dropped", extra={"value": text[:40]})
        return None
    if len(text) == 10:
        return text
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC).isoformat().replace("+00:00", "Z")


def valid_url(value: str | None) -> str | None:
    if not value:
        return None
    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return value


def valid_number(value: float | None) -> float | None:
    if value is None or math.isnan(value) or math.isinf(value):
        return None
    return value


def build_properties(
    record: Record,
    sanitize: Callable[[str], str] | None = None,
    *,
    include_description: bool = True,
) -> dict[str, Any]:
    """
    Map a Record onto the Sink property payload.

    Args:
        record: Source record.
        sanitize: Applied to free-text fields before they are written.
        include_description: Write the Description property.

    Returns:
        Properties dict for a create or update call. Properties whose value
        is missing are omitted so existing Sink values are left untouched.
    """
    properties: dict[str, Any] = {
        TITLE_PROPERTY: {"title": _text_block(record.title[:MAX_RICH_TEXT_CHARS])},
        EXTERNAL_ID_PROPERTY: {"rich_text": _text_block(record.external_id)},
        STATUS_PROPERTY: {"select": {"name": record.status.value}},
    }

    group = clip_select(record.group_name)
    if group:
        properties[GROUP_PROPERTY] = {"select": {"name": group}}

    due = normalize_date(record.due_at)
    if due:
        properties[DUE_PROPERTY] = {"date": {"start": due}}

    points = valid_number(record.points_possible)
    if points is not None:
        properties[POINTS_PROPERTY] = {"number": points}

    score = valid_number(record.score_percent)
    if score is not None:
        properties[SCORE_PROPERTY] = {"number": score}

    url = valid_url(record.url)
    if url:
        properties[URL_PROPERTY] = {"url": url}

    if include_description and record.description:
        text = sanitize(record.description) if sanitize is not None else record.description
        text = clip_rich_text(text.strip())
        if text:
            properties[DESCRIPTION_PROPERTY] = {"rich_text": _text_block(text)}

    return properties


def _plain_text(items: Any) -> str | None:
    if not isinstance(items, list) or not items:
        return None
    first = items[0]
    if not isinstance(first, dict):
        return None
    if first.get("plain_text"):
        return str(first["plain_text"])
    text = first.get("text")
    if isinstance(text, dict) and text.get("content"):
        return str(text["content"])
    return None


def extract_status(page: dict[str, Any] | None) -> str | None:
    """Current Status select value of a Sink record."""
    if not page:
        return None
    prop = (page.get("properties") or {}).get(STATUS_PROPERTY) or {}
    select = prop.get("select") or {}
    return select.get("name")


def extract_external_id(page: dict[str, Any] | None) -> str | None:
    if not page:
        return None
    prop = (page.get("properties") or {}).get(EXTERNAL_ID_PROPERTY) or {}
    return _plain_text(prop.get("rich_text"))


def payload_status(properties: dict[str, Any]) -> str | None:
    return ((properties.get(STATUS_PROPERTY) or {}).get("select") or {}).get("name")


def should_retain_status(
    existing_status: str | RecordStatus | None,
    new_status: str | RecordStatus | None,
) -> bool:
    """
    True when ``new_status`` would move a record backwards.

    A forward-progress status (In Progress, Pending Review, Submitted,
    Graded) is only replaced by a status further along the ladder.
    """
    existing = RecordStatus.parse(existing_status)
    new = RecordStatus.parse(new_status)
    if existing is None or new is None or existing == new:
        return False
    return existing.is_forward_progress and new.rank <= existing.rank


def apply_status_guard(
    properties: dict[str, Any],
    existing_status: str | RecordStatus | None,
) -> bool:
    """
    Keep the existing Sink status in ``properties`` if the payload regresses it.

    Returns:
        True if the payload status was overridden.
    """
    new_status = payload_status(properties)
    if not should_retain_status(existing_status, new_status):
        return False
    existing = RecordStatus.parse(existing_status)
    assert existing is not None  # Type narrowing
    properties[STATUS_PROPERTY] = {"select": {"name": existing.value}}
    logger.debug(
        "status_regression_prevented",
        extra={"existing_status": existing.value, "computed_status": new_status},
    )
    return True
