"""
Extraction adapter: Source course/assignment JSON -> Records.

Produces the record list and the active group ids that the reconciliation
engine consumes. Descriptions are passed through raw; the engine sanitises
free text when building Sink payloads.

A course whose assignments cannot be fetched is logged and skipped, and is
left out of the active group ids so its cached records are never scheduled
for deletion in the Sink.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from assignsync.connectors.errors import ApiError
from assignsync.contracts.records import Record, RecordStatus

if TYPE_CHECKING:
    from assignsync.connectors.source_client import SourceClient

logger = logging.getLogger(__name__)

# "2257-CSC-413-02-1-1639" -> "CSC 413"
_COURSE_CODE_PATTERN = re.compile(r"([A-Z]{2,4})-?(\d{3,4})", re.IGNORECASE)


def short_group_name(course_code: str | None) -> str | None:
    """Department + number from a course code, or the code unchanged."""
    if not course_code:
        return None
    match = _COURSE_CODE_PATTERN.search(course_code)
    if match:
        return f"{match.group(1)} {match.group(2)}"
    return course_code


def submission_status(submission: dict[str, Any] | None) -> RecordStatus:
    """Status from the caller's submission workflow state."""
    if not submission:
        return RecordStatus.NOT_STARTED
    state = submission.get("workflow_state")
    if state == "submitted":
        return RecordStatus.GRADED if submission.get("grade") else RecordStatus.SUBMITTED
    if state == "graded":
        return RecordStatus.GRADED
    if state == "pending_review":
        return RecordStatus.PENDING_REVIEW
    if state == "unsubmitted" and submission.get("late"):
        return RecordStatus.LATE
    return RecordStatus.NOT_STARTED


def assignment_status(assignment: dict[str, Any], now: datetime | None = None) -> RecordStatus:
    """Status for an assignment without submission data."""
    if assignment.get("has_submitted_submissions"):
        return RecordStatus.SUBMITTED
    due_at = assignment.get("due_at")
    if due_at:
        try:
            due = datetime.fromisoformat(str(due_at).replace("Z", "+00:00"))
        except ValueError:
            return RecordStatus.NOT_STARTED
        if due.tzinfo is None:
            due = due.replace(tzinfo=UTC)
        if due < (now or datetime.now(tz=UTC)):
            return RecordStatus.OVERDUE
    return RecordStatus.NOT_STARTED


def score_percent(score: Any, points_possible: Any) -> float | None:
    try:
        score_value = float(score)
        points_value = float(points_possible)
    except (TypeError, ValueError):
        return None
    if points_value <= 0:
        return None
    return float(min(100, max(0, round(score_value / points_value * 100))))


def derive_record(
    assignment: dict[str, Any],
    course: dict[str, Any],
    *,
    now: datetime | None = None,
) -> Record | None:
    """
    Build a Record from one Source assignment.

    Returns:
        The record, or None if the assignment has no id.
    """
    if assignment.get("id") is None:
        return None

    course_code = course.get("course_code") or f"Course {course.get('id')}"
    submission = assignment.get("submission") or None
    if submission is not None:
        status = submission_status(submission)
        grade = submission.get("grade")
        percent = score_percent(submission.get("score"), assignment.get("points_possible"))
    else:
        status = assignment_status(assignment, now)
        grade = None
        percent = None

    description = assignment.get("description")

    kinds = assignment.get("submission_types") or []
    name = assignment.get("name")
    if not isinstance(name, str) or not name.strip():
        name = f"Assignment {assignment['id']}"

    return Record(
        external_id=assignment["id"],
        title=name,
        group_name=short_group_name(course_code),
        group_code=course_code,
        group_id=course.get("id"),
        due_at=assignment.get("due_at"),
        points_possible=assignment.get("points_possible"),
        status=status,
        url=assignment.get("html_url"),
        score_percent=percent,
        description=description or None,
        kind=", ".join(str(k) for k in kinds) if kinds else "Assignment",
        grade=grade,
    )


@dataclass
class ExtractionResult:
    records: list[Record] = field(default_factory=list)
    active_group_ids: list[str] = field(default_factory=list)
    failed_groups: list[str] = field(default_factory=list)


async def extract_records(client: SourceClient) -> ExtractionResult:
    """Fetch all active courses and their assignments from the Source."""
    result = ExtractionResult()
    courses = await client.list_courses()

    for course in courses:
        if course.get("id") is None:
            continue
        course_id = str(course["id"])
        try:
            assignments = await client.list_assignments(course_id)
        except ApiError as e:
            result.failed_groups.append(course_id)
            logger.warning(
                "course_assignments_failed",
                extra={"course_id": course_id, "kind": e.kind.value, "status": e.status},
            )
            continue
        result.active_group_ids.append(course_id)

        for assignment in assignments:
            try:
                record = derive_record(assignment, course)
            except PydanticValidationError as e:
                logger.warning(
                    "assignment_skipped_invalid",
                    extra={"course_id": course_id, "errors": e.error_count()},
                )
                continue
            if record is not None:
                result.records.append(record)

    logger.info(
        "extraction_complete",
        extra={
            "courses": len(result.active_group_ids),
            "records": len(result.records),
            "failed_courses": len(result.failed_groups),
        },
    )
    return result
