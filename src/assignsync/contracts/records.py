"""
Data contracts for the sync pipeline.

Records flow from extraction into the reconciliation engine; SyncResult and
SyncSummary flow back out to the caller. All are immutable pydantic models
serialised with orjson.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator


class RecordStatus(str, Enum):
    """Progress state of a record, as displayed in the Sink."""

    NOT_STARTED = "Not Started"
    OVERDUE = "Overdue"
    LATE = "Late"
    IN_PROGRESS = "In Progress"
    PENDING_REVIEW = "Pending Review"
    SUBMITTED = "Submitted"
    GRADED = "Graded"

    @property
    def rank(self) -> int:
        """Position on the progress ladder (higher = further along)."""
        return _STATUS_RANK[self]

    @property
    def is_forward_progress(self) -> bool:
        return self.rank > 0

    @classmethod
    def parse(cls, value: str | RecordStatus | None) -> RecordStatus | None:
        """Lenient parse; unknown labels return None."""
        if value is None:
            return None
        if isinstance(value, RecordStatus):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


_STATUS_RANK: dict[RecordStatus, int] = {
    RecordStatus.NOT_STARTED: 0,
    RecordStatus.OVERDUE: 0,
    RecordStatus.LATE: 0,
    RecordStatus.IN_PROGRESS: 1,
    RecordStatus.PENDING_REVIEW: 2,
    RecordStatus.SUBMITTED: 2,
    RecordStatus.GRADED: 3,
}


class Record(BaseModel):
    """
    One synchronisable work item extracted from the Source.

    Attributes:
        external_id: Stable Source identifier.
        title: Display title.
        group_name: Short group label (e.g. "CSC 413").
        group_id: Source group (course) identifier, used for cleanup.
        due_at: ISO-8601 due timestamp or None.
        points_possible: Non-negative max score or None.
        status: Progress status.
        url: Link back to the Source.
        score_percent: Score as a 0-100 percentage or None.
        description: Plain-text description (already sanitised or raw).
        group_code: Full Source group code.
        kind: Submission type label.
        grade: Raw grade string as reported by the Source.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    external_id: str = Field(..., min_length=1)
    title: str = Field(default="Untitled Assignment")
    group_name: str | None = None
    group_id: str | None = None
    due_at: str | None = None
    points_possible: float | None = None
    status: RecordStatus = RecordStatus.NOT_STARTED
    url: str | None = None
    score_percent: float | None = Field(default=None, ge=0, le=100)
    description: str | None = None
    group_code: str | None = None
    kind: str | None = None
    grade: str | None = None

    @field_validator("external_id", "group_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        """Source ids arrive as integers; keep them as strings."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("title", mode="before")
    @classmethod
    def default_title(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "Untitled Assignment"
        return v

    @field_validator("due_at", mode="before")
    @classmethod
    def validate_due_at(cls, v: Any) -> str | None:
        """Unparseable timestamps become None instead of failing the record."""
        if v is None or v == "":
            return None
        if not isinstance(v, str):
            return None
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            return None
        return v

    @field_validator("points_possible", mode="before")
    @classmethod
    def validate_points(cls, v: Any) -> float | None:
        if v is None or v == "":
            return None
        try:
            points = float(v)
        except (TypeError, ValueError):
            return None
        return points if points >= 0 else None

    @field_validator("grade", mode="before")
    @classmethod
    def coerce_grade(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    def to_json(self) -> bytes:
        """Serialize to JSON bytes using orjson."""
        return orjson.dumps(self.model_dump(mode="json"))

    @classmethod
    def from_json(cls, data: bytes | str) -> Record:
        """Deserialize from JSON."""
        if isinstance(data, str):
            data = data.encode()
        return cls.model_validate(orjson.loads(data))


class SyncAction(str, Enum):
    """Outcome of reconciling one record."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


class SyncResult(BaseModel):
    """Per-record outcome of one reconciliation pass."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: SyncAction
    record_id: str | None = None
    title: str = ""
    detail: str | None = None
    sink_record_id: str | None = None
    error_kind: str | None = None
    attempts: int = Field(default=1, ge=0)


class SyncSummary(BaseModel):
    """Aggregate of a reconciliation pass, safe to surface to users."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    results: list[SyncResult] = Field(default_factory=list)
    deleted: int = Field(default=0, ge=0)
    removed_from_cache: int = Field(default=0, ge=0)
    cache_hits: int = Field(default=0, ge=0)
    cache_misses: int = Field(default=0, ge=0)
    sink_lookups: int = Field(default=0, ge=0)

    def _count(self, action: SyncAction) -> int:
        return sum(1 for r in self.results if r.action == action)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def created(self) -> int:
        return self._count(SyncAction.CREATED)

    @property
    def updated(self) -> int:
        return self._count(SyncAction.UPDATED)

    @property
    def skipped(self) -> int:
        return self._count(SyncAction.SKIPPED)

    @property
    def error_count(self) -> int:
        return self._count(SyncAction.ERROR)

    @property
    def success_count(self) -> int:
        return self.total - self.error_count

    @property
    def success(self) -> bool:
        return self.error_count == 0

    @property
    def cache_hit_rate(self) -> float:
        """Share of lookups answered by the assignment cache in this pass."""
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    def by_record_id(self) -> dict[str, SyncResult]:
        """Results keyed by external id (results are unordered)."""
        return {r.record_id: r for r in self.results if r.record_id is not None}

    def error_details(self) -> list[str]:
        """"title: message" for every failed record."""
        return [
            f"{r.title or r.record_id or 'unknown record'}: {r.detail or 'unknown error'}"
            for r in self.results
            if r.action == SyncAction.ERROR
        ]

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.error_count,
            "success": self.success,
            "deleted": self.deleted,
            "removed_from_cache": self.removed_from_cache,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "sink_lookups": self.sink_lookups,
        }
