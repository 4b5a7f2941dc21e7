"""
Error taxonomy for Source and Sink API calls.

The transport never raises for HTTP failures. It returns a
:class:`TransportResult` whose error carries an :class:`ErrorKind`, and the
rate limiters and retry helper switch on that kind instead of inspecting
status codes or message substrings.

Classification:
- 429 -> THROTTLED (Retry-After honoured)
- 409 -> CONFLICT
- 5xx -> TRANSIENT_SERVER
- 401 -> AUTH
- 403 -> THROTTLED when the Source signals an exhausted quota, else AUTH
- 404 -> NOT_FOUND
- other 4xx -> VALIDATION
- anything else (including network failures) -> UNKNOWN
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Generic, TypeVar

from assignsync.connectors.headers import (
    HEADER_RATE_LIMIT_REMAINING,
    HEADER_RETRY_AFTER,
    header_float,
)

if TYPE_CHECKING:
    from assignsync.connectors.headers import HeaderSource

T = TypeVar("T")

# Body phrases the Source uses on a throttling 403. Matched case-insensitively.
_THROTTLE_BODY_PATTERN = re.compile(
    r"rate limit|throttl|limit exceeded|too many requests",
    re.IGNORECASE,
)

# Max characters of a remote error body kept in an error message
MAX_BODY_CHARS = 200


class ErrorKind(str, Enum):
    """Classification of a failed remote call."""

    THROTTLED = "THROTTLED"
    CONFLICT = "CONFLICT"
    TRANSIENT_SERVER = "TRANSIENT_SERVER"
    AUTH = "AUTH"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    UNKNOWN = "UNKNOWN"


class ApiError(Exception):
    """Base error for a failed Source or Sink call.

    Messages are built from status codes and truncated response bodies only;
    request headers (and therefore tokens) never reach them.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        service: str = "",
        retry_after_ms: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.service = service
        self.retry_after_ms = retry_after_ms
        # Filled in by the retry helper once retries are exhausted
        self.attempts = 1
        # Response headers of the failed call, when there was a response
        self.headers: HeaderSource | None = None

    @classmethod
    def from_kind(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        status: int | None = None,
        service: str = "",
        retry_after_ms: int | None = None,
    ) -> ApiError:
        """Build the subclass matching ``kind``."""
        error_cls = _KIND_TO_CLASS.get(kind, UnknownError)
        return error_cls(
            message,
            status=status,
            service=service,
            retry_after_ms=retry_after_ms,
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value}, status={self.status}, "
            f"service={self.service!r}, message={self.message!r})"
        )


class ThrottledError(ApiError):
    """Remote signalled an explicit rate limit."""

    kind = ErrorKind.THROTTLED


class ConflictError(ApiError):
    """Optimistic-concurrency write conflict (409)."""

    kind = ErrorKind.CONFLICT


class TransientServerError(ApiError):
    """Remote 5xx."""

    kind = ErrorKind.TRANSIENT_SERVER


class AuthError(ApiError):
    """Invalid credentials or missing permission."""

    kind = ErrorKind.AUTH


class NotFoundError(ApiError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(ApiError):
    """Request rejected as malformed (4xx other than the above)."""

    kind = ErrorKind.VALIDATION


class UnknownError(ApiError):
    """Network failure, timeout, or an unclassifiable response."""

    kind = ErrorKind.UNKNOWN


_KIND_TO_CLASS: dict[ErrorKind, type[ApiError]] = {
    ErrorKind.THROTTLED: ThrottledError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.TRANSIENT_SERVER: TransientServerError,
    ErrorKind.AUTH: AuthError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.UNKNOWN: UnknownError,
}


def is_throttling_403(body: str, headers: HeaderSource | None = None) -> bool:
    """Tell a quota-exhausted 403 apart from a permission-denied 403.

    The remaining-quota header is checked first because it is authoritative;
    the body text is only a fallback for responses that omit it.
    """
    remaining = header_float(headers, HEADER_RATE_LIMIT_REMAINING)
    if remaining is not None and remaining <= 0:
        return True
    return bool(body) and _THROTTLE_BODY_PATTERN.search(body) is not None


def classify_status(
    status: int,
    body: str = "",
    headers: HeaderSource | None = None,
) -> ErrorKind:
    """Map an HTTP status (plus body/headers for 403) to an ErrorKind."""
    if status == 429:
        return ErrorKind.THROTTLED
    if status == 409:
        return ErrorKind.CONFLICT
    if 500 <= status <= 599:
        return ErrorKind.TRANSIENT_SERVER
    if status == 401:
        return ErrorKind.AUTH
    if status == 403:
        return ErrorKind.THROTTLED if is_throttling_403(body, headers) else ErrorKind.AUTH
    if status == 404:
        return ErrorKind.NOT_FOUND
    if 400 <= status <= 499:
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN


def parse_retry_after_ms(headers: HeaderSource | None) -> int | None:
    """Convert a Retry-After header (seconds) to milliseconds."""
    seconds = header_float(headers, HEADER_RETRY_AFTER)
    if seconds is None or seconds < 0:
        return None
    return int(seconds * 1000)


def error_from_response(
    status: int,
    body: str,
    headers: HeaderSource | None,
    *,
    service: str,
) -> ApiError:
    """Build a classified ApiError from a failed HTTP response."""
    kind = classify_status(status, body, headers)
    snippet = (body or "").strip()[:MAX_BODY_CHARS]
    message = f"{service} API error {status}"
    if snippet:
        message = f"{message}: {snippet}"
    error = ApiError.from_kind(
        kind,
        message,
        status=status,
        service=service,
        retry_after_ms=parse_retry_after_ms(headers),
    )
    error.headers = headers
    return error


@dataclass(frozen=True)
class TransportResult(Generic[T]):
    """Either a value or a classified error, never both."""

    value: T | None = None
    error: ApiError | None = None

    @classmethod
    def success(cls, value: T) -> TransportResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: ApiError) -> TransportResult[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
