"""
Transport-agnostic header access.

Rate limiters and error classification only ever call ``get(name)`` on
response headers, so any transport can feed them by adapting its header
object to :class:`HeaderSource`.
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

# Source quota headers
HEADER_RATE_LIMIT_REMAINING = "X-Rate-Limit-Remaining"
HEADER_REQUEST_COST = "X-Request-Cost"
HEADER_RETRY_AFTER = "Retry-After"
HEADER_LINK = "Link"


@runtime_checkable
class HeaderSource(Protocol):
    """Minimal read-only header interface."""

    def get(self, name: str) -> str | None:
        """Return the header value or None when absent."""
        ...


class MappingHeaders:
    """Case-insensitive HeaderSource over a plain mapping."""

    def __init__(self, headers: Mapping[str, object] | None = None) -> None:
        self._headers: dict[str, str] = {}
        for key, value in (headers or {}).items():
            self._headers[str(key).lower()] = str(value)

    def get(self, name: str) -> str | None:
        return self._headers.get(name.lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._headers

    def __iter__(self) -> Iterator[str]:
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def __repr__(self) -> str:
        return f"MappingHeaders({sorted(self._headers)})"


EMPTY_HEADERS = MappingHeaders()


def header_float(headers: HeaderSource | None, name: str) -> float | None:
    """Read a numeric header, returning None when missing or malformed."""
    if headers is None:
        return None
    raw = headers.get(name)
    if raw is None:
        return None
    with contextlib.suppress(ValueError):
        return float(raw.strip())
    return None
