"""
Source (LMS) REST client.

Every page fetch is one call through the leaky bucket limiter. Quota headers
are folded into the limiter before the response is unwrapped, so a
throttling 403 still updates the local bucket model.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from assignsync.connectors.headers import HEADER_LINK

if TYPE_CHECKING:
    from assignsync.connectors.headers import HeaderSource
    from assignsync.connectors.http import HttpResponse, HttpTransport
    from assignsync.connectors.leaky_bucket import LeakyBucketLimiter

logger = logging.getLogger(__name__)

_LINK_PART = re.compile(r'<([^>]+)>;\s*rel="([^"]+)"')

DEFAULT_PAGE_SIZE = 100
MAX_COURSE_PAGES = 10
MAX_ASSIGNMENT_PAGES = 50


def parse_link_header(value: str | None) -> dict[str, str]:
    """Parse an RFC 8288 Link header into {rel: url}."""
    if not value:
        return {}
    links: dict[str, str] = {}
    for part in value.split(","):
        match = _LINK_PART.search(part)
        if match:
            links[match.group(2)] = match.group(1)
    return links


def next_page_url(headers: HeaderSource | None) -> str | None:
    if headers is None:
        return None
    return parse_link_header(headers.get(HEADER_LINK)).get("next")


class SourceClient:
    """
    Paginated, rate-limited reader for the Source API.

    Usage:
        client = SourceClient(transport, limiter)
        courses = await client.list_courses()
    """

    def __init__(self, transport: HttpTransport, limiter: LeakyBucketLimiter) -> None:
        self._transport = transport
        self._limiter = limiter

    @property
    def limiter(self) -> LeakyBucketLimiter:
        return self._limiter

    async def _get(self, path_or_url: str, params: dict[str, Any] | None = None) -> HttpResponse:
        async def operation() -> HttpResponse:
            result = await self._transport.request("GET", path_or_url, params=params)
            if result.value is not None:
                self._limiter.update_from_headers(result.value.headers)
            elif result.error is not None and result.error.headers is not None:
                self._limiter.update_from_headers(result.error.headers)
            return result.unwrap()

        return await self._limiter.execute(operation)

    async def list_paginated(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        max_pages: int = MAX_COURSE_PAGES,
    ) -> list[Any]:
        """
        Fetch every page of a list endpoint by following Link rel="next".

        Args:
            path: Endpoint path for the first page.
            params: Query parameters for the first page (later pages carry
                their own in the next link).
            max_pages: Upper bound on pages fetched.

        Returns:
            Concatenated items from all pages.
        """
        items: list[Any] = []
        response = await self._get(path, params)
        items.extend(response.data or [])
        pages = 1

        next_url = next_page_url(response.headers)
        while next_url and pages < max_pages:
            response = await self._get(next_url)
            items.extend(response.data or [])
            pages += 1
            next_url = next_page_url(response.headers)

        if next_url:
            logger.warning(
                "source_pagination_truncated",
                extra={"endpoint": path, "pages": pages, "max_pages": max_pages},
            )
        return items

    async def list_courses(self) -> list[dict[str, Any]]:
        """Active enrolments for the token's user."""
        return await self.list_paginated(
            "/courses",
            {"enrollment_state": "active", "per_page": DEFAULT_PAGE_SIZE},
            max_pages=MAX_COURSE_PAGES,
        )

    async def list_assignments(self, course_id: str | int) -> list[dict[str, Any]]:
        """Assignments of one course, each with the caller's submission."""
        return await self.list_paginated(
            f"/courses/{course_id}/assignments",
            {"per_page": DEFAULT_PAGE_SIZE, "order_by": "due_at", "include[]": "submission"},
            max_pages=MAX_ASSIGNMENT_PAGES,
        )

    async def close(self) -> None:
        await self._transport.close()
