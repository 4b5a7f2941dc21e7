"""
Sink (Notion-style database) REST client.

All calls go through the sliding-window limiter. Records live in a data
source that belongs to the configured database; its id is resolved once
and cached on the client.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from assignsync.connectors.errors import ApiError, ErrorKind

if TYPE_CHECKING:
    from assignsync.connectors.http import HttpTransport
    from assignsync.connectors.sliding_window import SlidingWindowLimiter

logger = logging.getLogger(__name__)

SINK_BASE_URL = "https://api.notion.com/v1"
SINK_API_VERSION = "2025-09-03"
SINK_VERSION_HEADER = "Notion-Version"

EXTERNAL_ID_PROPERTY = "Canvas ID"
TITLE_PROPERTY = "Assignment Name"

DEFAULT_QUERY_PAGE_SIZE = 100
MAX_QUERY_PAGES = 50


@dataclass(frozen=True)
class QueryPage:
    """One page of query results."""

    results: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


class SinkClient:
    """
    Rate-limited client for the Sink database API.

    Usage:
        client = SinkClient(transport, limiter, database_id)
        page = await client.find_by_external_id("12345")
        await client.update_record(page["id"], properties)
    """

    def __init__(
        self,
        transport: HttpTransport,
        limiter: SlidingWindowLimiter,
        database_id: str,
    ) -> None:
        if not database_id:
            raise ValueError("database_id is required")
        self._transport = transport
        self._limiter = limiter
        self._database_id = database_id
        self._data_source_id: str | None = None
        self._resolve_lock = asyncio.Lock()

    @property
    def limiter(self) -> SlidingWindowLimiter:
        return self._limiter

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
    ) -> Any:
        async def operation() -> Any:
            result = await self._transport.request(method, path, json=json)
            return result.unwrap().data

        return await self._limiter.execute(operation)

    async def get_database(self) -> dict[str, Any]:
        return await self._call("GET", f"/databases/{self._database_id}")

    async def resolve_data_source_id(self) -> str:
        """Return the database's first data source id (cached)."""
        async with self._resolve_lock:
            if self._data_source_id is not None:
                return self._data_source_id

            database = await self.get_database()
            sources = (database or {}).get("data_sources") or []
            if not sources or not sources[0].get("id"):
                raise ApiError.from_kind(
                    ErrorKind.VALIDATION,
                    "Sink database has no data sources",
                    service="sink",
                )
            self._data_source_id = str(sources[0]["id"])
            logger.debug(
                "sink_data_source_resolved", extra={"data_source_id": self._data_source_id}
            )
            return self._data_source_id

    async def query(
        self,
        query_filter: dict[str, Any] | None = None,
        *,
        start_cursor: str | None = None,
        page_size: int | None = None,
    ) -> QueryPage:
        """Query one page of records matching ``query_filter``."""
        data_source_id = await self.resolve_data_source_id()
        body: dict[str, Any] = {}
        if query_filter:
            body["filter"] = query_filter
        if start_cursor:
            body["start_cursor"] = start_cursor
        if page_size:
            body["page_size"] = page_size

        data = await self._call("POST", f"/data_sources/{data_source_id}/query", json=body) or {}
        return QueryPage(
            results=list(data.get("results") or []),
            has_more=bool(data.get("has_more")),
            next_cursor=data.get("next_cursor"),
        )

    async def query_all(
        self,
        query_filter: dict[str, Any] | None = None,
        *,
        max_pages: int = MAX_QUERY_PAGES,
    ) -> list[dict[str, Any]]:
        """Follow has_more/next_cursor until exhausted or max_pages is hit."""
        results: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(max_pages):
            page = await self.query(
                query_filter, start_cursor=cursor, page_size=DEFAULT_QUERY_PAGE_SIZE
            )
            results.extend(page.results)
            if not page.has_more or not page.next_cursor:
                break
            cursor = page.next_cursor
        return results

    async def find_by_external_id(self, external_id: str) -> dict[str, Any] | None:
        """Return the live (non-archived) record mapped to ``external_id``."""
        page = await self.query(
            {"property": EXTERNAL_ID_PROPERTY, "rich_text": {"equals": str(external_id)}},
            page_size=1,
        )
        for result in page.results:
            if not result.get("archived") and not result.get("in_trash"):
                return result
        return None

    async def find_by_title(self, title: str) -> dict[str, Any] | None:
        """Fallback lookup for records created before the id property existed."""
        page = await self.query(
            {"property": TITLE_PROPERTY, "title": {"equals": title}},
            page_size=1,
        )
        for result in page.results:
            if not result.get("archived") and not result.get("in_trash"):
                return result
        return None

    async def create_record(self, properties: dict[str, Any]) -> dict[str, Any]:
        data_source_id = await self.resolve_data_source_id()
        body = {
            "parent": {"type": "data_source_id", "data_source_id": data_source_id},
            "properties": properties,
        }
        return await self._call("POST", "/pages", json=body)

    async def get_record(self, record_id: str) -> dict[str, Any]:
        return await self._call("GET", f"/pages/{record_id}")

    async def update_record(self, record_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        return await self._call("PATCH", f"/pages/{record_id}", json={"properties": properties})

    async def archive_record(self, record_id: str) -> dict[str, Any]:
        return await self._call("PATCH", f"/pages/{record_id}", json={"archived": True})

    async def close(self) -> None:
        await self._transport.close()
