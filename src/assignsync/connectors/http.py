"""
aiohttp transport shared by the Source and Sink clients.

Requests never raise for HTTP or network failures: every call returns a
TransportResult holding either an HttpResponse or a classified ApiError.
The bearer token lives only in the session headers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

import aiohttp
import orjson

from assignsync.connectors.errors import (
    ApiError,
    ErrorKind,
    TransportResult,
    error_from_response,
)
from assignsync.connectors.headers import MappingHeaders

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    """Decoded successful response."""

    status: int
    data: Any
    headers: MappingHeaders = field(default_factory=MappingHeaders)


class HttpTransport:
    """
    Async JSON-over-HTTP transport for one remote service.

    Usage:
        transport = HttpTransport("https://api.example.com/v1", token, service="sink")
        result = await transport.request("GET", "/databases/abc")
        data = result.unwrap().data
        await transport.close()
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        service: str,
        timeout_s: float = 30.0,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self.service = service
        self._timeout_s = timeout_s
        self._extra_headers = dict(extra_headers or {})
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/json",
                **self._extra_headers,
            }
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=headers)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    def _resolve_url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self._base_url}/{path_or_url.lstrip('/')}"

    async def request(
        self,
        method: str,
        path_or_url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> TransportResult[HttpResponse]:
        """
        Perform one HTTP request.

        Args:
            method: HTTP method.
            path_or_url: Path relative to base_url, or an absolute URL
                (pagination links are absolute).
            params: Query parameters.
            json: JSON-serialisable request body.

        Returns:
            TransportResult with the decoded response or a classified error.
        """
        url = self._resolve_url(path_or_url)
        endpoint = urlsplit(url).path
        session = await self._get_session()
        body = orjson.dumps(json) if json is not None else None
        headers = {"Content-Type": "application/json"} if body is not None else None

        try:
            async with session.request(
                method, url, params=params, data=body, headers=headers
            ) as response:
                response_headers = MappingHeaders(response.headers)
                text = await response.text()

                if response.status >= 400:
                    error = error_from_response(
                        response.status, text, response_headers, service=self.service
                    )
                    logger.warning(
                        "http_error_response",
                        extra={
                            "service": self.service,
                            "method": method,
                            "endpoint": endpoint,
                            "status": response.status,
                            "error_kind": error.kind.value,
                        },
                    )
                    return TransportResult.failure(error)

                data = orjson.loads(text) if text.strip() else None
                return TransportResult.success(
                    HttpResponse(status=response.status, data=data, headers=response_headers)
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "http_request_failed",
                extra={
                    "service": self.service,
                    "method": method,
                    "endpoint": endpoint,
                    "error_type": type(e).__name__,
                },
            )
            return TransportResult.failure(
                ApiError.from_kind(
                    ErrorKind.UNKNOWN,
                    f"{self.service} request failed: {type(e).__name__}",
                    service=self.service,
                )
            )
        except orjson.JSONDecodeError:
            return TransportResult.failure(
                ApiError.from_kind(
                    ErrorKind.UNKNOWN,
                    f"{self.service} returned invalid JSON",
                    service=self.service,
                )
            )
