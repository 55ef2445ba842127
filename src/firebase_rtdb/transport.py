"""HTTPS transport.

The client talks to the store through the ``Transport`` protocol so tests
and embedding applications can substitute their own. ``HTTPXTransport`` is
the default implementation: one ``httpx.AsyncClient`` shared by CRUD calls
and event streams.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import ClientConfig
from .constants import EVENT_STREAM_CONTENT_TYPE
from .errors import RequestFailed, StreamStalled, TransportError

logger = logging.getLogger(__name__)


def _redact(url: str) -> str:
    """Drop the query string (it may carry the auth token)."""
    return url.split("?", 1)[0]


@runtime_checkable
class Transport(Protocol):
    """Protocol for the HTTPS collaborator.

    - request: one round trip, returns the raw response body
    - open_stream: a streamed GET for server-sent events; the response body
      has not been read yet when it is handed over
    """

    async def request(self, method: str, url: str, body: bytes | None = None) -> bytes:
        """Perform one request.

        Raises:
            TransportError: On network failure or a non-2xx status
        """
        ...

    def open_stream(self, url: str) -> AbstractAsyncContextManager[httpx.Response]:
        """Open a streamed event-stream response."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


class HTTPXTransport:
    """Transport over ``httpx.AsyncClient``."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or ClientConfig()
        self._client = client
        self._owns_client = client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.read_timeout, connect=self.config.connect_timeout),
                follow_redirects=self.config.follow_redirects,
                headers=self.config.headers,
            )
        return self._client

    async def request(self, method: str, url: str, body: bytes | None = None) -> bytes:
        client = self._ensure_client()
        headers = {"Content-Type": "application/json"} if body is not None else None

        logger.debug(f"{method} {_redact(url)}")
        try:
            response = await client.request(method, url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {_redact(url)} timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"{method} {_redact(url)} failed: {e}") from e

        if not response.is_success:
            raise RequestFailed(method, _redact(url), response.status_code, response.text)
        return response.content

    @contextlib.asynccontextmanager
    async def open_stream(self, url: str) -> AsyncIterator[httpx.Response]:
        client = self._ensure_client()
        request = client.build_request(
            "GET",
            url,
            headers={"Accept": EVENT_STREAM_CONTENT_TYPE, "Cache-Control": "no-cache"},
            timeout=httpx.Timeout(self.config.stall_timeout, connect=self.config.connect_timeout),
        )

        logger.debug(f"Opening event stream {_redact(url)}")
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(f"Event stream {_redact(url)} timed out: {e}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Event stream {_redact(url)} failed: {e}") from e

        try:
            yield response
        finally:
            await response.aclose()

    async def close(self) -> None:
        """Close the client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> HTTPXTransport:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


async def stream_chunks(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield body chunks, mapping httpx read failures onto TransportError."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.ReadTimeout as e:
        raise StreamStalled(f"No data received within the read timeout: {e}") from e
    except httpx.TransportError as e:
        raise TransportError(f"Event stream interrupted: {e}") from e
