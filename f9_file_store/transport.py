"""HTTP transport capability used by the remote backend.

The transport moves bytes and nothing more: it never retries and never
interprets status codes. Timeouts and broken connections surface as
``TransientError``; other client failures surface as ``FatalError``.

``HttpxTransport`` is the default implementation. Tests construct it around an
``httpx.AsyncClient`` that uses ``httpx.MockTransport``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import httpx

from .errors import as_store_error

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)


class TransportResponse:
    """Status, headers and a streaming body of one HTTP exchange.

    The body can be consumed once, either with ``read()`` or by iterating
    ``iter_bytes()``. ``aclose()`` releases the underlying connection and is
    safe to call more than once.
    """

    def __init__(
        self,
        status_code: int,
        headers: Mapping[str, str],
        body: AsyncIterator[bytes],
        *,
        closer: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.status_code = status_code
        self.headers = headers
        self._body = body
        self._closer = closer
        self._closed = False

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield body chunks, translating transport failures."""
        try:
            async for chunk in self._body:
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            raise as_store_error(exc) from exc

    async def read(self) -> bytes:
        """Read the whole body and release the connection."""
        buffer = bytearray()
        try:
            async for chunk in self.iter_bytes():
                buffer += chunk
        finally:
            await self.aclose()
        return bytes(buffer)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._closer is not None:
            await self._closer()


class Transport(Protocol):
    """Capability for performing a single HTTP request."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        content: bytes | None = None,
    ) -> TransportResponse:
        """Send a request and return once the response headers arrive."""
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        ...


class HttpxTransport:
    """Transport backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 60.0,
    ) -> None:
        """Wrap ``client`` or create a private client with ``timeout``.

        A client passed in stays owned by the caller and is not closed by
        ``aclose()``.
        """
        self._owns_client = client is None
        self._client = client if client is not None else httpx.AsyncClient(timeout=timeout)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        content: bytes | None = None,
    ) -> TransportResponse:
        request = self._client.build_request(method, url, headers=headers, content=content)
        logger.debug("%s %s", method, request.url.copy_with(query=None))
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise as_store_error(exc) from exc
        return TransportResponse(
            response.status_code,
            response.headers,
            response.aiter_bytes(),
            closer=response.aclose,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
