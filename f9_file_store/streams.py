"""Lazy, single-pass byte streams used for every transfer.

A ``DataStream`` wraps an asynchronous source of byte chunks. Content is only
produced when the consumer pulls it, so memory use stays bounded by one chunk
(or one part, for multipart uploads) regardless of file size.

Key Features:
    - Pull-based async iteration with natural backpressure
    - Single pass: a finished or closed stream cannot be iterated again
    - Explicit release via ``aclose()`` or ``async with``; closing the stream
      runs the producer's cleanup at once (file handles, HTTP responses)
    - Producer failures are translated into the error taxonomy and recorded as
      the terminal ``error`` of the stream

Ownership:
    A stream has exactly one consumer. Passing a stream to ``write`` hands it
    over to the backend, which closes it once the write finishes or fails.
    Streams returned by ``read`` belong to the caller.

Example:

    >>> from f9_file_store import DataStream
    >>> stream = DataStream.from_bytes(b"hello world", chunk_size=4)
    >>> async with stream:
    ...     async for chunk in stream:
    ...         print(chunk)
    b'hell'
    b'o wo'
    b'rld'

"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, BinaryIO

from .errors import FatalError, FileStoreError, as_store_error
from .utils import DEFAULT_CHUNK_SIZE, coerce_to_bytes

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable


class DataStream:
    """Single-consumer asynchronous sequence of byte chunks."""

    def __init__(
        self,
        source: AsyncIterable[bytes],
        *,
        path: Any | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Wrap an asynchronous chunk source.

        Args:
            source: Async iterable (typically an async generator) producing
                bytes. ``str`` chunks are UTF-8 encoded.
            path: Storage path used to annotate translated errors.
            on_close: Optional coroutine function awaited once when the stream
                is released.

        """
        self._source = source
        self._iterator: AsyncIterator[Any] | None = None
        self._path = path
        self._on_close = on_close
        self._closed = False
        self._completed = False
        self._error: FileStoreError | None = None
        self._bytes_transferred = 0

    @classmethod
    def from_bytes(
        cls,
        data: bytes | bytearray | memoryview | str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> DataStream:
        """Return a stream yielding ``data`` in chunks of ``chunk_size``."""
        payload = coerce_to_bytes(data)

        async def _chunks() -> AsyncIterator[bytes]:
            for offset in range(0, len(payload), chunk_size):
                yield payload[offset : offset + chunk_size]

        return cls(_chunks())

    @classmethod
    def from_iterable(cls, iterable: Iterable[Any] | AsyncIterable[Any]) -> DataStream:
        """Return a stream over a synchronous or asynchronous chunk iterable."""
        if hasattr(iterable, "__aiter__"):
            return cls(iterable)  # type: ignore[arg-type]

        async def _chunks() -> AsyncIterator[Any]:
            for chunk in iterable:  # type: ignore[union-attr]
                yield chunk

        return cls(_chunks())

    @classmethod
    def from_file(
        cls,
        fh: BinaryIO,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> DataStream:
        """Return a stream reading a file-like object in a worker thread.

        The file object stays owned by the caller and is not closed.
        """

        async def _chunks() -> AsyncIterator[Any]:
            while True:
                chunk = await asyncio.to_thread(fh.read, chunk_size)
                if not chunk:
                    break
                yield chunk

        return cls(_chunks())

    @classmethod
    def coerce(
        cls,
        source: Any,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> DataStream:
        """Build a stream from any supported data source.

        Accepts an existing DataStream (returned unchanged), bytes-like
        objects, strings, file-like objects with ``read()``, and synchronous or
        asynchronous iterables of chunks.

        Raises:
            TypeError: If the source type is not supported.

        """
        if isinstance(source, DataStream):
            return source
        if isinstance(source, (bytes, bytearray, memoryview, str)):
            return cls.from_bytes(source, chunk_size=chunk_size)
        if hasattr(source, "read"):
            return cls.from_file(source, chunk_size=chunk_size)
        if hasattr(source, "__aiter__") or hasattr(source, "__iter__"):
            return cls.from_iterable(source)
        message = f"Unsupported data source: {type(source).__name__}"
        raise TypeError(message)

    @property
    def closed(self) -> bool:
        """Whether the stream has been released."""
        return self._closed

    @property
    def completed(self) -> bool:
        """Whether the producer reached its normal end."""
        return self._completed

    @property
    def error(self) -> FileStoreError | None:
        """Terminal error that ended the stream early, if any."""
        return self._error

    @property
    def bytes_transferred(self) -> int:
        """Number of bytes handed to the consumer so far."""
        return self._bytes_transferred

    def __aiter__(self) -> DataStream:
        """Return the stream itself; finished streams cannot be restarted."""
        if self._closed:
            raise FatalError.stream_consumed()
        return self

    async def __anext__(self) -> bytes:
        """Pull the next non-empty chunk from the producer."""
        if self._closed:
            raise StopAsyncIteration
        if self._iterator is None:
            self._iterator = self._source.__aiter__()

        while True:
            try:
                chunk = await self._iterator.__anext__()
            except StopAsyncIteration:
                self._completed = True
                await self.aclose()
                raise
            except asyncio.CancelledError:
                await self.aclose()
                raise
            except Exception as exc:
                error = as_store_error(exc, self._path)
                self._error = error
                await self.aclose()
                if error is exc:
                    raise
                raise error from exc

            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            elif not isinstance(chunk, bytes):
                chunk = bytes(chunk)
            if chunk:
                self._bytes_transferred += len(chunk)
                return chunk

    async def aclose(self) -> None:
        """Release the producer and any resources it holds.

        Safe to call repeatedly and at any point of the iteration.
        """
        if self._closed:
            return
        self._closed = True
        target = self._iterator if self._iterator is not None else self._source
        closer = getattr(target, "aclose", None)
        try:
            if closer is not None:
                await closer()
        finally:
            if self._on_close is not None:
                await self._on_close()

    async def __aenter__(self) -> DataStream:
        """Enter a scope that guarantees the stream is released."""
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Release the stream when leaving the scope."""
        await self.aclose()

    async def read_all(self) -> bytes:
        """Consume the remaining content and return it as one bytes object."""
        buffer = bytearray()
        async with self:
            async for chunk in self:
                buffer += chunk
        return bytes(buffer)

    def __repr__(self) -> str:
        """Return a debugging representation with transfer state."""
        state = "closed" if self._closed else "open"
        return f"<DataStream {state} bytes={self._bytes_transferred}>"


async def read_head(stream: DataStream, limit: int) -> tuple[bytes, bool]:
    """Buffer chunks until more than ``limit`` bytes are held or the stream ends.

    Args:
        stream: Stream to pull from. It is left open so iteration can continue.
        limit: Number of bytes that decides between the two outcomes.

    Returns:
        Tuple of (buffered bytes, exhausted). ``exhausted`` is True when the
        stream ended with at most ``limit`` bytes.

    """
    buffer = bytearray()
    async for chunk in stream:
        buffer += chunk
        if len(buffer) > limit:
            return bytes(buffer), False
    return bytes(buffer), True


async def iter_parts(
    chunks: AsyncIterable[bytes],
    part_size: int,
    *,
    initial: bytes = b"",
) -> AsyncIterator[bytes]:
    """Re-chunk a byte stream into parts of exactly ``part_size`` bytes.

    The final part carries the remainder and may be shorter. ``initial`` is
    content already pulled from ``chunks`` that must come first.
    """
    if part_size <= 0:
        message = "part_size must be positive"
        raise ValueError(message)

    buffer = bytearray(initial)
    while len(buffer) >= part_size:
        yield bytes(buffer[:part_size])
        del buffer[:part_size]

    async for chunk in chunks:
        buffer += chunk
        while len(buffer) >= part_size:
            yield bytes(buffer[:part_size])
            del buffer[:part_size]

    if buffer:
        yield bytes(buffer)
