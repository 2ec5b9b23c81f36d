"""Backblaze B2 backend implementation of StorageBackend.

Objects live in one bucket, optionally beneath a key prefix. Each
``StoragePath`` maps to the flat key formed by joining its segments with
``/``; directory-like paths are only meaningful as listing prefixes.

Key Features:
    - Lazy authorization with single-flight refresh of expired tokens
    - Single-request uploads up to ``small_file_threshold`` with SHA-1
      verification
    - Multipart uploads for larger content, cancelled server side on failure
    - Resumable downloads (``Range`` requests) with end-to-end SHA-1
      verification
    - Bounded retries with exponential backoff for transient failures

Storage Mechanism:
    Writes replace the visible version of a key; older versions are left to
    the bucket's lifecycle rules. ``delete`` removes every version so the key
    disappears completely. ``delete_prefix`` does the same for every file
    listed beneath a prefix.

Example:

    >>> from f9_file_store import B2Backend, B2Config, DataStream
    >>> config = B2Config(key_id="...", key="...", bucket="reports")
    >>> async with await B2Backend.connect(config) as backend:
    ...     await backend.write("2024/q1.csv", DataStream.from_bytes(b"..."))
    ...     async for entry in backend.list("2024/"):
    ...         print(entry.path, entry.size)

See Also:
    - B2Api: Request-level client
    - upload_large_file: Multipart upload state machine
    - LocalBackend: Local filesystem alternative

"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .b2_api import B2Api
from .config import B2_MAX_PART_SIZE, B2Config
from .errors import FatalError, IntegrityError, InvalidPathError, NotFoundError, TransientError
from .interfaces import FileMetadata, StorageBackend
from .multipart import upload_large_file
from .paths import PathLike, StoragePath, require_file
from .streams import DataStream, iter_parts, read_head
from .transport import HttpxTransport

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

    from .session import B2Session
    from .transport import Transport, TransportResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _RemoteEntry:
    metadata: FileMetadata
    file_id: str


class _OpenDownload:
    """HTTP response currently feeding a download; replaced on each resume."""

    def __init__(self, response: TransportResponse) -> None:
        self.response = response

    async def aclose(self) -> None:
        await self.response.aclose()


class B2Backend(StorageBackend):
    """Backend implementation backed by a Backblaze B2 bucket."""

    backend_type = "b2"

    def __init__(
        self,
        config: B2Config,
        *,
        transport: Transport | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialise the backend without contacting the service.

        Args:
            config: Credentials, bucket and tuning settings.
            transport: HTTP transport. Defaults to ``HttpxTransport`` with the
                configured timeout, which the backend then owns and closes.
            clock: Monotonic clock used for token expiry (tests).
            sleep: Awaitable used for retry backoff (tests).

        """
        self._config = config
        self._owns_transport = transport is None
        self._transport = transport if transport is not None else HttpxTransport(timeout=config.timeout)
        self._api = B2Api(config, self._transport, clock=clock, sleep=sleep)
        self._prefix = StoragePath.parse(config.prefix).as_prefix()

    @classmethod
    def from_connection_info(
        cls,
        connection_info: Mapping[str, Any],
        *,
        transport: Transport | None = None,
    ) -> B2Backend:
        return cls(B2Config.from_mapping(connection_info), transport=transport)

    @classmethod
    async def connect(cls, config: B2Config, **kwargs: Any) -> B2Backend:
        """Create a backend and verify the credentials and bucket right away."""
        backend = cls(config, **kwargs)
        try:
            await backend._api.session.get()
            await backend._api.bucket_id()
        except BaseException:
            await backend.aclose()
            raise
        return backend

    @property
    def config(self) -> B2Config:
        return self._config

    @property
    def session(self) -> B2Session:
        return self._api.session

    def _key(self, path: StoragePath) -> str:
        return self._prefix.join(path).key

    def _path_for_key(self, key: str) -> StoragePath | None:
        """Map an object key back to a path, or None if it is not addressable."""
        try:
            parsed = StoragePath.parse(key)
        except InvalidPathError:
            return None
        if str(parsed) != key or parsed.is_directory:
            return None
        if not self._prefix.is_root:
            if not parsed.has_prefix(self._prefix):
                return None
            parsed = parsed.relative_to(self._prefix)
        return parsed

    def _entry_from_info(self, info: Mapping[str, Any], path: StoragePath) -> _RemoteEntry:
        try:
            size = int(info["contentLength"])
            file_id = str(info["fileId"])
        except (KeyError, TypeError, ValueError) as exc:
            raise FatalError.malformed_response("file info", path=path) from exc
        timestamp = info.get("uploadTimestamp")
        modified_at = (
            datetime.fromtimestamp(int(timestamp) / 1000, tz=timezone.utc) if timestamp is not None else None
        )
        metadata = FileMetadata(
            path=path,
            size=size,
            modified_at=modified_at,
            content_hash=_usable_sha1(info.get("contentSha1")),
        )
        return _RemoteEntry(metadata=metadata, file_id=file_id)

    async def list(self, prefix: PathLike = "") -> AsyncIterator[FileMetadata]:
        """Yield files whose key starts with ``prefix``.

        Every page is fetched (and retried) before the first entry is
        yielded, so results are returned fully sorted by path.
        """
        target = StoragePath.parse(prefix)
        key_prefix = str(self._prefix.join(target))

        entries: list[FileMetadata] = []
        start: str | None = None
        pages = 0
        while True:
            page = await self._api.list_file_names(
                prefix=key_prefix,
                start_file_name=start,
                max_file_count=self._config.list_page_size,
                path=target,
            )
            pages += 1
            for info in page.get("files") or []:
                if info.get("action", "upload") != "upload":
                    continue
                entry_path = self._path_for_key(str(info.get("fileName", "")))
                if entry_path is None or not (target.is_root or entry_path.has_prefix(target)):
                    continue
                entries.append(self._entry_from_info(info, entry_path).metadata)
            start = page.get("nextFileName")
            if not start:
                break

        logger.debug("Listed %d files under %r in %d pages", len(entries), key_prefix, pages)
        entries.sort(key=lambda metadata: metadata.path)
        for metadata in entries:
            yield metadata

    async def _lookup(self, path: StoragePath) -> _RemoteEntry:
        key = self._key(path)
        page = await self._api.list_file_names(prefix=key, start_file_name=key, max_file_count=1, path=path)
        for info in page.get("files") or []:
            if info.get("fileName") == key and info.get("action", "upload") == "upload":
                return self._entry_from_info(info, path)
        raise NotFoundError(path)

    async def stat(self, path: PathLike) -> FileMetadata:
        """Return metadata for the visible version of a key."""
        target = require_file(path)
        entry = await self._lookup(target)
        return entry.metadata

    async def read(self, path: PathLike) -> DataStream:
        """Open a download; a missing key raises before the stream exists."""
        target = require_file(path)
        key = self._key(target)
        download = _OpenDownload(await self._api.download(key, path=target))
        return DataStream(self._download_chunks(key, target, download), path=target, on_close=download.aclose)

    async def _download_chunks(
        self,
        key: str,
        path: StoragePath,
        download: _OpenDownload,
    ) -> AsyncIterator[bytes]:
        response = download.response
        expected_sha1 = _usable_sha1(response.headers.get("x-bz-content-sha1"))
        expected_length = _optional_int(response.headers.get("content-length"))
        file_id = response.headers.get("x-bz-file-id")
        hasher = hashlib.sha1() if expected_sha1 else None
        offset = 0
        skip = 0
        resumes = 0

        try:
            while True:
                try:
                    async for chunk in download.response.iter_bytes():
                        if skip:
                            if len(chunk) <= skip:
                                skip -= len(chunk)
                                continue
                            chunk = chunk[skip:]
                            skip = 0
                        offset += len(chunk)
                        if hasher is not None:
                            hasher.update(chunk)
                        yield chunk
                    break
                except TransientError as exc:
                    await download.aclose()
                    if expected_length is not None and offset == expected_length:
                        logger.debug("Connection for %s dropped after the last byte: %s", key, exc)
                        break
                    if resumes >= self._config.max_resume_attempts:
                        raise
                    resumes += 1
                    logger.warning(
                        "Download of %s interrupted at byte %d, resuming (%d/%d): %s",
                        key,
                        offset,
                        resumes,
                        self._config.max_resume_attempts,
                        exc,
                    )
                    download.response = await self._api.download(key, offset=offset, path=path)
                    resumed_id = download.response.headers.get("x-bz-file-id")
                    if file_id and resumed_id and resumed_id != file_id:
                        message = "File was replaced during download"
                        raise IntegrityError(message, path=path) from exc
                    # A server that ignores Range resends the whole file.
                    skip = offset if download.response.status_code == 200 else 0
        finally:
            await download.aclose()

        if expected_length is not None and offset != expected_length:
            raise IntegrityError.size_mismatch(path, expected=expected_length, actual=offset)
        if hasher is not None and hasher.hexdigest() != expected_sha1:
            raise IntegrityError.checksum_mismatch(path, expected=str(expected_sha1), actual=hasher.hexdigest())

    async def _part_size(self) -> int:
        authorization = await self._api.session.get()
        minimum = authorization.absolute_minimum_part_size or 0
        if minimum > self._config.part_size:
            logger.debug("Raising part size from %d to the service minimum %d", self._config.part_size, minimum)
        return max(self._config.part_size, minimum)

    async def write(self, path: PathLike, stream: DataStream) -> FileMetadata:
        """Upload ``stream`` as the new visible version of ``path``.

        Content up to ``small_file_threshold`` bytes goes out in one request.
        Anything larger becomes a multipart upload, unless it fits in a single
        part, in which case one request is still used.
        """
        target = require_file(path)
        key = self._key(target)
        async with stream:
            head, exhausted = await read_head(stream, self._config.small_file_threshold)
            if exhausted:
                info = await self._upload_small(key, head, target)
            else:
                parts = iter_parts(stream, await self._part_size(), initial=head)
                try:
                    first = await parts.__anext__()
                    second = await _next_or_none(parts)
                    if second is None:
                        info = await self._upload_small(key, first, target)
                    else:
                        info = await upload_large_file(
                            self._api,
                            key,
                            _prepend(parts, first, second),
                            path=target,
                        )
                finally:
                    await parts.aclose()

        return self._entry_from_info(info, target).metadata

    async def _upload_small(self, key: str, data: bytes, path: StoragePath) -> dict[str, Any]:
        sha1 = hashlib.sha1(data).hexdigest()
        info = await self._api.upload_file(key, data, sha1, path=path)
        returned = info.get("contentSha1")
        if returned != sha1:
            raise IntegrityError.checksum_mismatch(path, expected=sha1, actual=str(returned))
        if info.get("contentLength") != len(data):
            raise IntegrityError.size_mismatch(path, expected=len(data), actual=info.get("contentLength"))
        return info

    async def delete(self, path: PathLike) -> None:
        """Delete every version of the key."""
        target = require_file(path)
        key = self._key(target)
        versions = await self._versions(key, target)
        if not versions or versions[0][1] != "upload":
            raise NotFoundError(target)
        for file_id, _action in versions:
            try:
                await self._api.delete_file_version(key, file_id, path=target)
            except NotFoundError:
                logger.debug("Version %s of %s already deleted", file_id, key)
        logger.debug("Deleted %d versions of %s", len(versions), key)

    async def _versions(self, key: str, path: StoragePath) -> list[tuple[str, str]]:
        """Return ``(file_id, action)`` for every version of ``key``, newest first."""
        versions: list[tuple[str, str]] = []
        start_name: str | None = key
        start_id: str | None = None
        while True:
            page = await self._api.list_file_versions(
                prefix=key,
                start_file_name=start_name,
                start_file_id=start_id,
                max_file_count=self._config.list_page_size,
                path=path,
            )
            for info in page.get("files") or []:
                if info.get("fileName") == key:
                    versions.append((str(info["fileId"]), str(info.get("action", "upload"))))
            start_name = page.get("nextFileName")
            start_id = page.get("nextFileId")
            if start_name != key:
                break
        return versions

    async def copy(self, src: PathLike, dst: PathLike) -> FileMetadata:
        """Copy server side; content above the copy limit streams through."""
        source = require_file(src)
        target = require_file(dst)
        entry = await self._lookup(source)
        if source == target:
            return entry.metadata
        if entry.metadata.size > B2_MAX_PART_SIZE:
            return await super().copy(source, target)
        info = await self._api.copy_file(entry.file_id, self._key(target), path=target)
        copied = self._entry_from_info(info, target)
        if copied.metadata.content_hash is None and entry.metadata.content_hash is not None:
            return replace(copied.metadata, content_hash=entry.metadata.content_hash)
        return copied.metadata

    async def aclose(self) -> None:
        """Drop the session and close the transport when the backend owns it."""
        await self._api.aclose()
        if self._owns_transport:
            await self._transport.aclose()


def _usable_sha1(value: Any) -> str | None:
    """Return a real hex digest, ignoring ``none`` and unverified markers."""
    if not value or not isinstance(value, str):
        return None
    if value == "none" or value.startswith("unverified:"):
        return None
    return value.lower()


def _optional_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


async def _next_or_none(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _prepend(rest: AsyncIterator[bytes], *head: bytes) -> AsyncIterator[bytes]:
    for chunk in head:
        yield chunk
    async for chunk in rest:
        yield chunk
