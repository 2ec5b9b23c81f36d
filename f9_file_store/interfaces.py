"""Capability contract shared by every storage backend.

Any backend that implements ``StorageBackend`` can be used interchangeably
through ``FileStore``. Two variants ship with the package:

    - LocalBackend: files beneath a root directory on the local filesystem
    - B2Backend: objects in a Backblaze B2 bucket

New backends implement this interface directly rather than subclassing one of
the concrete backends.

Architecture:
    All operations are coroutines. Paths are ``StoragePath`` values (strings
    are accepted and parsed). Content always moves as a ``DataStream`` so that
    file size never dictates memory use. Failures are raised as members of the
    error taxonomy in ``errors``.

Example:

    >>> async def mirror(source: StorageBackend, target: StorageBackend) -> None:
    ...     async for entry in source.list(StoragePath.root()):
    ...         stream = await source.read(entry.path)
    ...         await target.write(entry.path, stream)

See Also:
    - LocalBackend: Local filesystem implementation
    - B2Backend: Remote object storage implementation
    - FileStore: Facade that translates errors and accepts loose inputs

"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .errors import NotFoundError
from .paths import PathLike, StoragePath, require_file, require_prefix

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from .streams import DataStream


@dataclass(frozen=True)
class FileMetadata:
    """Snapshot of metadata for a stored file."""

    path: StoragePath
    size: int
    modified_at: datetime | None = None
    content_hash: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""
        return {
            "path": str(self.path),
            "size": self.size,
            "modified_at": self.modified_at.isoformat() if self.modified_at else None,
            "content_hash": self.content_hash,
        }


class StorageBackend(ABC):
    """Asynchronous interface for file storage providers.

    Implementations must keep every operation scoped to their configured root
    (a directory or a bucket prefix) and must never leak backend-specific
    exceptions to callers.
    """

    backend_type: str = "abstract"

    @abstractmethod
    def list(self, prefix: PathLike = "") -> AsyncIterator[FileMetadata]:
        """Enumerate files whose path starts with ``prefix``.

        Listing descends without a depth limit and yields entries ordered by
        ``StoragePath`` ordering. Directories are not reported.

        Args:
            prefix: Directory-like or partial-name prefix. The root lists
                everything.

        Yields:
            FileMetadata for each matching file.

        """

    @abstractmethod
    async def stat(self, path: PathLike) -> FileMetadata:
        """Return metadata for a single file.

        Raises:
            NotFoundError: If no file exists at ``path``.

        """

    @abstractmethod
    async def read(self, path: PathLike) -> DataStream:
        """Open a file for streaming.

        The existence check happens before the stream is returned, so a
        missing file raises ``NotFoundError`` here and not on first pull.

        Returns:
            A DataStream owned by the caller.

        """

    @abstractmethod
    async def write(self, path: PathLike, stream: DataStream) -> FileMetadata:
        """Replace the file at ``path`` with the content of ``stream``.

        The write is atomic for readers: they observe either the previous
        content or the complete new content. The stream is consumed fully
        and closed in every case.

        Returns:
            FileMetadata describing the stored file.

        """

    @abstractmethod
    async def delete(self, path: PathLike) -> None:
        """Remove the file at ``path``.

        Raises:
            NotFoundError: If no file exists at ``path``.

        """

    async def delete_prefix(self, prefix: PathLike) -> int:
        """Remove every file beneath the directory-like ``prefix``.

        ``"logs"`` is treated as ``"logs/"``, so siblings such as
        ``logs-old/`` are untouched. A prefix with no files is not an error.

        Returns:
            Number of files removed.

        Raises:
            InvalidPathError: If ``prefix`` is the storage root.

        """
        target = require_prefix(prefix)
        paths = [entry.path async for entry in self.list(target)]
        removed = 0
        for path in paths:
            try:
                await self.delete(path)
            except NotFoundError:
                continue
            removed += 1
        return removed

    async def copy(self, src: PathLike, dst: PathLike) -> FileMetadata:
        """Copy ``src`` to ``dst`` by streaming it through this backend."""
        source = require_file(src)
        target = require_file(dst)
        stream = await self.read(source)
        return await self.write(target, stream)

    async def move(self, src: PathLike, dst: PathLike) -> FileMetadata:
        """Copy ``src`` to ``dst`` then delete the source."""
        source = require_file(src)
        target = require_file(dst)
        if source == target:
            return await self.stat(source)
        metadata = await self.copy(source, target)
        await self.delete(source)
        return metadata

    async def aclose(self) -> None:
        """Release sessions and connections held by the backend."""

    async def __aenter__(self) -> StorageBackend:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
