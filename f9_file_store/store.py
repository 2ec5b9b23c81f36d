"""Unified facade over a single storage backend.

``FileStore`` is the one component callers use. It forwards each operation to
the backend chosen at construction and guarantees that only members of the
error taxonomy escape: ``OSError``, ``httpx`` failures and any other foreign
exception are translated on the way out.

Example:

    >>> import asyncio
    >>> from f9_file_store import FileStore
    >>>
    >>> async def main():
    ...     async with FileStore.from_uri("file:///data/files") as store:
    ...         await store.write("notes/today.txt", "Hello!")
    ...         print(await store.read_bytes("notes/today.txt"))
    ...         async for entry in store.list("notes/"):
    ...             print(entry.path, entry.size)
    >>>
    >>> asyncio.run(main())

Swapping ``file:///data/files`` for ``b2://bucket?key_id=...&key=...`` is the
only change needed to run the same code against remote storage.
"""

from __future__ import annotations

from contextlib import aclosing
from typing import TYPE_CHECKING, Any

from .errors import NotFoundError, translate_errors
from .factory import resolve_backend
from .paths import StoragePath, require_file
from .streams import DataStream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from .config import B2Config
    from .interfaces import FileMetadata, StorageBackend
    from .paths import PathLike
    from .transport import Transport


class FileStore:
    """Backend-agnostic asynchronous file storage."""

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    @classmethod
    def local(cls, root: str | Path, **options: Any) -> FileStore:
        """Create a store over ``LocalBackend`` (options as for its constructor)."""
        from .local import LocalBackend

        with translate_errors(root):
            return cls(LocalBackend(root, **options))

    @classmethod
    def b2(
        cls,
        config: B2Config | None = None,
        *,
        transport: Transport | None = None,
        **options: Any,
    ) -> FileStore:
        """Create a store over ``B2Backend``.

        Pass either a ready ``B2Config`` or its fields as keyword arguments.
        """
        from .b2_backend import B2Backend
        from .config import B2Config

        if config is None:
            config = B2Config(**options)
        elif options:
            message = "Pass either a B2Config or keyword options, not both"
            raise TypeError(message)
        return cls(B2Backend(config, transport=transport))

    @classmethod
    def from_uri(cls, uri: str) -> FileStore:
        """Create a store from a backend URI (see ``factory``)."""
        return cls(resolve_backend(uri))

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def backend_type(self) -> str:
        return self._backend.backend_type

    async def list(self, prefix: PathLike = "") -> AsyncIterator[FileMetadata]:
        """Yield files beneath ``prefix`` in path order."""
        with translate_errors(prefix):
            parsed = StoragePath.parse(prefix)
            async with aclosing(self._backend.list(parsed)) as entries:
                async for entry in entries:
                    yield entry

    async def list_all(self, prefix: PathLike = "") -> list[FileMetadata]:
        """Collect the complete listing of ``prefix``."""
        return [entry async for entry in self.list(prefix)]

    async def stat(self, path: PathLike) -> FileMetadata:
        with translate_errors(path):
            return await self._backend.stat(require_file(path))

    async def exists(self, path: PathLike) -> bool:
        """Return True when a file exists at ``path``."""
        try:
            await self.stat(path)
        except NotFoundError:
            return False
        return True

    async def read(self, path: PathLike) -> DataStream:
        """Open ``path`` for streaming; the caller owns the returned stream."""
        with translate_errors(path):
            return await self._backend.read(require_file(path))

    async def read_bytes(self, path: PathLike) -> bytes:
        """Read the whole content of ``path``."""
        stream = await self.read(path)
        with translate_errors(path):
            return await stream.read_all()

    async def write(self, path: PathLike, data: Any) -> FileMetadata:
        """Replace ``path`` with ``data``.

        Args:
            path: Target file path.
            data: A DataStream, bytes, str, binary file object, or a
                synchronous or asynchronous iterable of chunks.

        Raises:
            TypeError: If ``data`` is not a supported source.

        """
        stream = DataStream.coerce(data)
        with translate_errors(path):
            try:
                target = require_file(path)
            except BaseException:
                await stream.aclose()
                raise
            return await self._backend.write(target, stream)

    async def delete(self, path: PathLike, *, missing_ok: bool = False) -> None:
        """Delete ``path``; a missing file is an error unless ``missing_ok``."""
        try:
            with translate_errors(path):
                await self._backend.delete(require_file(path))
        except NotFoundError:
            if not missing_ok:
                raise

    async def delete_prefix(self, prefix: PathLike) -> int:
        """Delete every file beneath ``prefix`` and return how many were removed."""
        with translate_errors(prefix):
            return await self._backend.delete_prefix(prefix)

    async def copy(self, src: PathLike, dst: PathLike) -> FileMetadata:
        with translate_errors(src):
            return await self._backend.copy(require_file(src), require_file(dst))

    async def move(self, src: PathLike, dst: PathLike) -> FileMetadata:
        with translate_errors(src):
            return await self._backend.move(require_file(src), require_file(dst))

    async def aclose(self) -> None:
        """Close the underlying backend."""
        with translate_errors():
            await self._backend.aclose()

    async def __aenter__(self) -> FileStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"<FileStore backend={self.backend_type}>"
