"""Local filesystem backend implementation of StorageBackend.

All files live beneath a root directory. Every blocking filesystem call runs
in a worker thread via ``asyncio.to_thread()`` so the event loop stays
responsive.

Key Features:
    - Atomic writes: content streams into a hidden temporary sibling that is
      renamed over the target only after the stream is fully consumed
    - Symlink-aware traversal prevention
    - Missing parent directories are created on write
    - Recursive deletion of whole directories with ``delete_prefix``
    - Lazy depth-first listing in ``StoragePath`` order
    - Optional content hashes (SHA-1 by default, matching the B2 backend)

Path Validation:
    Each path is mapped to ``root.joinpath(*segments)``. The result is
    resolved (following symlinks) and must still be inside the root, which
    ``_ensure_within_root()`` enforces.

Temporary Files:
    A write to ``dir/name`` streams into ``dir/.name.<random>.f9-partial``.
    The file is flushed and fsynced, then moved into place with
    ``os.replace``. On failure or cancellation the temporary file is removed
    and the previous content is untouched. Listings never report temporary
    files.

Example:

    >>> from f9_file_store import DataStream, LocalBackend
    >>> backend = LocalBackend("/data/files")
    >>> await backend.write("reports/q1.csv", DataStream.from_bytes(b"a,b\\n1,2\\n"))
    >>> stream = await backend.read("reports/q1.csv")
    >>> await stream.read_all()
    b'a,b\\n1,2\\n'

See Also:
    - StorageBackend: Abstract interface
    - B2Backend: Remote object storage alternative

"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import stat
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, NamedTuple

from .config import LocalConfig
from .errors import (
    FatalError,
    InvalidPathError,
    NotFoundError,
    from_os_error,
)
from .interfaces import FileMetadata, StorageBackend
from .paths import PathLike, StoragePath, require_file, require_prefix
from .streams import DataStream
from .utils import DEFAULT_CHUNK_SIZE, compute_checksum_from_file, get_hasher

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from .utils import ChecksumAlgorithm

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".f9-partial"


class _ScanEntry(NamedTuple):
    path: StoragePath
    fs_path: Path
    # None for directories.
    metadata: FileMetadata | None


class LocalBackend(StorageBackend):
    """Backend implementation backed by the local filesystem."""

    backend_type = "local"

    def __init__(
        self,
        root: str | Path,
        *,
        create_root: bool = True,
        compute_hashes: bool = False,
        checksum_algorithm: ChecksumAlgorithm = "sha1",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        fsync: bool = True,
    ) -> None:
        """Initialise the backend rooted at the given filesystem path.

        Raises:
            NotFoundError: If the root is missing and ``create_root`` is False.
            FatalError: If the root exists but is not a directory.

        """
        self._config = LocalConfig(
            root=Path(root),
            create_root=create_root,
            compute_hashes=compute_hashes,
            checksum_algorithm=checksum_algorithm,
            chunk_size=chunk_size,
            fsync=fsync,
        )
        base = self._config.root
        self._root = base.resolve(strict=False)
        if create_root:
            try:
                self._root.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise from_os_error(exc, self._root) from exc
        elif not self._root.exists():
            raise NotFoundError(self._root, reason="Storage root does not exist")
        if not self._root.is_dir():
            message = "Storage root is not a directory"
            raise FatalError(message, path=self._root)

    @classmethod
    def from_config(cls, config: LocalConfig) -> LocalBackend:
        return cls(
            config.root,
            create_root=config.create_root,
            compute_hashes=config.compute_hashes,
            checksum_algorithm=config.checksum_algorithm,
            chunk_size=config.chunk_size,
            fsync=config.fsync,
        )

    @classmethod
    def from_connection_info(cls, connection_info: Mapping[str, Any]) -> LocalBackend:
        return cls.from_config(LocalConfig.from_mapping(connection_info))

    @property
    def root(self) -> Path:
        """Absolute path used as the backend root."""
        return self._root

    @property
    def config(self) -> LocalConfig:
        return self._config

    async def list(self, prefix: PathLike = "") -> AsyncIterator[FileMetadata]:
        """Yield files beneath ``prefix`` depth first in sorted order.

        Directories are scanned one at a time, so memory use is bounded by
        the largest directory rather than the whole tree. Symlinks are never
        followed and a missing prefix directory yields nothing.
        """
        target = StoragePath.parse(prefix)
        if target.is_directory:
            start, name_prefix = target, None
        else:
            start, name_prefix = target.parent() or StoragePath.root(), target.name

        directory = await asyncio.to_thread(self._resolve_directory, start)
        if directory is None:
            return

        first = await asyncio.to_thread(self._scan_directory, directory, start, name_prefix)
        stack = [iter(first)]
        while stack:
            entry = next(stack[-1], None)
            if entry is None:
                stack.pop()
                continue
            if entry.metadata is None:
                children = await asyncio.to_thread(self._scan_directory, entry.fs_path, entry.path, None)
                stack.append(iter(children))
            else:
                yield entry.metadata

    async def stat(self, path: PathLike) -> FileMetadata:
        """Return metadata about a regular file."""
        target = require_file(path)
        return await asyncio.to_thread(self._stat_sync, target)

    async def read(self, path: PathLike) -> DataStream:
        """Open a file and return a stream over its content."""
        target = require_file(path)
        fh = await asyncio.to_thread(self._open_for_read, target)
        return DataStream(self._read_chunks(fh), path=target, on_close=lambda: asyncio.to_thread(fh.close))

    async def write(self, path: PathLike, stream: DataStream) -> FileMetadata:
        """Atomically replace ``path`` with the content of ``stream``."""
        target = require_file(path)
        async with stream:
            destination = await asyncio.to_thread(self._prepare_target, target)
            fd, temp = await asyncio.to_thread(self._create_temp, destination, target)
            hasher = get_hasher(self._config.checksum_algorithm)
            size = 0
            try:
                with os.fdopen(fd, "wb") as fh:
                    async for chunk in stream:
                        await asyncio.to_thread(fh.write, chunk)
                        hasher.update(chunk)
                        size += len(chunk)
                    await asyncio.to_thread(self._flush, fh)
                modified = await asyncio.to_thread(self._commit, temp, destination, target)
            except BaseException as exc:
                self._discard(temp)
                if isinstance(exc, OSError):
                    raise from_os_error(exc, target) from exc
                raise

        logger.debug("Wrote %d bytes to %s", size, target)
        return FileMetadata(
            path=target,
            size=size,
            modified_at=_timestamp_to_datetime(modified),
            content_hash=hasher.hexdigest(),
        )

    async def delete(self, path: PathLike) -> None:
        """Delete a regular file."""
        target = require_file(path)
        await asyncio.to_thread(self._delete_sync, target)

    async def delete_prefix(self, prefix: PathLike) -> int:
        """Remove a directory and everything beneath it."""
        target = require_prefix(prefix)
        removed = await asyncio.to_thread(self._delete_tree_sync, target)
        logger.debug("Deleted %d files under %s", removed, target)
        return removed

    async def copy(self, src: PathLike, dst: PathLike) -> FileMetadata:
        """Copy a file through a temporary sibling of the destination."""
        source = require_file(src)
        target = require_file(dst)
        if source == target:
            return await self.stat(source)
        return await asyncio.to_thread(self._copy_sync, source, target)

    async def move(self, src: PathLike, dst: PathLike) -> FileMetadata:
        """Rename a file within the root."""
        source = require_file(src)
        target = require_file(dst)
        if source == target:
            return await self.stat(source)
        return await asyncio.to_thread(self._move_sync, source, target)

    async def _read_chunks(self, fh: BinaryIO) -> AsyncIterator[bytes]:
        while True:
            chunk = await asyncio.to_thread(fh.read, self._config.chunk_size)
            if not chunk:
                break
            yield chunk

    def _ensure_within_root(self, path: StoragePath) -> Path:
        """Map ``path`` beneath the root and reject symlink escapes.

        Returns the unresolved location so that operations act on the entry
        itself rather than on a symlink's target.

        Raises:
            InvalidPathError: If the resolved location is outside the root.

        """
        candidate = self._root.joinpath(*path.parts)
        resolved = candidate.resolve(strict=False)
        try:
            resolved.relative_to(self._root)
        except ValueError as exc:
            raise InvalidPathError.escapes_root(path) from exc
        return candidate

    def _resolve_directory(self, path: StoragePath) -> Path | None:
        directory = self._ensure_within_root(path)
        if directory.is_symlink() or not directory.is_dir():
            return None
        return directory

    def _scan_directory(
        self,
        directory: Path,
        directory_path: StoragePath,
        name_prefix: str | None,
    ) -> list[_ScanEntry]:
        try:
            with os.scandir(directory) as iterator:
                items = sorted(iterator, key=lambda item: item.name)
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as exc:
            raise from_os_error(exc, directory_path) from exc

        entries: list[_ScanEntry] = []
        for item in items:
            if name_prefix is not None and not item.name.startswith(name_prefix):
                continue
            if _is_temp_name(item.name):
                continue
            try:
                if item.is_symlink():
                    continue
                if item.is_dir(follow_symlinks=False):
                    child = StoragePath((*directory_path.parts, item.name), is_directory=True)
                    entries.append(_ScanEntry(child, Path(item.path), None))
                elif item.is_file(follow_symlinks=False):
                    child = StoragePath((*directory_path.parts, item.name))
                    metadata = self._build_metadata(child, Path(item.path), item.stat(follow_symlinks=False))
                    entries.append(_ScanEntry(child, Path(item.path), metadata))
            except FileNotFoundError:
                # Removed while scanning.
                continue
            except InvalidPathError:
                logger.debug("Skipping entry with unsupported name %r in %s", item.name, directory)
                continue
        return entries

    def _build_metadata(self, path: StoragePath, fs_path: Path, stat_result: os.stat_result) -> FileMetadata:
        content_hash = None
        if self._config.compute_hashes:
            content_hash = compute_checksum_from_file(
                fs_path,
                algorithm=self._config.checksum_algorithm,
                chunk_size=self._config.chunk_size,
            )
        return FileMetadata(
            path=path,
            size=stat_result.st_size,
            modified_at=_timestamp_to_datetime(stat_result.st_mtime),
            content_hash=content_hash,
        )

    def _stat_sync(self, path: StoragePath) -> FileMetadata:
        target = self._ensure_within_root(path)
        try:
            stat_result = target.stat()
            if not stat.S_ISREG(stat_result.st_mode):
                raise NotFoundError(path)
            return self._build_metadata(path, target, stat_result)
        except OSError as exc:
            raise from_os_error(exc, path) from exc

    def _open_for_read(self, path: StoragePath) -> BinaryIO:
        target = self._ensure_within_root(path)
        if target.is_dir():
            raise NotFoundError(path)
        try:
            fh = target.open("rb")
        except OSError as exc:
            raise from_os_error(exc, path) from exc
        if not stat.S_ISREG(os.fstat(fh.fileno()).st_mode):
            fh.close()
            raise NotFoundError(path)
        return fh

    def _prepare_target(self, path: StoragePath) -> Path:
        target = self._ensure_within_root(path)
        if target.is_dir():
            raise FatalError.cannot_overwrite_directory(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except (FileExistsError, NotADirectoryError) as exc:
            raise FatalError.parent_not_directory(path) from exc
        except OSError as exc:
            raise from_os_error(exc, path) from exc
        return target

    def _create_temp(self, destination: Path, path: StoragePath) -> tuple[int, Path]:
        try:
            fd, name = tempfile.mkstemp(
                prefix=f".{destination.name}.",
                suffix=TEMP_SUFFIX,
                dir=destination.parent,
            )
        except OSError as exc:
            raise from_os_error(exc, path) from exc
        return fd, Path(name)

    def _flush(self, fh: BinaryIO) -> None:
        fh.flush()
        if self._config.fsync:
            os.fsync(fh.fileno())

    def _commit(self, temp: Path, destination: Path, path: StoragePath) -> float:
        """Move a completed temporary file over ``destination``."""
        if destination.is_dir():
            raise FatalError.cannot_overwrite_directory(path)
        if destination.exists():
            shutil.copymode(destination, temp)
        os.replace(temp, destination)
        return destination.stat().st_mtime

    @staticmethod
    def _discard(temp: Path) -> None:
        try:
            temp.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove temporary file %s: %s", temp, exc)

    def _delete_sync(self, path: StoragePath) -> None:
        target = self._ensure_within_root(path)
        if target.is_dir() and not target.is_symlink():
            raise NotFoundError(path)
        try:
            target.unlink()
        except OSError as exc:
            raise from_os_error(exc, path) from exc

    def _delete_tree_sync(self, path: StoragePath) -> int:
        directory = self._ensure_within_root(path)
        if directory.is_symlink() or not directory.is_dir():
            return 0
        removed = sum(
            1
            for dirpath, _dirnames, filenames in os.walk(directory)
            for name in filenames
            if not _is_temp_name(name) and not os.path.islink(os.path.join(dirpath, name))
        )
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            raise from_os_error(exc, path) from exc
        return removed

    def _copy_sync(self, source: StoragePath, target: StoragePath) -> FileMetadata:
        source_fs = self._ensure_within_root(source)
        if source_fs.is_dir():
            raise NotFoundError(source)
        destination = self._prepare_target(target)
        try:
            inp = source_fs.open("rb")
        except OSError as exc:
            raise from_os_error(exc, source) from exc

        fd, temp = self._create_temp(destination, target)
        hasher = get_hasher(self._config.checksum_algorithm)
        size = 0
        try:
            with inp, os.fdopen(fd, "wb") as out:
                while True:
                    chunk = inp.read(self._config.chunk_size)
                    if not chunk:
                        break
                    out.write(chunk)
                    hasher.update(chunk)
                    size += len(chunk)
                self._flush(out)
            modified = self._commit(temp, destination, target)
        except BaseException as exc:
            self._discard(temp)
            if isinstance(exc, OSError):
                raise from_os_error(exc, target) from exc
            raise

        return FileMetadata(
            path=target,
            size=size,
            modified_at=_timestamp_to_datetime(modified),
            content_hash=hasher.hexdigest(),
        )

    def _move_sync(self, source: StoragePath, target: StoragePath) -> FileMetadata:
        source_fs = self._ensure_within_root(source)
        try:
            source_stat = source_fs.stat()
        except OSError as exc:
            raise from_os_error(exc, source) from exc
        if not stat.S_ISREG(source_stat.st_mode):
            raise NotFoundError(source)

        destination = self._prepare_target(target)
        try:
            os.replace(source_fs, destination)
            return self._build_metadata(target, destination, destination.stat())
        except OSError as exc:
            raise from_os_error(exc, target) from exc


def _is_temp_name(name: str) -> bool:
    return name.startswith(".") and name.endswith(TEMP_SUFFIX)


def _timestamp_to_datetime(timestamp: float) -> datetime:
    """Convert a POSIX timestamp to an aware datetime in UTC."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)
