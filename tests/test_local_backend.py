"""Tests covering LocalBackend operations."""

from __future__ import annotations

import asyncio
import hashlib
import os
from typing import TYPE_CHECKING

import pytest

from f9_file_store import (
    DataStream,
    FatalError,
    InvalidPathError,
    LocalBackend,
    NotFoundError,
    StoragePath,
)
from f9_file_store.local import TEMP_SUFFIX

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path
    from typing import BinaryIO

# ruff: noqa: S101, PLR2004  # pytest assertions and magic numbers are ok in tests


@pytest.fixture
def backend(tmp_path: Path) -> LocalBackend:
    """Provide a backend instance scoped to a temporary directory."""
    return LocalBackend(tmp_path / "root")


@pytest.fixture
def opened_files(monkeypatch: pytest.MonkeyPatch) -> list[BinaryIO]:
    """Record every file handle LocalBackend opens for reading."""
    opened: list[BinaryIO] = []
    original = LocalBackend._open_for_read

    def recording_open(self: LocalBackend, path: StoragePath) -> BinaryIO:
        fh = original(self, path)
        opened.append(fh)
        return fh

    monkeypatch.setattr(LocalBackend, "_open_for_read", recording_open)
    return opened


def temp_files(root: Path) -> list[Path]:
    return [path for path in root.rglob("*") if path.name.endswith(TEMP_SUFFIX)]


async def listed(backend: LocalBackend, prefix: str = "") -> list[str]:
    return [str(entry.path) async for entry in backend.list(prefix)]


def failing_stream(chunks: list[bytes]) -> DataStream:
    """Stream that yields ``chunks`` and then fails."""

    async def generate() -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk
        message = "upstream went away"
        raise RuntimeError(message)

    return DataStream(generate())


class TestRoot:
    """Root directory handling."""

    def test_root_is_created(self, tmp_path: Path) -> None:
        """A missing root is created by default."""
        backend = LocalBackend(tmp_path / "a" / "b")
        assert backend.root.is_dir()
        assert backend.root == (tmp_path / "a" / "b").resolve()

    def test_missing_root_without_create(self, tmp_path: Path) -> None:
        """create_root=False requires an existing directory."""
        with pytest.raises(NotFoundError):
            LocalBackend(tmp_path / "missing", create_root=False)

    def test_root_must_be_directory(self, tmp_path: Path) -> None:
        """A regular file cannot serve as the root."""
        target = tmp_path / "file"
        target.write_bytes(b"x")
        with pytest.raises(FatalError):
            LocalBackend(target, create_root=False)

    def test_from_connection_info(self, tmp_path: Path) -> None:
        """Loosely typed settings are coerced."""
        backend = LocalBackend.from_connection_info(
            {"root": str(tmp_path), "compute_hashes": "true", "checksum": "SHA256", "fsync": "0"},
        )
        assert backend.config.compute_hashes is True
        assert backend.config.checksum_algorithm == "sha256"
        assert backend.config.fsync is False


class TestReadWrite:
    """Round trips and atomic replacement."""

    @pytest.mark.asyncio
    async def test_round_trip(self, backend: LocalBackend) -> None:
        """Written content reads back identically and metadata matches."""
        payload = b"hello world" * 1000
        metadata = await backend.write("docs/readme.txt", DataStream.from_bytes(payload, chunk_size=100))

        assert metadata.path == StoragePath.parse("docs/readme.txt")
        assert metadata.size == len(payload)
        assert metadata.content_hash == hashlib.sha1(payload).hexdigest()
        assert metadata.modified_at is not None

        stream = await backend.read("docs/readme.txt")
        assert await stream.read_all() == payload

    @pytest.mark.asyncio
    async def test_empty_file(self, backend: LocalBackend) -> None:
        """Zero-length content is a valid file."""
        metadata = await backend.write("empty", DataStream.from_bytes(b""))
        assert metadata.size == 0
        assert await (await backend.read("empty")).read_all() == b""

    @pytest.mark.asyncio
    async def test_overwrite_replaces_content(self, backend: LocalBackend) -> None:
        """A second write replaces the first completely."""
        await backend.write("a.txt", DataStream.from_bytes(b"original content"))
        await backend.write("a.txt", DataStream.from_bytes(b"new"))
        assert await (await backend.read("a.txt")).read_all() == b"new"

    @pytest.mark.asyncio
    async def test_write_closes_stream(self, backend: LocalBackend) -> None:
        """The backend consumes and closes the stream it was handed."""
        stream = DataStream.from_bytes(b"data")
        await backend.write("a.txt", stream)
        assert stream.closed
        assert stream.completed

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_content(self, backend: LocalBackend) -> None:
        """A source failure leaves the old file untouched and no temp file."""
        await backend.write("report.csv", DataStream.from_bytes(b"old"))

        with pytest.raises(FatalError):
            await backend.write("report.csv", failing_stream([b"partial ", b"content"]))

        assert (backend.root / "report.csv").read_bytes() == b"old"
        assert temp_files(backend.root) == []

    @pytest.mark.asyncio
    async def test_failed_write_of_new_file_leaves_nothing(self, backend: LocalBackend) -> None:
        """A failed first write creates no file."""
        with pytest.raises(FatalError):
            await backend.write("new.bin", failing_stream([b"abc"]))
        with pytest.raises(NotFoundError):
            await backend.stat("new.bin")
        assert temp_files(backend.root) == []

    @pytest.mark.asyncio
    async def test_cancelled_write_discards_temp_file(self, backend: LocalBackend) -> None:
        """Cancelling a write mid-stream removes the temporary file."""
        await backend.write("big.bin", DataStream.from_bytes(b"previous"))
        started = asyncio.Event()

        async def slow() -> AsyncIterator[bytes]:
            yield b"first chunk"
            started.set()
            await asyncio.sleep(3600)
            yield b"never"

        task = asyncio.create_task(backend.write("big.bin", DataStream(slow())))
        await started.wait()
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (backend.root / "big.bin").read_bytes() == b"previous"
        assert temp_files(backend.root) == []

    @pytest.mark.asyncio
    async def test_temp_file_is_hidden_during_write(self, backend: LocalBackend) -> None:
        """Readers never observe partial content while a write is in flight."""
        await backend.write("data.txt", DataStream.from_bytes(b"stable"))
        gate = asyncio.Event()
        started = asyncio.Event()

        async def gated() -> AsyncIterator[bytes]:
            yield b"half"
            started.set()
            await gate.wait()
            yield b" done"

        task = asyncio.create_task(backend.write("data.txt", DataStream(gated())))
        await started.wait()
        await asyncio.sleep(0.01)

        assert await (await backend.read("data.txt")).read_all() == b"stable"
        assert await listed(backend) == ["data.txt"]

        gate.set()
        await task
        assert await (await backend.read("data.txt")).read_all() == b"half done"

    @pytest.mark.asyncio
    async def test_concurrent_writes_never_interleave(self, backend: LocalBackend) -> None:
        """Racing writers leave exactly one writer's complete content."""
        payloads = [bytes([index]) * 50_000 for index in range(5)]
        await asyncio.gather(
            *(backend.write("race.bin", DataStream.from_bytes(payload, chunk_size=1000)) for payload in payloads),
        )
        content = (backend.root / "race.bin").read_bytes()
        assert content in payloads
        assert temp_files(backend.root) == []

    @pytest.mark.asyncio
    async def test_write_preserves_permissions(self, backend: LocalBackend) -> None:
        """Replacing a file keeps its permission bits."""
        await backend.write("script.sh", DataStream.from_bytes(b"#!/bin/sh\n"))
        target = backend.root / "script.sh"
        os.chmod(target, 0o751)
        await backend.write("script.sh", DataStream.from_bytes(b"#!/bin/sh\necho hi\n"))
        assert target.stat().st_mode & 0o777 == 0o751

    @pytest.mark.asyncio
    async def test_read_missing_raises_before_stream(self, backend: LocalBackend) -> None:
        """Missing files fail at read() rather than on first pull."""
        with pytest.raises(NotFoundError):
            await backend.read("missing.txt")

    @pytest.mark.asyncio
    async def test_read_closes_file_on_aclose(self, backend: LocalBackend, opened_files: list[BinaryIO]) -> None:
        """Closing a read stream early releases the file handle."""
        await backend.write("a.bin", DataStream.from_bytes(b"x" * 10))
        small = LocalBackend(backend.root, chunk_size=2)
        stream = await small.read("a.bin")
        assert await stream.__anext__() == b"xx"
        await stream.aclose()
        assert stream.closed
        assert [fh.closed for fh in opened_files] == [True]

    @pytest.mark.asyncio
    async def test_read_closes_file_when_never_pulled(
        self,
        backend: LocalBackend,
        opened_files: list[BinaryIO],
    ) -> None:
        """A stream dropped before its first chunk still releases the handle."""
        await backend.write("a.bin", DataStream.from_bytes(b"content"))
        stream = await backend.read("a.bin")
        assert not opened_files[0].closed
        await stream.aclose()
        assert opened_files[0].closed

    @pytest.mark.asyncio
    async def test_read_closes_file_after_full_read(
        self,
        backend: LocalBackend,
        opened_files: list[BinaryIO],
    ) -> None:
        """Reading to the end releases the handle."""
        await backend.write("a.bin", DataStream.from_bytes(b"content"))
        assert await (await backend.read("a.bin")).read_all() == b"content"
        assert opened_files[0].closed


class TestDirectories:
    """Interaction with real directories."""

    @pytest.mark.asyncio
    async def test_directory_is_not_a_file(self, backend: LocalBackend) -> None:
        """stat, read and delete treat directories as missing files."""
        (backend.root / "folder").mkdir()
        with pytest.raises(NotFoundError):
            await backend.stat("folder")
        with pytest.raises(NotFoundError):
            await backend.read("folder")
        with pytest.raises(NotFoundError):
            await backend.delete("folder")
        assert (backend.root / "folder").is_dir()

    @pytest.mark.asyncio
    async def test_write_over_directory_fails(self, backend: LocalBackend) -> None:
        """A file cannot replace a directory."""
        (backend.root / "folder").mkdir()
        with pytest.raises(FatalError):
            await backend.write("folder", DataStream.from_bytes(b"x"))

    @pytest.mark.asyncio
    async def test_write_below_file_fails(self, backend: LocalBackend) -> None:
        """A file cannot be used as a parent directory."""
        await backend.write("plain", DataStream.from_bytes(b"x"))
        with pytest.raises(FatalError):
            await backend.write("plain/child", DataStream.from_bytes(b"y"))

    @pytest.mark.asyncio
    async def test_directory_paths_are_rejected(self, backend: LocalBackend) -> None:
        """File operations require a file-like path."""
        with pytest.raises(InvalidPathError):
            await backend.stat("folder/")
        with pytest.raises(InvalidPathError):
            await backend.write("", DataStream.from_bytes(b""))

    @pytest.mark.asyncio
    async def test_delete_prefix_removes_tree(self, backend: LocalBackend) -> None:
        """A whole directory goes, siblings sharing the name prefix stay."""
        for name in ["docs/a.txt", "docs/sub/b.txt", "docs/sub/deeper/c.txt", "docs-old/d.txt", "keep.txt"]:
            await backend.write(name, DataStream.from_bytes(name.encode()))
        (backend.root / "docs" / "empty").mkdir()

        assert await backend.delete_prefix("docs") == 3
        assert not (backend.root / "docs").exists()
        assert await listed(backend) == ["docs-old/d.txt", "keep.txt"]

    @pytest.mark.asyncio
    async def test_delete_prefix_does_not_follow_symlinks(self, backend: LocalBackend, tmp_path: Path) -> None:
        """Links inside the tree are removed without touching their targets."""
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "precious.txt").write_bytes(b"keep me")
        await backend.write("docs/a.txt", DataStream.from_bytes(b"a"))
        (backend.root / "docs" / "link").symlink_to(outside, target_is_directory=True)

        assert await backend.delete_prefix("docs/") == 1
        assert (outside / "precious.txt").read_bytes() == b"keep me"

    @pytest.mark.asyncio
    async def test_delete_prefix_missing_or_root(self, backend: LocalBackend) -> None:
        """A missing directory removes nothing and the root cannot be targeted."""
        await backend.write("file.txt", DataStream.from_bytes(b"x"))
        assert await backend.delete_prefix("missing/") == 0
        assert await backend.delete_prefix("file.txt") == 0
        with pytest.raises(InvalidPathError):
            await backend.delete_prefix("")
        assert await listed(backend) == ["file.txt"]


class TestListing:
    """Enumeration order and filtering."""

    @pytest.mark.asyncio
    async def test_list_is_sorted_depth_first(self, backend: LocalBackend) -> None:
        """Entries follow StoragePath ordering across nested directories."""
        for name in ["b.txt", "a/z.txt", "a/b/c.txt", "a-c.txt", "a.txt", "c/d/e/f.txt"]:
            await backend.write(name, DataStream.from_bytes(name.encode()))

        assert await listed(backend) == [
            "a/b/c.txt",
            "a/z.txt",
            "a-c.txt",
            "a.txt",
            "b.txt",
            "c/d/e/f.txt",
        ]

    @pytest.mark.asyncio
    async def test_list_prefix(self, backend: LocalBackend) -> None:
        """Directory and partial-name prefixes narrow the listing."""
        for name in ["logs/app.1", "logs/app.2", "logs/web.1", "logs/app/nested", "other.txt"]:
            await backend.write(name, DataStream.from_bytes(b"x"))

        assert await listed(backend, "logs/") == ["logs/app/nested", "logs/app.1", "logs/app.2", "logs/web.1"]
        assert await listed(backend, "logs/app") == ["logs/app/nested", "logs/app.1", "logs/app.2"]
        assert await listed(backend, "logs/app.") == ["logs/app.1", "logs/app.2"]
        assert await listed(backend, "missing/") == []

    @pytest.mark.asyncio
    async def test_list_skips_temp_files_and_symlinks(self, backend: LocalBackend, tmp_path: Path) -> None:
        """Partial writes and symlinks never appear in listings."""
        await backend.write("real.txt", DataStream.from_bytes(b"x"))
        (backend.root / f".real.txt.abc123{TEMP_SUFFIX}").write_bytes(b"partial")
        outside = tmp_path / "outside.txt"
        outside.write_bytes(b"secret")
        (backend.root / "link.txt").symlink_to(outside)

        assert await listed(backend) == ["real.txt"]

    @pytest.mark.asyncio
    async def test_list_reports_metadata(self, tmp_path: Path) -> None:
        """Listing reports size, time and the optional hash."""
        backend = LocalBackend(tmp_path, compute_hashes=True, checksum_algorithm="sha256")
        await backend.write("a.bin", DataStream.from_bytes(b"abc"))
        entries = [entry async for entry in backend.list()]
        assert len(entries) == 1
        assert entries[0].size == 3
        assert entries[0].content_hash == hashlib.sha256(b"abc").hexdigest()
        assert entries[0].modified_at is not None

    @pytest.mark.asyncio
    async def test_stat_without_hashes(self, backend: LocalBackend) -> None:
        """Hashes are omitted from stat unless enabled."""
        await backend.write("a.bin", DataStream.from_bytes(b"abc"))
        metadata = await backend.stat("a.bin")
        assert metadata.size == 3
        assert metadata.content_hash is None


class TestContainment:
    """Everything stays inside the root."""

    @pytest.mark.asyncio
    async def test_symlink_escape_is_rejected(self, backend: LocalBackend, tmp_path: Path) -> None:
        """Paths resolving outside the root through a symlink are invalid."""
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_bytes(b"secret")
        (backend.root / "escape").symlink_to(outside, target_is_directory=True)

        with pytest.raises(InvalidPathError):
            await backend.read("escape/secret.txt")
        with pytest.raises(InvalidPathError):
            await backend.write("escape/new.txt", DataStream.from_bytes(b"x"))
        assert not (outside / "new.txt").exists()

    @pytest.mark.asyncio
    async def test_dot_dot_cannot_escape(self, backend: LocalBackend) -> None:
        """Traversal above the root is rejected during parsing."""
        with pytest.raises(InvalidPathError):
            await backend.write("../escape.txt", DataStream.from_bytes(b"x"))


class TestDeleteCopyMove:
    """Delete, copy and move."""

    @pytest.mark.asyncio
    async def test_delete(self, backend: LocalBackend) -> None:
        """Deleting removes the file; a second delete is not found."""
        await backend.write("a.txt", DataStream.from_bytes(b"x"))
        await backend.delete("a.txt")
        assert not (backend.root / "a.txt").exists()
        with pytest.raises(NotFoundError):
            await backend.delete("a.txt")

    @pytest.mark.asyncio
    async def test_copy(self, backend: LocalBackend) -> None:
        """Copies are independent of the source."""
        await backend.write("src.txt", DataStream.from_bytes(b"payload"))
        metadata = await backend.copy("src.txt", "nested/dst.txt")
        assert metadata.size == 7
        assert metadata.content_hash == hashlib.sha1(b"payload").hexdigest()

        await backend.write("src.txt", DataStream.from_bytes(b"changed"))
        assert (backend.root / "nested" / "dst.txt").read_bytes() == b"payload"

    @pytest.mark.asyncio
    async def test_copy_missing_source(self, backend: LocalBackend) -> None:
        """Copying a missing file is not found."""
        with pytest.raises(NotFoundError):
            await backend.copy("missing", "dst")

    @pytest.mark.asyncio
    async def test_move(self, backend: LocalBackend) -> None:
        """Moves rename the file and remove the source."""
        await backend.write("src.txt", DataStream.from_bytes(b"payload"))
        metadata = await backend.move("src.txt", "archive/dst.txt")
        assert metadata.path == StoragePath.parse("archive/dst.txt")
        assert not (backend.root / "src.txt").exists()
        assert (backend.root / "archive" / "dst.txt").read_bytes() == b"payload"

    @pytest.mark.asyncio
    async def test_move_onto_itself(self, backend: LocalBackend) -> None:
        """Moving a file onto itself is a no-op."""
        await backend.write("a.txt", DataStream.from_bytes(b"x"))
        metadata = await backend.move("a.txt", "a.txt")
        assert metadata.size == 1
        assert (backend.root / "a.txt").exists()
