"""Tests for the FileStore facade over both backends."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pytest

from f9_file_store import (
    B2Backend,
    DataStream,
    FatalError,
    FileMetadata,
    FileStore,
    FileStoreError,
    InvalidPathError,
    LocalBackend,
    NotFoundError,
    StorageBackend,
    StoragePath,
)
from tests.fakes import FakeB2Server, b2_backend

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ruff: noqa: S101, PLR2004  # pytest assertions and magic numbers are ok in tests


class ExplodingBackend(StorageBackend):
    """Backend that leaks foreign exceptions from every operation."""

    backend_type = "exploding"

    async def list(self, prefix: object = "") -> AsyncIterator[FileMetadata]:  # type: ignore[override]
        yield FileMetadata(path=StoragePath.parse("first"), size=1)
        message = "listing broke"
        raise KeyError(message)

    async def stat(self, path: object) -> FileMetadata:  # type: ignore[override]
        message = "stat broke"
        raise ValueError(message)

    async def read(self, path: object) -> DataStream:  # type: ignore[override]
        raise OSError(5, "Input/output error")

    async def write(self, path: object, stream: DataStream) -> FileMetadata:  # type: ignore[override]
        await stream.aclose()
        message = "write broke"
        raise RuntimeError(message)

    async def delete(self, path: object) -> None:  # type: ignore[override]
        raise FileNotFoundError(2, "No such file")


async def exercise(store: FileStore) -> None:
    """Run the same scenario against any backend."""
    await store.write("docs/a.txt", b"alpha")
    await store.write("docs/b.txt", "beta")
    await store.write("docs/sub/c.bin", io.BytesIO(b"gamma"))
    await store.write("other.txt", [b"del", b"ta"])

    assert await store.read_bytes("docs/a.txt") == b"alpha"
    assert await store.read_bytes("docs/b.txt") == b"beta"
    assert [str(entry.path) for entry in await store.list_all("docs/")] == [
        "docs/a.txt",
        "docs/b.txt",
        "docs/sub/c.bin",
    ]
    assert (await store.stat("docs/sub/c.bin")).size == 5
    assert await store.exists("other.txt")
    assert not await store.exists("nope.txt")

    await store.copy("docs/a.txt", "copies/a.txt")
    await store.move("docs/b.txt", "moved/b.txt")
    assert not await store.exists("docs/b.txt")
    assert await store.read_bytes("moved/b.txt") == b"beta"

    await store.delete("docs/a.txt")
    with pytest.raises(NotFoundError):
        await store.delete("docs/a.txt")
    await store.delete("docs/a.txt", missing_ok=True)

    stream = await store.read("copies/a.txt")
    async with stream:
        assert await stream.__anext__() == b"alpha"

    await store.write("docs/sub/d.bin", b"delta")
    assert await store.delete_prefix("docs") == 2
    assert [str(entry.path) for entry in await store.list_all()] == ["copies/a.txt", "moved/b.txt", "other.txt"]
    assert await store.delete_prefix("docs/") == 0
    with pytest.raises(InvalidPathError):
        await store.delete_prefix("")


class TestFileStoreLocal:
    """Facade over LocalBackend."""

    @pytest.mark.asyncio
    async def test_scenario(self, tmp_path: Path) -> None:
        """The common scenario works on local storage."""
        async with FileStore.local(tmp_path) as store:
            assert store.backend_type == "local"
            await exercise(store)

    @pytest.mark.asyncio
    async def test_invalid_paths(self, tmp_path: Path) -> None:
        """Malformed paths are rejected before reaching the backend."""
        store = FileStore.local(tmp_path)
        with pytest.raises(InvalidPathError):
            await store.stat("../outside")
        with pytest.raises(InvalidPathError):
            await store.read("dir/")
        with pytest.raises(InvalidPathError):
            await store.delete("")

    @pytest.mark.asyncio
    async def test_write_with_invalid_path_closes_stream(self, tmp_path: Path) -> None:
        """The data stream is released even when the path is rejected."""
        store = FileStore.local(tmp_path)
        stream = DataStream.from_bytes(b"data")
        with pytest.raises(InvalidPathError):
            await store.write("bad/\x00name", stream)
        assert stream.closed

    @pytest.mark.asyncio
    async def test_unsupported_data(self, tmp_path: Path) -> None:
        """Unsupported data sources raise TypeError."""
        store = FileStore.local(tmp_path)
        with pytest.raises(TypeError):
            await store.write("a.txt", 3.14)

    def test_local_root_errors_are_translated(self, tmp_path: Path) -> None:
        """Construction failures surface as taxonomy errors."""
        with pytest.raises(NotFoundError):
            FileStore.local(tmp_path / "missing", create_root=False)

    def test_repr(self, tmp_path: Path) -> None:
        """repr shows the backend type."""
        assert repr(FileStore.local(tmp_path)) == "<FileStore backend=local>"


class TestFileStoreB2:
    """Facade over B2Backend."""

    @pytest.mark.asyncio
    async def test_scenario(self) -> None:
        """The common scenario works on remote storage."""
        server = FakeB2Server()
        async with b2_backend(server) as backend:
            store = FileStore(backend)
            assert store.backend_type == "b2"
            await exercise(store)

    def test_b2_constructor(self) -> None:
        """FileStore.b2 accepts config fields as keywords."""
        store = FileStore.b2(key_id="id", key="k", bucket="b")
        assert isinstance(store.backend, B2Backend)

    def test_b2_constructor_rejects_mixed_arguments(self) -> None:
        """A config object and keyword fields cannot be combined."""
        from f9_file_store import B2Config

        config = B2Config(key_id="id", key="k", bucket="b")
        with pytest.raises(TypeError):
            FileStore.b2(config, bucket="other")


class TestErrorTranslation:
    """Only taxonomy errors escape the facade."""

    @pytest.mark.asyncio
    async def test_foreign_errors_are_translated(self) -> None:
        """Every operation converts backend exceptions."""
        store = FileStore(ExplodingBackend())

        with pytest.raises(FatalError):
            await store.stat("a")
        with pytest.raises(FileStoreError):
            await store.read("a")
        with pytest.raises(FatalError):
            await store.write("a", b"x")
        with pytest.raises(NotFoundError):
            await store.delete("a")
        await store.delete("a", missing_ok=True)

    @pytest.mark.asyncio
    async def test_listing_errors_are_translated(self) -> None:
        """Failures in the middle of a listing surface as FatalError."""
        store = FileStore(ExplodingBackend())
        seen: list[str] = []
        with pytest.raises(FatalError):
            async for entry in store.list():
                seen.append(str(entry.path))
        assert seen == ["first"]

    @pytest.mark.asyncio
    async def test_default_copy_and_move_stream_through(self, tmp_path: Path) -> None:
        """Backends without native copy fall back to read and write."""

        class PlainBackend(LocalBackend):
            copy = StorageBackend.copy
            move = StorageBackend.move

        store = FileStore(PlainBackend(tmp_path))
        await store.write("a.txt", b"content")
        await store.copy("a.txt", "b.txt")
        await store.move("b.txt", "c.txt")
        assert await store.read_bytes("c.txt") == b"content"
        assert not await store.exists("b.txt")
