"""Live test harness for exercising FileStore against a real B2 bucket.

This script performs the following steps:

1. Collects the B2 application key id, key and bucket name from environment
   variables or via interactive prompts.
2. Writes a small file and a multipart file beneath a unique scratch prefix.
3. Reads both back and compares them byte for byte.
4. Lists, copies, moves and deletes the files, checking the bucket state
   after each step.
5. Mirrors a local temporary directory into the bucket and back to confirm
   both backends interoperate through the same interface.

Every object the script creates lives under ``f9-live-<random>/`` and is
removed at the end, even when a step fails. Only run it against a bucket
where uploading and deleting scratch data is acceptable.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import secrets
import sys
import tempfile
from pathlib import Path

from f9_file_store import B2Config, FileStore, NotFoundError

KEY_ID_ENV = "B2_APPLICATION_KEY_ID"
KEY_ENV = "B2_APPLICATION_KEY"
BUCKET_ENV = "B2_BUCKET"

# The service minimum for parts is 5 MB.
PART_SIZE = 5 * 1000 * 1000
LARGE_SIZE = 2 * PART_SIZE + 12345


class LiveRoundTripError(RuntimeError):
    """Raised when the live validation encounters an unexpected state."""

    @classmethod
    def content_mismatch(cls, path: str) -> LiveRoundTripError:
        """Return an error when downloaded content differs from the upload."""
        return cls(f"Downloaded content differs from upload for {path}")

    @classmethod
    def listing_mismatch(cls, expected: list[str], actual: list[str]) -> LiveRoundTripError:
        """Return an error when the bucket listing is not as expected."""
        return cls(f"Listing mismatch: expected {expected}, got {actual}")

    @classmethod
    def still_present(cls, path: str) -> LiveRoundTripError:
        """Return an error when a deleted or moved file is still visible."""
        return cls(f"{path} is still present")


def _prompt_for_value(env_name: str, prompt: str, *, secret: bool = False) -> str:
    """Return a value from the environment or interactive prompt."""
    value = os.environ.get(env_name)
    if value:
        return value.strip()
    return getpass.getpass(prompt) if secret else input(prompt).strip()


async def _expect_listing(store: FileStore, prefix: str, expected: list[str]) -> None:
    actual = [str(entry.path) for entry in await store.list_all(prefix)]
    if actual != expected:
        raise LiveRoundTripError.listing_mismatch(expected, actual)


async def _exercise_store(store: FileStore) -> None:
    """Run the write, read, list, copy, move and delete scenario."""
    small = b"hello from the live round trip\n"
    large = os.urandom(LARGE_SIZE)

    print("Uploading small file...")
    await store.write("small.txt", small)
    print(f"Uploading {LARGE_SIZE} byte file as a multipart upload...")
    metadata = await store.write("nested/large.bin", large)
    print(f"  stored {metadata.size} bytes")

    for path, expected in (("small.txt", small), ("nested/large.bin", large)):
        if await store.read_bytes(path) != expected:
            raise LiveRoundTripError.content_mismatch(path)
    print("Read back both files successfully.")

    await _expect_listing(store, "", ["nested/large.bin", "small.txt"])

    await store.copy("small.txt", "copies/small.txt")
    await store.move("copies/small.txt", "moved/small.txt")
    if await store.exists("copies/small.txt"):
        raise LiveRoundTripError.still_present("copies/small.txt")
    await _expect_listing(store, "", ["moved/small.txt", "nested/large.bin", "small.txt"])
    print("Copy and move succeeded.")


async def _mirror_local(store: FileStore, workspace: Path) -> None:
    """Copy a local tree into the bucket and back through the common interface."""
    source = FileStore.local(workspace / "source")
    target = FileStore.local(workspace / "target")
    for index in range(3):
        await source.write(f"tree/file-{index}.txt", f"content {index}\n")

    async for entry in source.list("tree/"):
        await store.write(entry.path, await source.read(entry.path))
    async for entry in store.list("tree/"):
        await target.write(entry.path, await store.read(entry.path))

    for index in range(3):
        path = f"tree/file-{index}.txt"
        if await target.read_bytes(path) != await source.read_bytes(path):
            raise LiveRoundTripError.content_mismatch(path)
    print("Mirrored a local tree through the bucket.")


async def _cleanup(store: FileStore) -> None:
    entries = await store.list_all("")
    for entry in entries:
        try:
            await store.delete(entry.path)
        except NotFoundError:
            continue
    print(f"Removed {len(entries)} scratch files.")


async def run() -> int:
    """Entry point for the live round trip harness."""
    key_id = _prompt_for_value(KEY_ID_ENV, "B2 application key id: ")
    key = _prompt_for_value(KEY_ENV, "B2 application key: ", secret=True)
    bucket = _prompt_for_value(BUCKET_ENV, "B2 bucket name: ")
    prefix = f"f9-live-{secrets.token_hex(4)}"

    config = B2Config(
        key_id=key_id,
        key=key,
        bucket=bucket,
        prefix=prefix,
        small_file_threshold=PART_SIZE,
        part_size=PART_SIZE,
    )
    print(f"Using scratch prefix {prefix}/ in bucket {bucket}.")

    async with FileStore.b2(config) as store:
        try:
            await _exercise_store(store)
            with tempfile.TemporaryDirectory(prefix="f9-live-b2-") as temp_dir:
                await _mirror_local(store, Path(temp_dir))
        finally:
            await _cleanup(store)

    print("Live B2 round trip completed successfully.")
    return 0


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    return asyncio.run(run())


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        sys.exit(130)
