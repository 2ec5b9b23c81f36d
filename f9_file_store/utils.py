"""Shared utility functions for backend implementations.

This module provides the hashing and data-coercion helpers used by both
backends so that content digests are computed identically everywhere.

Key utilities:
- Hasher factory for multiple algorithms
- Checksum computation (file and bytes)
- Data type coercion (bytes, str, BinaryIO)

Example usage:
    >>> from f9_file_store.utils import compute_checksum_from_bytes
    >>> compute_checksum_from_bytes(b"hello", algorithm="sha1")
    'aaf4c61ddcc5e8a2dabede0f3b482cd9aea9434d'
"""

from __future__ import annotations

import hashlib
import io
from typing import TYPE_CHECKING, Any, BinaryIO, Literal

if TYPE_CHECKING:
    from pathlib import Path

ChecksumAlgorithm = Literal["md5", "sha1", "sha256", "sha512", "blake3"]

DEFAULT_CHUNK_SIZE = 64 * 1024

SUPPORTED_ALGORITHMS: tuple[str, ...] = ("md5", "sha1", "sha256", "sha512", "blake3")


def get_hasher(algorithm: ChecksumAlgorithm) -> Any:
    """Get a hasher instance for the specified algorithm.

    Args:
        algorithm: The checksum algorithm to use ('md5', 'sha1', 'sha256',
            'sha512', 'blake3')

    Returns:
        A hasher instance with update() and hexdigest() methods

    Raises:
        ImportError: If blake3 is requested but not installed.
        ValueError: If algorithm is not supported.

    """
    if algorithm == "blake3":
        try:
            import blake3
        except ImportError as exc:
            message = "blake3 is not installed. Install it with: pip install blake3"
            raise ImportError(message) from exc
        return blake3.blake3()
    elif algorithm in ("md5", "sha1", "sha256", "sha512"):
        return hashlib.new(algorithm)
    else:
        message = f"Unsupported checksum algorithm: {algorithm}"
        raise ValueError(message)


def coerce_to_bytes(data: bytes | bytearray | memoryview | str | BinaryIO) -> bytes:
    """Coerce supported input types to raw bytes.

    Handles bytes-like objects, strings (UTF-8 encoded), and file-like objects.

    Args:
        data: Input data to coerce

    Returns:
        Raw bytes representation

    Raises:
        TypeError: If data type is not supported.

    """
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode("utf-8")

    if hasattr(data, "read"):
        result = data.read()

        # Try to reset the stream position for seekable streams
        if hasattr(data, "seek"):
            try:
                data.seek(0)
            except (OSError, io.UnsupportedOperation):
                pass

        if isinstance(result, str):
            return result.encode("utf-8")
        if isinstance(result, (bytes, bytearray)):
            return bytes(result)
        message = f"Unsupported stream payload type: {type(result).__name__}"
        raise TypeError(message)

    message = f"Unsupported data type: {type(data).__name__}"
    raise TypeError(message)


def compute_checksum_from_file(
    file_path: Path,
    algorithm: ChecksumAlgorithm = "sha1",
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Compute checksum of a file by reading in chunks.

    Args:
        file_path: Path to file to checksum
        algorithm: Checksum algorithm to use
        chunk_size: Size of chunks to read

    Returns:
        Hexadecimal checksum string.

    """
    hasher = get_hasher(algorithm)
    with open(file_path, "rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


def compute_checksum_from_bytes(
    payload: bytes,
    algorithm: ChecksumAlgorithm = "sha1",
) -> str:
    """Compute checksum of binary payload."""
    hasher = get_hasher(algorithm)
    hasher.update(payload)
    return hasher.hexdigest()
