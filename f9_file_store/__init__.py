"""Asynchronous file storage over local disks and remote object stores.

This package provides one interface for reading, writing, listing and
deleting files that live either on the local filesystem or in a Backblaze B2
bucket. Callers write backend-agnostic code; the backend is picked once at
construction.

Core Components:
    - FileStore: Facade callers use; translates every failure into the
      error taxonomy
    - StorageBackend: Abstract interface all backends implement
    - LocalBackend: Files beneath a root directory, written atomically
    - B2Backend: Objects in a B2 bucket with multipart uploads, token refresh
      and retries
    - StoragePath: Normalised address shared by both backends
    - DataStream: Lazy, single-pass stream of byte chunks

Quick Start:

    >>> from f9_file_store import FileStore
    >>> store = FileStore.local("/data")
    >>> await store.write("document.txt", b"Hello, world!")
    >>> await store.read_bytes("document.txt")
    b'Hello, world!'

    >>> # Switch to remote storage with just one line
    >>> store = FileStore.from_uri("b2://my-bucket?key_id=...&key=...")
    >>> await store.write("document.txt", b"Hello, world!")

Exception Handling:

    >>> from f9_file_store import NotFoundError
    >>> try:
    ...     await store.stat("nonexistent.txt")
    ... except NotFoundError:
    ...     print("File not found")

Supported Operations:
    - list() - Enumerate files under a prefix, in path order
    - stat() - Get file metadata
    - read() / read_bytes() - Stream or fetch content
    - write() - Replace a file from any data source
    - delete() - Remove a file
    - delete_prefix() - Remove every file beneath a directory
    - exists() - Check file existence
    - copy() / move() - Duplicate or relocate a file

"""

from .b2_backend import B2Backend
from .config import B2Config, LocalConfig
from .errors import (
    FatalError,
    FileStoreError,
    IntegrityError,
    InvalidPathError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
)
from .factory import BackendFactory, register_backend_factory, resolve_backend
from .interfaces import FileMetadata, StorageBackend
from .local import LocalBackend
from .paths import PathLike, StoragePath
from .retry import RetryPolicy
from .store import FileStore
from .streams import DataStream
from .utils import DEFAULT_CHUNK_SIZE, ChecksumAlgorithm

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "B2Backend",
    "B2Config",
    "BackendFactory",
    "ChecksumAlgorithm",
    "DataStream",
    "FatalError",
    "FileMetadata",
    "FileStore",
    "FileStoreError",
    "IntegrityError",
    "InvalidPathError",
    "LocalBackend",
    "LocalConfig",
    "NotFoundError",
    "PathLike",
    "PermissionDeniedError",
    "RetryPolicy",
    "StorageBackend",
    "StoragePath",
    "TransientError",
    "register_backend_factory",
    "resolve_backend",
]
