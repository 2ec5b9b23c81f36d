"""Error taxonomy shared by every storage backend.

Every failure that leaves the capability contract is one of six kinds:

    - NotFoundError: the addressed file does not exist
    - InvalidPathError: the address itself is malformed or escapes the root
    - PermissionDeniedError: the backend refused access
    - IntegrityError: a checksum or size verification failed (never retried)
    - TransientError: a failure likely to succeed on retry (timeouts, 5xx)
    - FatalError: anything else

Backends translate lower level failures (``OSError``, HTTP statuses, transport
exceptions) into these classes before they reach callers. The helpers at the
bottom of this module perform that translation for the common cases and are
also used by the facade as a last line of defence.

Example:

    >>> from f9_file_store import FileStore, NotFoundError
    >>> try:
    ...     await store.stat("missing.txt")
    ... except NotFoundError as exc:
    ...     print(exc.kind, exc.path)
    not_found missing.txt

"""

from __future__ import annotations

import errno
import functools
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

import httpx

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterator

T = TypeVar("T")


class FileStoreError(RuntimeError):
    """Base exception for storage operations."""

    kind: ClassVar[str] = "fatal"

    def __init__(self, message: str, *, path: Any | None = None) -> None:
        """Initialise the error with an optional storage path context."""
        path_str = str(path) if path is not None else None
        detail = message if path_str is None else ": ".join((message, path_str))
        super().__init__(detail)
        self.message = message
        self.path = path


class NotFoundError(FileStoreError):
    """Raised when the addressed file is absent."""

    kind = "not_found"

    def __init__(self, path: Any, *, reason: str | None = None) -> None:
        """Create a not-found error for the provided path."""
        super().__init__(reason or "Path not found", path=path)


class InvalidPathError(FileStoreError):
    """Raised when a path is malformed or cannot be used for an operation."""

    kind = "invalid_path"

    @classmethod
    def null_byte(cls, path: Any) -> InvalidPathError:
        """Return an error for paths containing NUL characters."""
        return cls("Path contains a null byte", path=repr(path))

    @classmethod
    def escapes_root(cls, path: Any) -> InvalidPathError:
        """Return an error for paths that climb above the storage root."""
        return cls("Path escapes storage root", path=path)

    @classmethod
    def file_required(cls, path: Any) -> InvalidPathError:
        """Return an error when a directory-like path addresses a file operation."""
        return cls("Operation requires a file path", path=path)

    @classmethod
    def root_not_allowed(cls, path: Any) -> InvalidPathError:
        """Return an error when the storage root is targeted explicitly."""
        return cls("Path cannot refer to storage root", path=path)

    @classmethod
    def unsupported_type(cls, path: Any) -> InvalidPathError:
        """Return an error for objects that cannot be interpreted as paths."""
        return cls(f"Unsupported path type {type(path).__name__}", path=path)


class PermissionDeniedError(FileStoreError):
    """Raised when the backend refuses access to a path."""

    kind = "permission_denied"

    def __init__(self, message: str = "Permission denied", *, path: Any | None = None) -> None:
        """Create a permission error with an optional path."""
        super().__init__(message, path=path)


class IntegrityError(FileStoreError):
    """Raised when transferred content fails verification."""

    kind = "integrity"

    @classmethod
    def checksum_mismatch(
        cls,
        path: Any,
        *,
        expected: str,
        actual: str,
    ) -> IntegrityError:
        """Return an error describing a digest mismatch."""
        return cls(f"Checksum mismatch (expected {expected}, got {actual})", path=path)

    @classmethod
    def size_mismatch(cls, path: Any, *, expected: int, actual: int) -> IntegrityError:
        """Return an error describing a length mismatch."""
        return cls(f"Size mismatch (expected {expected} bytes, got {actual})", path=path)


class TransientError(FileStoreError):
    """Raised for failures that are expected to succeed when retried."""

    kind = "transient"

    def __init__(
        self,
        message: str,
        *,
        path: Any | None = None,
        status_code: int | None = None,
    ) -> None:
        """Create a transient error, optionally recording the HTTP status."""
        super().__init__(message, path=path)
        self.status_code = status_code

    @classmethod
    def unexpected_status(
        cls,
        status_code: int,
        detail: str,
        *,
        path: Any | None = None,
    ) -> TransientError:
        """Return an error for a retryable HTTP status."""
        return cls(f"Service unavailable ({status_code}): {detail}", path=path, status_code=status_code)

    @classmethod
    def connection_failed(cls, detail: str, *, path: Any | None = None) -> TransientError:
        """Return an error for timeouts and broken connections."""
        return cls(f"Connection failed: {detail}", path=path)


class FatalError(FileStoreError):
    """Raised for failures that retrying will not fix."""

    kind = "fatal"

    @classmethod
    def unexpected_status(
        cls,
        status_code: int,
        detail: str,
        *,
        path: Any | None = None,
    ) -> FatalError:
        """Return an error for a non-retryable HTTP status."""
        return cls(f"Request rejected ({status_code}): {detail}", path=path)

    @classmethod
    def auth_rejected(cls, detail: str = "Authorization rejected after refresh") -> FatalError:
        """Return an error when refreshed credentials are still refused."""
        return cls(detail)

    @classmethod
    def malformed_response(cls, operation: str, *, path: Any | None = None) -> FatalError:
        """Return an error for responses that cannot be parsed."""
        return cls(f"Malformed response from {operation}", path=path)

    @classmethod
    def disk_full(cls, path: Any) -> FatalError:
        """Return an error when the filesystem has no space left."""
        return cls("No space left on device", path=path)

    @classmethod
    def cannot_overwrite_directory(cls, path: Any) -> FatalError:
        """Return an error when a file write targets an existing directory."""
        return cls("Cannot overwrite directory with file", path=path)

    @classmethod
    def parent_not_directory(cls, path: Any) -> FatalError:
        """Return an error when a parent segment is an existing file."""
        return cls("Parent path is not a directory", path=path)

    @classmethod
    def stream_consumed(cls) -> FatalError:
        """Return an error when a single-pass stream is iterated twice."""
        return cls("Data stream has already been consumed")


_NOT_FOUND_ERRNOS = frozenset({errno.ENOENT, errno.ENOTDIR, errno.EISDIR})
_PERMISSION_ERRNOS = frozenset({errno.EACCES, errno.EPERM, errno.EROFS})
_DISK_FULL_ERRNOS = frozenset({errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)})


def from_os_error(exc: OSError, path: Any | None = None) -> FileStoreError:
    """Translate an ``OSError`` into the shared taxonomy.

    Args:
        exc: Error raised by a filesystem primitive.
        path: Storage path to attach to the translated error.

    Returns:
        The matching FileStoreError subclass instance.

    """
    code = exc.errno
    if isinstance(exc, FileNotFoundError) or code in _NOT_FOUND_ERRNOS:
        return NotFoundError(path)
    if isinstance(exc, PermissionError) or code in _PERMISSION_ERRNOS:
        return PermissionDeniedError(path=path)
    if code in _DISK_FULL_ERRNOS:
        return FatalError.disk_full(path)
    return FatalError(exc.strerror or str(exc), path=path)


def as_store_error(exc: BaseException, path: Any | None = None) -> FileStoreError:
    """Convert any exception into a FileStoreError.

    Maps:
    - FileStoreError → unchanged
    - OSError → via from_os_error()
    - httpx timeouts and transport failures → TransientError
    - other httpx errors → FatalError
    - anything else → FatalError

    """
    if isinstance(exc, FileStoreError):
        return exc
    if isinstance(exc, OSError):
        return from_os_error(exc, path)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientError.connection_failed(str(exc) or type(exc).__name__, path=path)
    return FatalError(f"{type(exc).__name__}: {exc}", path=path)


@contextmanager
def translate_errors(path: Any | None = None) -> Iterator[None]:
    """Context manager that re-raises foreign exceptions as FileStoreError.

    Args:
        path: Storage path attached to translated errors.

    """
    try:
        yield
    except FileStoreError:
        raise
    except Exception as exc:
        raise as_store_error(exc, path) from exc


def translating(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Decorate a coroutine function so foreign errors become FileStoreError."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        with translate_errors():
            return await func(*args, **kwargs)

    return wrapper
