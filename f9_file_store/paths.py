"""Canonical storage addresses shared by hierarchical and flat backends.

A ``StoragePath`` is an ordered tuple of non-empty segments plus a flag that
distinguishes directory-like prefixes from file-like leaves. The same value
addresses a file beneath a local root directory and an object key in a bucket,
which is what keeps the two backends interchangeable.

Key properties:
    - Normalisation collapses ``.``, ``..`` and empty segments
    - Equality is structural, so ``a/b`` and ``a//b`` compare equal
    - Backslashes are treated as separators (Windows input)
    - A leading ``/`` is root-relative, never absolute
    - ``..`` cannot climb above the implied root
    - Ordering compares segments lexicographically, which is the order
      ``list`` results are returned in

Example:

    >>> from f9_file_store.paths import StoragePath
    >>> path = StoragePath.parse("reports//2024/./q1.csv")
    >>> str(path)
    'reports/2024/q1.csv'
    >>> path.parent()
    StoragePath('reports/2024/')
    >>> StoragePath.parse("reports/") / "2024" / "q1.csv" == path
    True

"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePath
from typing import Union

from .errors import InvalidPathError

SEPARATOR = "/"
_FORBIDDEN = (SEPARATOR, "\\", "\x00")

PathLike = Union[str, PurePath, "StoragePath"]


@dataclass(frozen=True, order=True)
class StoragePath:
    """Normalised location of a file or prefix within a backend."""

    parts: tuple[str, ...] = ()
    is_directory: bool = False

    def __post_init__(self) -> None:
        """Enforce the segment invariants for directly constructed paths."""
        for part in self.parts:
            if not part or part in (".", "..") or any(ch in part for ch in _FORBIDDEN):
                message = f"Invalid path segment {part!r}"
                raise InvalidPathError(message, path=SEPARATOR.join(self.parts))
        if not self.parts and not self.is_directory:
            # The root is always a prefix.
            object.__setattr__(self, "is_directory", True)

    @classmethod
    def root(cls) -> StoragePath:
        """Return the empty directory-like path addressing the whole store."""
        return cls((), is_directory=True)

    @classmethod
    def parse(cls, raw: PathLike) -> StoragePath:
        """Parse user input into a normalised StoragePath.

        Args:
            raw: String, ``pathlib`` path, or an existing StoragePath.

        Returns:
            The normalised path. A trailing separator, ``.`` or ``..`` makes it
            directory-like.

        Raises:
            InvalidPathError: On NUL bytes, unsupported input types, or ``..``
                segments that would escape above the root.

        """
        if isinstance(raw, StoragePath):
            return raw
        if isinstance(raw, PurePath):
            raw = raw.as_posix()
        if not isinstance(raw, str):
            raise InvalidPathError.unsupported_type(raw)
        if "\x00" in raw:
            raise InvalidPathError.null_byte(raw)

        segments = raw.replace("\\", SEPARATOR).split(SEPARATOR)
        parts: list[str] = []
        for segment in segments:
            if segment in ("", "."):
                continue
            if segment == "..":
                if not parts:
                    raise InvalidPathError.escapes_root(raw)
                parts.pop()
                continue
            parts.append(segment)

        is_directory = not parts or segments[-1] in ("", ".", "..")
        return cls(tuple(parts), is_directory=is_directory)

    def join(self, relative: PathLike) -> StoragePath:
        """Return this path extended by ``relative``.

        The result keeps the directory flag of the last operand that has
        segments, which makes ``join`` associative.
        """
        other = StoragePath.parse(relative)
        if not other.parts:
            return self
        return StoragePath(self.parts + other.parts, is_directory=other.is_directory)

    __truediv__ = join

    def parent(self) -> StoragePath | None:
        """Return the containing prefix, or None for the root."""
        if not self.parts:
            return None
        return StoragePath(self.parts[:-1], is_directory=True)

    def as_prefix(self) -> StoragePath:
        """Return a directory-like copy of this path."""
        if self.is_directory:
            return self
        return StoragePath(self.parts, is_directory=True)

    def as_file(self) -> StoragePath:
        """Return a file-like copy of this path."""
        if not self.parts:
            raise InvalidPathError.root_not_allowed(self)
        return StoragePath(self.parts, is_directory=False)

    @property
    def name(self) -> str:
        """Final segment, or an empty string for the root."""
        return self.parts[-1] if self.parts else ""

    @property
    def is_root(self) -> bool:
        """Whether this path addresses the whole store."""
        return not self.parts

    def has_prefix(self, prefix: StoragePath) -> bool:
        """Return True when this path starts with ``prefix`` as a flat key would.

        Directory-like prefixes match whole segments. A file-like prefix may
        match a partial final segment, so ``logs/app`` matches ``logs/app.1``.
        """
        count = len(prefix.parts)
        if prefix.is_directory:
            return len(self.parts) > count and self.parts[:count] == prefix.parts
        if len(self.parts) < count:
            return False
        head, last = prefix.parts[:-1], prefix.parts[-1]
        return self.parts[: count - 1] == head and self.parts[count - 1].startswith(last)

    def relative_to(self, prefix: StoragePath) -> StoragePath:
        """Strip whole leading segments belonging to ``prefix``."""
        count = len(prefix.parts)
        if self.parts[:count] != prefix.parts:
            message = f"{self} is not beneath {prefix}"
            raise InvalidPathError(message, path=self)
        return StoragePath(self.parts[count:], is_directory=self.is_directory)

    @property
    def key(self) -> str:
        """Flat object key: segments joined with ``/`` (no trailing slash)."""
        return SEPARATOR.join(self.parts)

    def __str__(self) -> str:
        """Render the canonical string form accepted by ``parse``."""
        if self.is_directory and self.parts:
            return self.key + SEPARATOR
        return self.key

    def __repr__(self) -> str:
        """Return a compact debugging representation."""
        return f"StoragePath({str(self)!r})"


def require_file(path: PathLike) -> StoragePath:
    """Parse ``path`` and ensure it addresses a file rather than a prefix.

    Raises:
        InvalidPathError: When the path is the root or directory-like.

    """
    parsed = StoragePath.parse(path)
    if parsed.is_root:
        raise InvalidPathError.root_not_allowed(path)
    if parsed.is_directory:
        raise InvalidPathError.file_required(path)
    return parsed


def require_prefix(path: PathLike) -> StoragePath:
    """Parse ``path`` as a directory-like prefix below the root.

    ``"logs"`` and ``"logs/"`` both address the ``logs/`` subtree.

    Raises:
        InvalidPathError: When the path is the root.

    """
    parsed = StoragePath.parse(path)
    if parsed.is_root:
        raise InvalidPathError.root_not_allowed(path)
    return parsed.as_prefix()


def join_paths(base: PathLike, *relatives: PathLike) -> StoragePath:
    """Join any number of path fragments onto ``base``."""
    result = StoragePath.parse(base)
    for relative in relatives:
        result = result.join(relative)
    return result
