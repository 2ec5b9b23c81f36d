"""Immutable configuration records consumed by the backends at construction.

Both records can be built directly or from a ``connection_info`` style
mapping whose values may be strings (as produced by URI query parameters or
environment variables). Invalid values raise ``ValueError``; there is no live
reconfiguration.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .retry import RetryPolicy
from .utils import DEFAULT_CHUNK_SIZE, SUPPORTED_ALGORITHMS

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .utils import ChecksumAlgorithm

MIB = 1024 * 1024
# Largest single upload and largest part the B2 service accepts.
B2_MAX_PART_SIZE = 5 * 1000 * 1000 * 1000
DEFAULT_B2_HOST = "https://api.backblazeb2.com"

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _coerce_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    message = f"Invalid boolean for {name!r}: {value!r}"
    raise ValueError(message)


def _coerce_number(name: str, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        message = f"Invalid {kind.__name__} for {name!r}: {value!r}"
        raise ValueError(message) from exc


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        message = f"{name} must be positive, got {value!r}"
        raise ValueError(message)


@dataclass(frozen=True)
class LocalConfig:
    """Settings for ``LocalBackend``.

    Attributes:
        root: Directory that contains every stored file.
        create_root: Create ``root`` when it does not exist.
        compute_hashes: Report content hashes from ``stat`` and ``list``.
            Writes always report the hash computed while streaming.
        checksum_algorithm: Digest used for content hashes.
        chunk_size: Read size for streams returned by ``read``.
        fsync: Flush temporary files to stable storage before the rename.

    """

    root: Path
    create_root: bool = True
    compute_hashes: bool = False
    checksum_algorithm: ChecksumAlgorithm = "sha1"
    chunk_size: int = DEFAULT_CHUNK_SIZE
    fsync: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root).expanduser())
        if self.checksum_algorithm not in SUPPORTED_ALGORITHMS:
            message = f"Unsupported checksum algorithm: {self.checksum_algorithm}"
            raise ValueError(message)
        _require_positive("chunk_size", self.chunk_size)

    @classmethod
    def from_mapping(cls, connection_info: Mapping[str, Any]) -> LocalConfig:
        """Build a configuration from loosely typed values.

        Recognised keys: ``root`` (required), ``create_root``,
        ``compute_hashes``, ``checksum`` / ``checksum_algorithm``,
        ``chunk_size`` and ``fsync``.
        """
        if "root" not in connection_info:
            message = "Missing 'root' in connection_info"
            raise ValueError(message)

        options: dict[str, Any] = {"root": Path(str(connection_info["root"]))}
        for key in ("create_root", "compute_hashes", "fsync"):
            if key in connection_info:
                options[key] = _coerce_bool(key, connection_info[key])
        algorithm = connection_info.get("checksum_algorithm", connection_info.get("checksum"))
        if algorithm is not None:
            options["checksum_algorithm"] = str(algorithm).lower()
        if "chunk_size" in connection_info:
            options["chunk_size"] = _coerce_number("chunk_size", connection_info["chunk_size"], int)
        return cls(**options)


@dataclass(frozen=True)
class B2Config:
    """Settings for ``B2Backend``.

    Attributes:
        key_id: Application key id used for ``b2_authorize_account``.
        key: Application key secret.
        bucket: Bucket name.
        prefix: Optional key prefix; only objects beneath it are visible.
        host: Authorization endpoint.
        small_file_threshold: Largest write sent as a single upload request.
        part_size: Part size for large uploads. Raised to the server's
            minimum when smaller.
        token_ttl: Seconds an authorization is trusted before it is renewed
            proactively. Tokens rejected earlier are renewed on demand.
        max_attempts: Attempts per request, including the first one.
        backoff_base: Base delay in seconds for exponential backoff.
        backoff_max: Cap on a single backoff delay.
        timeout: Per-request timeout in seconds for the default transport.
        max_resume_attempts: Range resumes allowed for one download.
        list_page_size: ``maxFileCount`` sent with listing requests.

    """

    key_id: str
    key: str = field(repr=False)
    bucket: str
    prefix: str = ""
    host: str = DEFAULT_B2_HOST
    small_file_threshold: int = 100 * MIB
    part_size: int = 100 * MIB
    token_ttl: float = 23 * 60 * 60
    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 16.0
    timeout: float = 60.0
    max_resume_attempts: int = 3
    list_page_size: int = 1000

    def __post_init__(self) -> None:
        for name in ("key_id", "key", "bucket"):
            if not getattr(self, name):
                message = f"B2 configuration requires {name!r}"
                raise ValueError(message)
        for name in ("small_file_threshold", "part_size", "token_ttl", "max_attempts", "timeout", "list_page_size"):
            _require_positive(name, getattr(self, name))
        for name in ("small_file_threshold", "part_size"):
            if getattr(self, name) > B2_MAX_PART_SIZE:
                message = f"{name} cannot exceed {B2_MAX_PART_SIZE} bytes"
                raise ValueError(message)
        if self.max_resume_attempts < 0:
            message = "max_resume_attempts cannot be negative"
            raise ValueError(message)
        if not 0 < self.list_page_size <= 10000:
            message = "list_page_size must be between 1 and 10000"
            raise ValueError(message)
        object.__setattr__(self, "host", self.host.rstrip("/"))

    @property
    def retry_policy(self) -> RetryPolicy:
        """Retry policy derived from the backoff settings."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
        )

    @classmethod
    def from_mapping(cls, connection_info: Mapping[str, Any]) -> B2Config:
        """Build a configuration from loosely typed values.

        ``key_id``, ``key`` (or ``application_key``) and ``bucket`` are
        required. Numeric settings accept strings.
        """
        options: dict[str, Any] = {}
        for name in ("key_id", "bucket"):
            if name not in connection_info:
                message = f"Missing {name!r} in connection_info"
                raise ValueError(message)
            options[name] = str(connection_info[name])
        secret = connection_info.get("key", connection_info.get("application_key"))
        if secret is None:
            message = "Missing 'key' in connection_info"
            raise ValueError(message)
        options["key"] = str(secret)

        for name in ("prefix", "host"):
            if name in connection_info:
                options[name] = str(connection_info[name])
        for name in ("small_file_threshold", "part_size", "max_attempts", "max_resume_attempts", "list_page_size"):
            if name in connection_info:
                options[name] = _coerce_number(name, connection_info[name], int)
        for name in ("token_ttl", "backoff_base", "backoff_max", "timeout"):
            if name in connection_info:
                options[name] = _coerce_number(name, connection_info[name], float)
        return cls(**options)
