"""Backend factory for URI-based backend resolution and instantiation.

This module creates StorageBackend instances from URI strings. It supports
the built-in schemes below and allows registration of custom backend
factories.

Supported URI Schemes:
    - file://path - LocalBackend rooted at ``path``
    - b2://bucket/optional/prefix - B2Backend for a bucket (and key prefix)

Query parameters are passed to the backend configuration as strings and
coerced there (see ``LocalConfig.from_mapping`` and
``B2Config.from_mapping``).

Example:
    >>> from f9_file_store.factory import resolve_backend
    >>> # Local backend that also reports SHA-256 hashes
    >>> backend = resolve_backend("file:///data/files?compute_hashes=true&checksum=sha256")
    >>> # B2 backend restricted to the "exports/" prefix of a bucket
    >>> backend = resolve_backend("b2://reports/exports?key_id=0012ab&key=K001xyz")

"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import parse_qs, urlparse

if TYPE_CHECKING:
    from typing import TypeAlias

    from .interfaces import StorageBackend

    # Type alias for backend factory functions
    BackendFactoryFunc: TypeAlias = Callable[[str, dict[str, Any]], StorageBackend]


class BackendFactory:
    """Factory for creating backends from URI strings."""

    def __init__(self) -> None:
        """Initialize the factory with built-in URI scheme handlers."""
        self._factories: dict[str, BackendFactoryFunc] = {
            "file": self._create_file_backend,
            "b2": self._create_b2_backend,
        }

    @property
    def schemes(self) -> list[str]:
        """Registered URI schemes in sorted order."""
        return sorted(self._factories)

    def parse_uri(self, uri: str) -> tuple[str, str, dict[str, str]]:
        """Parse a URI into scheme, path, and query parameters.

        Args:
            uri: URI string to parse

        Returns:
            Tuple of (scheme, path, params) where params is a dict of query parameters

        Raises:
            ValueError: If URI format is invalid

        """
        parsed = urlparse(uri)

        if not parsed.scheme:
            msg = f"Invalid URI: missing scheme in '{uri}'"
            raise ValueError(msg)

        # file://relative/dir keeps the first segment in netloc.
        if parsed.netloc:
            path = parsed.netloc + (parsed.path or "")
        else:
            path = parsed.path

        if not path:
            msg = f"Invalid URI: missing path in '{uri}'"
            raise ValueError(msg)

        params: dict[str, str] = {}
        if parsed.query:
            # Only the first value of a repeated parameter is used.
            params = {key: values[0] for key, values in parse_qs(parsed.query).items()}

        return parsed.scheme.lower(), path, params

    def resolve(self, uri: str) -> StorageBackend:
        """Create a backend instance from a URI string.

        Args:
            uri: URI string specifying the backend configuration

        Returns:
            StorageBackend instance

        Raises:
            ValueError: If the URI is malformed, the scheme is unsupported or
                a parameter is invalid

        """
        scheme, path, params = self.parse_uri(uri)

        if scheme not in self._factories:
            supported = ", ".join(self.schemes)
            msg = f"Unsupported URI scheme: '{scheme}'. Supported schemes: {supported}"
            raise ValueError(msg)

        factory_func = self._factories[scheme]
        return factory_func(path, params)

    def register(
        self,
        scheme: str,
        factory_func: BackendFactoryFunc,
    ) -> None:
        """Register a custom backend factory for a URI scheme.

        Args:
            scheme: URI scheme to register (e.g., "s3", "azure")
            factory_func: Callable that takes (path, params) and returns a StorageBackend

        """
        if not callable(factory_func):
            msg = "factory_func must be callable"
            raise TypeError(msg)
        self._factories[scheme.lower()] = factory_func

    def _create_file_backend(self, path: str, params: dict[str, Any]) -> StorageBackend:
        """Create a LocalBackend from URI components.

        URI format: file:///data/files?create_root=false&compute_hashes=true&checksum=sha256
        """
        from .local import LocalBackend

        return LocalBackend.from_connection_info({**params, "root": path})

    def _create_b2_backend(self, path: str, params: dict[str, Any]) -> StorageBackend:
        """Create a B2Backend from URI components.

        URI format: b2://bucket/optional/prefix?key_id=...&key=...&part_size=...

        Args:
            path: Bucket name, optionally followed by a key prefix
            params: Query parameters (key_id, key, host, part_size,
                small_file_threshold, max_attempts and the other B2Config
                settings)

        Returns:
            B2Backend instance (not yet connected)

        """
        from .b2_backend import B2Backend

        bucket, _, prefix = path.strip("/").partition("/")
        if not bucket:
            msg = "Invalid B2 URI: missing bucket name"
            raise ValueError(msg)

        connection_info: dict[str, Any] = {**params, "bucket": bucket}
        if prefix:
            connection_info["prefix"] = prefix
        return B2Backend.from_connection_info(connection_info)


# Global default factory instance
_default_factory = BackendFactory()


def resolve_backend(uri: str) -> StorageBackend:
    """Convenience function to resolve a backend from a URI using the default factory.

    Args:
        uri: URI string specifying the backend configuration

    Returns:
        StorageBackend instance

    Raises:
        ValueError: If URI scheme is unsupported or the URI is malformed

    Example:
        >>> backend = resolve_backend("file:///data/files")
        >>> backend = resolve_backend("b2://my-bucket?key_id=abc&key=secret")

    """
    return _default_factory.resolve(uri)


def register_backend_factory(
    scheme: str,
    factory_func: BackendFactoryFunc,
) -> None:
    """Register a custom backend factory for a URI scheme.

    Args:
        scheme: URI scheme to register (e.g., "s3", "azure")
        factory_func: Callable that takes (path, params) and returns a StorageBackend

    Example:
        >>> def my_s3_factory(path: str, params: dict) -> StorageBackend:
        ...     return S3Backend(bucket=path, **params)
        >>> register_backend_factory("s3", my_s3_factory)

    """
    _default_factory.register(scheme, factory_func)
