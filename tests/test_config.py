"""Tests for backend configuration records."""

from __future__ import annotations

from pathlib import Path

import pytest

from f9_file_store import B2Config, LocalConfig, RetryPolicy
from f9_file_store.config import B2_MAX_PART_SIZE, DEFAULT_B2_HOST, MIB

# ruff: noqa: S101, PLR2004  # pytest assertions and magic numbers are ok in tests


class TestLocalConfig:
    """LocalConfig validation and coercion."""

    def test_defaults(self, tmp_path: Path) -> None:
        """Defaults favour durability and skip hashing on stat."""
        config = LocalConfig(root=tmp_path)
        assert config.create_root
        assert not config.compute_hashes
        assert config.checksum_algorithm == "sha1"
        assert config.fsync

    def test_root_is_expanded(self) -> None:
        """A home-relative root is expanded."""
        config = LocalConfig(root=Path("~/data"))
        assert "~" not in str(config.root)

    def test_invalid_values(self, tmp_path: Path) -> None:
        """Unknown algorithms and non-positive chunk sizes are rejected."""
        with pytest.raises(ValueError, match="checksum"):
            LocalConfig(root=tmp_path, checksum_algorithm="crc32")  # type: ignore[arg-type]
        with pytest.raises(ValueError, match="chunk_size"):
            LocalConfig(root=tmp_path, chunk_size=0)

    def test_from_mapping(self, tmp_path: Path) -> None:
        """String values from URIs and environments are coerced."""
        config = LocalConfig.from_mapping(
            {
                "root": str(tmp_path),
                "create_root": "no",
                "compute_hashes": "YES",
                "checksum_algorithm": "md5",
                "chunk_size": "1024",
            },
        )
        assert config.root == tmp_path
        assert config.create_root is False
        assert config.compute_hashes is True
        assert config.checksum_algorithm == "md5"
        assert config.chunk_size == 1024

    def test_from_mapping_errors(self, tmp_path: Path) -> None:
        """Missing roots and malformed values raise ValueError."""
        with pytest.raises(ValueError, match="root"):
            LocalConfig.from_mapping({})
        with pytest.raises(ValueError, match="boolean"):
            LocalConfig.from_mapping({"root": str(tmp_path), "fsync": "maybe"})
        with pytest.raises(ValueError, match="chunk_size"):
            LocalConfig.from_mapping({"root": str(tmp_path), "chunk_size": "lots"})


class TestB2Config:
    """B2Config validation and coercion."""

    def test_defaults(self) -> None:
        """Defaults follow the service recommendations."""
        config = B2Config(key_id="id", key="secret", bucket="bucket")
        assert config.host == DEFAULT_B2_HOST
        assert config.small_file_threshold == 100 * MIB
        assert config.part_size == 100 * MIB
        assert config.max_attempts == 5
        assert config.list_page_size == 1000

    def test_secret_not_in_repr(self) -> None:
        """The application key never appears in repr output."""
        assert "secret" not in repr(B2Config(key_id="id", key="secret", bucket="bucket"))

    def test_host_trailing_slash_is_removed(self) -> None:
        """Hosts are normalised for URL building."""
        config = B2Config(key_id="id", key="k", bucket="b", host="https://example.test/")
        assert config.host == "https://example.test"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"key_id": ""},
            {"bucket": ""},
            {"part_size": 0},
            {"small_file_threshold": -1},
            {"part_size": B2_MAX_PART_SIZE + 1},
            {"max_attempts": 0},
            {"max_resume_attempts": -1},
            {"list_page_size": 10_001},
        ],
    )
    def test_invalid_values(self, overrides: dict[str, object]) -> None:
        """Out-of-range settings are rejected at construction."""
        settings: dict[str, object] = {"key_id": "id", "key": "k", "bucket": "b", **overrides}
        with pytest.raises(ValueError):
            B2Config(**settings)  # type: ignore[arg-type]

    def test_retry_policy(self) -> None:
        """The retry policy mirrors the backoff settings."""
        config = B2Config(key_id="id", key="k", bucket="b", max_attempts=7, backoff_base=0.1, backoff_max=2.0)
        assert config.retry_policy == RetryPolicy(max_attempts=7, base_delay=0.1, max_delay=2.0)

    def test_from_mapping(self) -> None:
        """Query-string style values are coerced to their field types."""
        config = B2Config.from_mapping(
            {
                "key_id": "id",
                "application_key": "k",
                "bucket": "b",
                "prefix": "exports",
                "part_size": "5242880",
                "token_ttl": "3600",
                "max_attempts": "3",
            },
        )
        assert config.key == "k"
        assert config.prefix == "exports"
        assert config.part_size == 5 * MIB
        assert config.token_ttl == 3600.0
        assert config.max_attempts == 3

    def test_from_mapping_requires_credentials(self) -> None:
        """key_id, key and bucket are mandatory."""
        with pytest.raises(ValueError, match="key_id"):
            B2Config.from_mapping({"key": "k", "bucket": "b"})
        with pytest.raises(ValueError, match="key"):
            B2Config.from_mapping({"key_id": "id", "bucket": "b"})
        with pytest.raises(ValueError, match="part_size"):
            B2Config.from_mapping({"key_id": "id", "key": "k", "bucket": "b", "part_size": "big"})
