"""
Unit tests for configuration.

Tests cover:
- Defaults
- Environment variable loading
- Validation
- Backing store factory
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from linedb.backing.base import BackingStore, create_backing_store
from linedb.backing.file import LocalFileBackingStore
from linedb.backing.memory import InMemoryBackingStore
from linedb.config import (
    CompactionConfig,
    LinedbConfig,
    ObservabilityConfig,
    StorageBackend,
    StorageConfig,
)


class TestDefaults:
    """Tests for default settings."""

    def test_safe_defaults(self):
        config = LinedbConfig()

        assert config.storage.backend == StorageBackend.FILE
        assert config.storage.fsync is True
        assert config.storage.file_pattern == "{collection}.jsonl"
        assert config.compaction.enabled is True
        assert config.compaction.compact_on_close is True
        assert config.feed.retention == 0
        assert config.mutation.default_timeout is None


class TestEnvironment:
    """Tests for environment variable loading."""

    def test_section_prefixes(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LINEDB_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("LINEDB_FSYNC", "false")
        monkeypatch.setenv("LINEDB_COMPACT_MIN_SUPERSEDED_LINES", "10")
        monkeypatch.setenv("LINEDB_FEED_RETENTION", "50")
        monkeypatch.setenv("LINEDB_MUTATION_DEFAULT_TIMEOUT", "2.5")

        config = LinedbConfig.from_env()

        assert config.storage.data_dir == tmp_path
        assert config.storage.fsync is False
        assert config.compaction.min_superseded_lines == 10
        assert config.feed.retention == 50
        assert config.mutation.default_timeout == 2.5

    def test_backend_from_env(self, monkeypatch):
        monkeypatch.setenv("LINEDB_BACKEND", "memory")

        assert StorageConfig().backend == StorageBackend.MEMORY


class TestValidation:
    """Tests for configuration validation."""

    def test_file_pattern_needs_placeholder(self):
        with pytest.raises(ValidationError):
            StorageConfig(file_pattern="data.jsonl")

    def test_garbage_ratio_bounds(self):
        with pytest.raises(ValidationError):
            CompactionConfig(garbage_ratio=1.5)

    def test_invalid_log_format(self):
        config = LinedbConfig(observability=ObservabilityConfig(log_format="xml"))

        with pytest.raises(ValueError):
            config.validate_config()


class TestBackingFactory:
    """Tests for create_backing_store()."""

    def test_file_backend(self, tmp_path):
        config = StorageConfig(data_dir=tmp_path, file_pattern="c_{collection}.jsonl", fsync=False)

        backing = create_backing_store(config, "users")

        assert isinstance(backing, LocalFileBackingStore)
        assert backing.path == Path(tmp_path) / "c_users.jsonl"
        assert backing.fsync is False
        assert isinstance(backing, BackingStore)

    def test_memory_backend(self):
        backing = create_backing_store(StorageConfig(backend=StorageBackend.MEMORY), "users")

        assert isinstance(backing, InMemoryBackingStore)
        assert backing.name == "users"
