"""Tests for the dual-tier shard persistence."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest

from docweave.config import EmbeddingIdentity
from docweave.sync.persistence import HOT_DB_NAME, PersistenceManager

IDENTITY = EmbeddingIdentity("fake", "fake-model", 64)
OTHER = EmbeddingIdentity("fake", "other-model", 64)


@pytest.fixture
def root(tmp_path: Path) -> Path:
    path = tmp_path / "notes"
    path.mkdir()
    return path


@pytest.fixture
def persistence(tmp_path: Path, root: Path):
    manager = PersistenceManager(tmp_path / "cache", root)
    yield manager
    manager.close()


class TestPersistenceManager:
    """Test the hot and cold tiers."""

    def test_init_creates_cache(self, tmp_path: Path, persistence: PersistenceManager) -> None:
        assert (tmp_path / "cache" / HOT_DB_NAME).exists()

    def test_wal_mode(self, persistence: PersistenceManager) -> None:
        mode = persistence._conn.execute("PRAGMA journal_mode;").fetchone()[0]

        assert mode.lower() == "wal"

    def test_missing_state(self, persistence: PersistenceManager) -> None:
        assert persistence.load_state(IDENTITY) is None

    def test_save_writes_both_tiers(self, root: Path, persistence: PersistenceManager) -> None:
        assert persistence.save_state(b"full", IDENTITY, b"slim")

        cold = root / ".docweave" / f"graph-state-{IDENTITY.shard_key}.bin"
        assert cold.read_bytes() == b"slim"
        assert (root / ".docweave" / ".gitignore").read_text() == "*\n"
        assert persistence.load_state(IDENTITY) == b"full"

    def test_cold_tier_repopulates_hot(self, tmp_path: Path, root: Path, persistence: PersistenceManager) -> None:
        """A fresh machine has no hot cache but finds the synced file in the document root."""
        persistence.save_state(b"full", IDENTITY, b"slim")
        fresh = PersistenceManager(tmp_path / "other-cache", root)
        try:
            assert fresh.load_state(IDENTITY) == b"slim"
            (root / ".docweave" / f"graph-state-{IDENTITY.shard_key}.bin").unlink()
            assert fresh.load_state(IDENTITY) == b"slim"
        finally:
            fresh.close()

    def test_shards_are_isolated(self, persistence: PersistenceManager) -> None:
        persistence.save_state(b"one", IDENTITY)
        persistence.save_state(b"two", OTHER)

        assert persistence.load_state(IDENTITY) == b"one"
        assert persistence.load_state(OTHER) == b"two"
        assert persistence.list_shards() == sorted([IDENTITY.shard_key, OTHER.shard_key])

    def test_overwrite(self, persistence: PersistenceManager) -> None:
        persistence.save_state(b"old", IDENTITY)
        persistence.save_state(b"new", IDENTITY)

        assert persistence.load_state(IDENTITY) == b"new"

    def test_prune_shards(self, root: Path, persistence: PersistenceManager) -> None:
        persistence.save_state(b"one", IDENTITY)
        persistence.save_state(b"two", OTHER)

        removed = persistence.prune_shards([IDENTITY.shard_key])

        assert removed == 1
        assert persistence.list_shards() == [IDENTITY.shard_key]
        assert not (root / ".docweave" / f"graph-state-{OTHER.shard_key}.bin").exists()

    def test_wipe_state(self, persistence: PersistenceManager) -> None:
        persistence.save_state(b"one", IDENTITY)

        persistence.wipe_state(IDENTITY)

        assert persistence.load_state(IDENTITY) is None

    def test_purge_all(self, persistence: PersistenceManager) -> None:
        persistence.save_state(b"one", IDENTITY)
        persistence.save_state(b"two", OTHER)

        persistence.purge_all()

        assert persistence.list_shards() == []

    def test_without_root_only_hot_tier(self, tmp_path: Path) -> None:
        manager = PersistenceManager(tmp_path / "cache-only")
        try:
            assert manager.save_state(b"full", IDENTITY, b"slim")
            assert manager.load_state(IDENTITY) == b"full"
        finally:
            manager.close()

    def test_cold_write_failure_is_logged_not_raised(self, persistence: PersistenceManager) -> None:
        with patch.object(persistence, "_write_cold", side_effect=OSError("disk full")):
            assert not persistence.save_state(b"full", IDENTITY, b"slim")

        assert persistence.load_state(IDENTITY) == b"full"

    def test_hot_write_failure_is_logged_not_raised(self, root: Path, persistence: PersistenceManager) -> None:
        with patch.object(persistence, "_write_hot", side_effect=sqlite3.OperationalError("locked")):
            assert not persistence.save_state(b"full", IDENTITY, b"slim")

        assert (root / ".docweave" / f"graph-state-{IDENTITY.shard_key}.bin").exists()
