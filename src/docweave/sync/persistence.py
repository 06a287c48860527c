"""Sharded, dual-tier persistence of index state.

The hot tier is a local SQLite cache holding the full state per shard. The
cold tier is a portable file inside the document root holding the slim state
(no raw content) so it stays small enough to sync between machines.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from docweave.config import DATA_DIR_NAME, EmbeddingIdentity

LOGGER = logging.getLogger(__name__)

COLD_PREFIX = "graph-state-"
COLD_SUFFIX = ".bin"
HOT_DB_NAME = "index-cache.db"


class PersistenceManager:
    """Reads and writes shard blobs keyed by :attr:`EmbeddingIdentity.shard_key`."""

    def __init__(self, cache_dir: Path, root: Path | None = None, *, data_dir: str = DATA_DIR_NAME) -> None:
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.cache_dir / HOT_DB_NAME
        self.cold_dir = Path(root) / data_dir if root is not None else None
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS shards (
                    key TEXT PRIMARY KEY,
                    payload BLOB NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    # Writing ----------------------------------------------------------------

    def save_state(self, full_blob: bytes, identity: EmbeddingIdentity, slim_blob: bytes | None = None) -> bool:
        """Write both tiers. Failures are logged; returns True only if both succeeded."""
        key = identity.shard_key
        ok = True
        try:
            self._write_hot(key, full_blob)
        except sqlite3.Error as exc:
            LOGGER.error("Hot cache write failed for %s: %s", key, exc)
            ok = False
        if self.cold_dir is not None:
            try:
                self._write_cold(key, slim_blob if slim_blob is not None else full_blob)
            except OSError as exc:
                LOGGER.error("Portable state write failed for %s: %s", key, exc)
                ok = False
        if ok:
            LOGGER.debug("Saved shard %s (%d bytes)", key, len(full_blob))
        return ok

    def _write_hot(self, key: str, blob: bytes) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO shards(key, payload, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET payload = excluded.payload, updated_at = CURRENT_TIMESTAMP
                """,
                (key, sqlite3.Binary(blob)),
            )

    def _write_cold(self, key: str, blob: bytes) -> None:
        assert self.cold_dir is not None
        self.cold_dir.mkdir(parents=True, exist_ok=True)
        ignore = self.cold_dir / ".gitignore"
        if not ignore.exists():
            ignore.write_text("*\n", encoding="utf-8")
        target = self._cold_path(key)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(blob)
        os.replace(tmp, target)

    # Reading ----------------------------------------------------------------

    def load_state(self, identity: EmbeddingIdentity) -> bytes | None:
        """Hot tier first; a cold-tier hit is copied back into the hot tier."""
        key = identity.shard_key
        try:
            with self._lock:
                row = self._conn.execute("SELECT payload FROM shards WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            LOGGER.error("Hot cache read failed for %s: %s", key, exc)
            row = None
        if row is not None:
            LOGGER.debug("Loaded shard %s from hot cache", key)
            return bytes(row["payload"])

        if self.cold_dir is None:
            return None
        path = self._cold_path(key)
        if not path.exists():
            return None
        try:
            blob = path.read_bytes()
        except OSError as exc:
            LOGGER.error("Portable state read failed for %s: %s", key, exc)
            return None
        LOGGER.info("Loaded shard %s from portable state", key)
        try:
            self._write_hot(key, blob)
        except sqlite3.Error as exc:
            LOGGER.warning("Could not repopulate hot cache for %s: %s", key, exc)
        return blob

    def list_shards(self) -> list[str]:
        with self._lock:
            keys = {row["key"] for row in self._conn.execute("SELECT key FROM shards")}
        if self.cold_dir is not None and self.cold_dir.exists():
            for path in self.cold_dir.glob(f"{COLD_PREFIX}*{COLD_SUFFIX}"):
                keys.add(path.name[len(COLD_PREFIX) : -len(COLD_SUFFIX)])
        return sorted(keys)

    # Removal ----------------------------------------------------------------

    def prune_shards(self, keep: Iterable[str]) -> int:
        """Delete every shard whose key is not in ``keep``."""
        kept = set(keep)
        removed = 0
        for key in self.list_shards():
            if key not in kept:
                self._delete(key)
                removed += 1
        if removed:
            LOGGER.info("Pruned %d stale shards", removed)
        return removed

    def wipe_state(self, identity: EmbeddingIdentity) -> None:
        self._delete(identity.shard_key)

    def purge_all(self) -> None:
        for key in self.list_shards():
            self._delete(key)
        LOGGER.info("Purged all persisted state")

    def _delete(self, key: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM shards WHERE key = ?", (key,))
        if self.cold_dir is not None:
            self._cold_path(key).unlink(missing_ok=True)

    def _cold_path(self, key: str) -> Path:
        assert self.cold_dir is not None
        return self.cold_dir / f"{COLD_PREFIX}{key}{COLD_SUFFIX}"
