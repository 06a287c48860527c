"""Tests for the sync orchestrator: scanning, debouncing, batching and restarts."""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

import pytest

from docweave.config import AppConfig
from docweave.embedding.encoder import resolve_identity
from docweave.index.indexer import IndexWorker
from docweave.models import DocumentStat
from docweave.sync.orchestrator import SyncOrchestrator
from docweave.sync.persistence import PersistenceManager

from conftest import FakeEmbedder, MemorySource


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _indexed(orchestrator: SyncOrchestrator) -> list[str]:
    return sorted(orchestrator.workers.query(lambda worker: worker.get_file_states()))


def _block_first_alias_map(source: MemorySource) -> tuple[threading.Event, threading.Event]:
    """Make the next ``alias_map`` call hold until released; later calls pass straight through."""
    entered = threading.Event()
    release = threading.Event()
    real = source.alias_map
    calls: list[int] = []

    def alias_map() -> dict[str, str]:
        calls.append(1)
        if len(calls) == 1:
            entered.set()
            release.wait(5)
        return real()

    source.alias_map = alias_map
    return entered, release


@pytest.fixture
def persistence(tmp_path: Path):
    manager = PersistenceManager(tmp_path / "cache", tmp_path / "root")
    yield manager
    manager.close()


@pytest.fixture
def orchestrator(memory_source: MemorySource, embedder: FakeEmbedder, fast_config: AppConfig, persistence):
    orch = SyncOrchestrator(memory_source, embedder, fast_config, persistence)
    yield orch
    orch.flush_and_shutdown()
    orch.workers.shutdown()


class TestStartup:
    """Test session start, loading and rebuilding."""

    def test_fresh_start_scans_everything(self, orchestrator: SyncOrchestrator, memory_source: MemorySource) -> None:
        assert orchestrator.start() is True

        assert _indexed(orchestrator) == sorted(memory_source.documents)
        assert memory_source.listeners == [orchestrator]

    def test_restart_loads_persisted_state(
        self,
        orchestrator: SyncOrchestrator,
        memory_source: MemorySource,
        fast_config: AppConfig,
        persistence: PersistenceManager,
    ) -> None:
        orchestrator.start()
        assert orchestrator.force_save()
        orchestrator.flush_and_shutdown()

        embedder = FakeEmbedder()
        second = SyncOrchestrator(memory_source, embedder, fast_config, persistence)
        try:
            assert second.start() is False
            assert embedder.document_calls == 0
            assert _indexed(second) == sorted(memory_source.documents)
        finally:
            second.flush_and_shutdown()
            second.workers.shutdown()

    def test_incompatible_state_is_rebuilt(
        self, orchestrator: SyncOrchestrator, embedder: FakeEmbedder, persistence: PersistenceManager
    ) -> None:
        identity = resolve_identity(embedder, chunk_size=orchestrator.config.chunk_chars)
        persistence.save_state(b"garbage", identity)

        assert orchestrator.start() is True
        assert len(_indexed(orchestrator)) == 5

    def test_scan_skips_excluded_folders(
        self, memory_source: MemorySource, embedder: FakeEmbedder, fast_config: AppConfig, persistence
    ) -> None:
        config = replace(fast_config, excluded_folders=["Ontology"])
        orch = SyncOrchestrator(memory_source, embedder, config, persistence)
        try:
            orch.start()
            assert "Ontology/Databases.md" not in _indexed(orch)
        finally:
            orch.flush_and_shutdown()
            orch.workers.shutdown()

    def test_scan_prunes_removed_documents(self, orchestrator: SyncOrchestrator, memory_source: MemorySource) -> None:
        orchestrator.start()
        memory_source.remove("sqlite.md")

        assert orchestrator.scan_all()
        assert "sqlite.md" not in _indexed(orchestrator)

    def test_concurrent_scan_is_ignored(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.start(scan=False)
        orchestrator._scanning = True

        assert orchestrator.scan_all() is False

    def test_superseding_scan_cancels_running_one(
        self, orchestrator: SyncOrchestrator, memory_source: MemorySource
    ) -> None:
        orchestrator.start(scan=False)
        entered, release = _block_first_alias_map(memory_source)
        outcome: dict[str, bool] = {}
        first = threading.Thread(target=lambda: outcome.setdefault("first", orchestrator.scan_all()))
        first.start()
        try:
            assert entered.wait(5)
            assert orchestrator.scan_all() is False
            assert orchestrator.scan_all(supersede=True) is True
        finally:
            release.set()
            first.join(5)

        assert outcome["first"] is False
        assert not orchestrator.is_scanning
        assert _indexed(orchestrator) == sorted(memory_source.documents)

    def test_restart_rescans_while_old_scan_in_flight(
        self, orchestrator: SyncOrchestrator, memory_source: MemorySource
    ) -> None:
        orchestrator.start(scan=False)
        entered, release = _block_first_alias_map(memory_source)
        outcome: dict[str, bool] = {}
        old = threading.Thread(target=lambda: outcome.setdefault("old", orchestrator.scan_all()))
        old.start()
        try:
            assert entered.wait(5)
            orchestrator.commit_config_change(orchestrator.config, FakeEmbedder(dimension=512))
            assert _indexed(orchestrator) == sorted(memory_source.documents)
        finally:
            release.set()
            old.join(5)

        assert outcome["old"] is False
        assert not orchestrator.is_scanning
        assert orchestrator.identity.dimension == 512
        assert _indexed(orchestrator) == sorted(memory_source.documents)


class TestChangeEvents:
    """Test modify, delete and rename handling."""

    def test_modify_is_debounced_and_indexed(
        self, orchestrator: SyncOrchestrator, memory_source: MemorySource, embedder: FakeEmbedder
    ) -> None:
        orchestrator.start()
        calls = embedder.document_calls
        memory_source.put("weekly.md", "# Weekly\nBudget review with finance.\n")

        for _ in range(3):
            orchestrator.on_modify("weekly.md")

        assert _wait_until(
            lambda: [r.path for r in orchestrator.workers.query(lambda w: w.keyword_search("budget review"))]
            == ["weekly.md"]
        )
        orchestrator.workers.wait_for_idle()
        assert embedder.document_calls == calls + 1

    def test_active_document_waits_until_flushed(
        self, orchestrator: SyncOrchestrator, memory_source: MemorySource
    ) -> None:
        orchestrator.start()
        orchestrator.config = replace(orchestrator.config, active_indexing_delay=30.0)
        orchestrator.set_active_document("weekly.md")
        memory_source.put("weekly.md", "# Weekly\nBudget review with finance.\n")

        orchestrator.on_modify("weekly.md")

        assert orchestrator._pending_active == "weekly.md"
        assert orchestrator.workers.query(lambda w: w.keyword_search("budget review")) == []

        assert orchestrator.force_save()
        assert orchestrator._pending_active is None
        assert [r.path for r in orchestrator.workers.query(lambda w: w.keyword_search("budget review"))] == [
            "weekly.md"
        ]

    def test_switching_active_document_moves_pending_to_background(
        self, orchestrator: SyncOrchestrator
    ) -> None:
        orchestrator.start(scan=False)
        orchestrator.config = replace(orchestrator.config, active_indexing_delay=30.0, indexing_delay=30.0)
        orchestrator.set_active_document("weekly.md")
        orchestrator.on_modify("weekly.md")

        orchestrator.set_active_document("postgres.md")
        orchestrator.on_modify("postgres.md")

        assert orchestrator._pending_active == "postgres.md"
        assert "weekly.md" in orchestrator._pending_background
        orchestrator._take_pending()

    def test_excluded_modify_ignored(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.start(scan=False)

        orchestrator.on_modify(".docweave/graph-state.md")

        assert orchestrator._pending_background == {}

    def test_delete(self, orchestrator: SyncOrchestrator, memory_source: MemorySource) -> None:
        orchestrator.start()
        memory_source.remove("sqlite.md")

        orchestrator.on_delete("sqlite.md")
        orchestrator.workers.wait_for_idle()

        assert "sqlite.md" not in _indexed(orchestrator)

    def test_rename(self, orchestrator: SyncOrchestrator, memory_source: MemorySource) -> None:
        orchestrator.start()
        memory_source.put("databases/postgres.md", memory_source.read("postgres.md"))
        memory_source.remove("postgres.md")

        orchestrator.on_rename("postgres.md", "databases/postgres.md")
        orchestrator.workers.wait_for_idle()

        indexed = _indexed(orchestrator)
        assert "databases/postgres.md" in indexed
        assert "postgres.md" not in indexed

    def test_rename_into_excluded_folder_deletes(
        self, memory_source: MemorySource, embedder: FakeEmbedder, fast_config: AppConfig, persistence
    ) -> None:
        config = replace(fast_config, excluded_folders=["archive"])
        orch = SyncOrchestrator(memory_source, embedder, config, persistence)
        try:
            orch.start()
            orch.on_rename("sqlite.md", "archive/sqlite.md")
            orch.workers.wait_for_idle()
            assert "sqlite.md" not in _indexed(orch)
            assert "archive/sqlite.md" not in _indexed(orch)
        finally:
            orch.flush_and_shutdown()
            orch.workers.shutdown()


class TestDriftQuarantine:
    """Test drift-triggered re-indexing with a retry budget."""

    def test_retries_then_quarantines(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.start(scan=False)
        with patch.object(orchestrator, "_process_chunk") as process:
            for _ in range(5):
                orchestrator.report_drift(["postgres.md"])

        assert process.call_count == 3
        process.assert_called_with(["postgres.md"], force=True)
        assert orchestrator.quarantine.is_quarantined("postgres.md")

    def test_modify_lifts_quarantine(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.start(scan=False)
        with patch.object(orchestrator, "_process_chunk"):
            for _ in range(3):
                orchestrator.report_drift(["postgres.md"])

        orchestrator.on_modify("postgres.md")

        assert not orchestrator.quarantine.is_quarantined("postgres.md")
        orchestrator._take_pending()

    def test_duplicate_paths_count_once(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.start(scan=False)
        with patch.object(orchestrator, "_process_chunk") as process:
            orchestrator.report_drift(["a.md", "a.md", "b.md"])

        process.assert_called_once_with(["a.md", "b.md"], force=True)


class TestBatching:
    """Test batch splitting by count and size."""

    def _stats(self, sizes: list[int]) -> list[DocumentStat]:
        return [DocumentStat(f"{i}.md", 1.0, size) for i, size in enumerate(sizes)]

    def test_batches_by_file_count(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.config = replace(orchestrator.config, batch_max_files=2)

        batches = orchestrator._chunk_stats(self._stats([1, 1, 1, 1, 1]))

        assert [len(batch) for batch in batches] == [2, 2, 1]

    def test_batches_by_size(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.config = replace(orchestrator.config, batch_max_bytes=100)

        batches = orchestrator._chunk_stats(self._stats([60, 60, 10, 200, 5]))

        assert [[stat.path for stat in batch] for batch in batches] == [
            ["0.md", "1.md"],
            ["2.md", "3.md"],
            ["4.md"],
        ]

    def test_empty(self, orchestrator: SyncOrchestrator) -> None:
        assert orchestrator._chunk_stats([]) == []


class TestPersistenceAndConfig:
    """Test saving and configuration changes."""

    def test_force_save_writes_shard(self, orchestrator: SyncOrchestrator, persistence: PersistenceManager) -> None:
        orchestrator.start()

        assert orchestrator.force_save()

        assert persistence.load_state(orchestrator.identity) is not None
        assert persistence.list_shards() == [orchestrator.identity.shard_key]

    def test_save_without_worker(self, orchestrator: SyncOrchestrator) -> None:
        assert orchestrator.save_state() is False

    def test_save_reads_both_tiers_in_one_query(
        self, orchestrator: SyncOrchestrator, persistence: PersistenceManager
    ) -> None:
        orchestrator.start(scan=False)

        with patch.object(orchestrator.workers, "query", wraps=orchestrator.workers.query) as query:
            assert orchestrator.save_state()

        assert query.call_count == 1
        assert persistence.load_state(orchestrator.identity) is not None

    def test_soft_config_change_keeps_session(self, orchestrator: SyncOrchestrator) -> None:
        orchestrator.start()
        session = orchestrator.workers.session_id

        orchestrator.update_config(replace(orchestrator.config, decay=0.8))
        orchestrator.workers.wait_for_idle()

        assert orchestrator.workers.session_id == session
        assert orchestrator.workers.query(lambda worker: worker.graph.decay) == 0.8

    def test_new_embedder_restarts_under_new_shard(
        self, orchestrator: SyncOrchestrator, persistence: PersistenceManager, memory_source: MemorySource
    ) -> None:
        orchestrator.start()
        session = orchestrator.workers.session_id
        old_key = orchestrator.identity.shard_key

        orchestrator.update_config(orchestrator.config, FakeEmbedder(dimension=512))

        assert orchestrator.workers.session_id > session
        assert orchestrator.identity.dimension == 512
        assert orchestrator.identity.shard_key != old_key
        assert _indexed(orchestrator) == sorted(memory_source.documents)
        assert old_key in persistence.list_shards()

    def test_pending_work_flushed_before_restart(
        self, orchestrator: SyncOrchestrator, memory_source: MemorySource, persistence: PersistenceManager
    ) -> None:
        orchestrator.start()
        old_identity = orchestrator.identity
        orchestrator.config = replace(orchestrator.config, indexing_delay=30.0)
        memory_source.put("weekly.md", "# Weekly\nBudget review with finance.\n")
        orchestrator.on_modify("weekly.md")

        orchestrator.commit_config_change(orchestrator.config, FakeEmbedder(dimension=512))

        restored = IndexWorker(FakeEmbedder(), orchestrator.config)
        assert restored.load_index(persistence.load_state(old_identity))
        assert [r.path for r in restored.keyword_search("budget review")] == ["weekly.md"]

    def test_shutdown_flushes_pending(
        self, orchestrator: SyncOrchestrator, memory_source: MemorySource, persistence: PersistenceManager
    ) -> None:
        orchestrator.start()
        orchestrator.config = replace(orchestrator.config, indexing_delay=30.0)
        memory_source.put("weekly.md", "# Weekly\nBudget review with finance.\n")
        orchestrator.on_modify("weekly.md")

        orchestrator.flush_and_shutdown()

        assert not orchestrator.workers.is_ready
        assert persistence.load_state(orchestrator.identity) is not None
