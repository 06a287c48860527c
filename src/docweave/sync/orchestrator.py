"""Keeps the index consistent with a changing document set.

Change events are coalesced per path. The document the user is editing waits
for ``active_indexing_delay``; everything else is flushed after
``indexing_delay`` in batches bounded by file count and total size. Saves are
coalesced onto an idle timer.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import Iterable

from docweave.config import AppConfig, EmbeddingIdentity
from docweave.embedding.encoder import EmbeddingProvider, resolve_identity
from docweave.errors import DocweaveError, TaskDroppedError
from docweave.index.hydrator import DriftQuarantine
from docweave.index.indexer import IndexStats, IndexWorker
from docweave.models import DocumentStat, FileUpdate
from docweave.sources.base import DocumentSource
from docweave.sync.persistence import PersistenceManager
from docweave.sync.worker import WorkerManager

LOGGER = logging.getLogger(__name__)


class SyncOrchestrator:
    """Drives the worker from document-source events."""

    def __init__(
        self,
        source: DocumentSource,
        embedder: EmbeddingProvider,
        config: AppConfig,
        persistence: PersistenceManager,
        *,
        workers: WorkerManager | None = None,
        quarantine: DriftQuarantine | None = None,
    ) -> None:
        self.source = source
        self.embedder = embedder
        self.config = config
        self.persistence = persistence
        self.workers = workers or WorkerManager(query_timeout=config.query_timeout)
        self.quarantine = quarantine or DriftQuarantine(config.drift_max_retries)
        self.identity: EmbeddingIdentity | None = None
        self.running = False

        self._lock = threading.RLock()
        self._active_path: str | None = None
        self._pending_active: str | None = None
        self._active_timer: threading.Timer | None = None
        self._pending_background: dict[str, None] = {}
        self._background_timer: threading.Timer | None = None
        self._save_timer: threading.Timer | None = None
        self._save_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._scanning = False
        self._cancel: threading.Event | None = None
        self._subscribed = False

    # Lifecycle --------------------------------------------------------------

    def start(self, *, scan: bool = True, supersede: bool = False) -> bool:
        """Start a worker session, load the persisted shard and optionally scan.

        ``supersede`` cancels a scan still running from an earlier session
        instead of deferring to it. Returns True when persisted state was
        missing or incompatible and the index is being rebuilt from scratch.
        """
        self.identity = resolve_identity(self.embedder, chunk_size=self.config.chunk_chars)
        self.workers.initialize(self.embedder, self.config, self.identity)
        needs_rebuild = self._load_state(self.identity)
        self.running = True
        if not self._subscribed:
            self.source.subscribe(self)
            self._subscribed = True
        if scan:
            self.scan_all(force_wipe=needs_rebuild, supersede=supersede)
        return needs_rebuild

    def _load_state(self, identity: EmbeddingIdentity) -> bool:
        blob = self.persistence.load_state(identity)
        if blob is None:
            LOGGER.info("No persisted state for %s, starting fresh", identity.shard_key)
            return True
        loaded = self.workers.execute_mutation(lambda worker: worker.load_index(blob)).result()
        if not loaded:
            LOGGER.warning("Persisted state for %s is incompatible, rebuilding", identity.shard_key)
            self.persistence.wipe_state(identity)
        return not loaded

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    # Source events ------------------------------------------------------------

    def on_modify(self, path: str) -> None:
        if self.config.is_excluded(path):
            return
        self.quarantine.reset(path)
        self._debounce(path)

    def on_delete(self, path: str) -> None:
        self.quarantine.reset(path)
        with self._lock:
            self._pending_background.pop(path, None)
            if self._pending_active == path:
                self._pending_active = None
        self._track(self.workers.execute_mutation(lambda worker: worker.delete_file(path)))

    def on_rename(self, old_path: str, new_path: str) -> None:
        self.quarantine.reset(old_path)
        self.quarantine.reset(new_path)
        with self._lock:
            self._pending_background.pop(old_path, None)
            if self._pending_active == old_path:
                self._pending_active = None
        if self.config.is_excluded(new_path):
            self.on_delete(old_path)
            return
        if self.config.is_excluded(old_path):
            self.on_modify(new_path)
            return
        title = self.source.title(new_path)
        self._track(
            self.workers.execute_mutation(lambda worker: worker.rename_file(old_path, new_path, title))
        )

    def set_active_document(self, path: str | None) -> None:
        with self._lock:
            self._active_path = path

    def report_drift(self, paths: Iterable[str]) -> None:
        """Re-index documents whose chunks could not be re-anchored, within the retry budget."""
        retry = [path for path in dict.fromkeys(paths) if self.quarantine.should_retry(path)]
        if retry:
            LOGGER.info("Re-indexing %d drifted documents", len(retry))
            self._process_chunk(retry, force=True)

    # Debounce and batching ------------------------------------------------------

    def _debounce(self, path: str) -> None:
        with self._lock:
            if path == self._active_path:
                if self._active_timer is not None:
                    self._active_timer.cancel()
                if self._pending_active is not None and self._pending_active != path:
                    self._pending_background[self._pending_active] = None
                    self._schedule_background()
                self._pending_background.pop(path, None)
                self._pending_active = path
                self._active_timer = self._timer(self.config.active_indexing_delay, self._flush_active)
            else:
                if self._pending_active == path:
                    return
                self._pending_background[path] = None
                self._schedule_background()

    def _timer(self, delay: float, callback) -> threading.Timer:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer

    def _schedule_background(self) -> None:
        if self._background_timer is None:
            self._background_timer = self._timer(self.config.indexing_delay, self._flush_background)

    def _flush_active(self) -> None:
        with self._lock:
            path = self._pending_active
            self._pending_active = None
            self._active_timer = None
        if path is not None:
            self._process_chunk([path])

    def _flush_background(self) -> None:
        with self._lock:
            paths = list(self._pending_background)
            self._pending_background.clear()
            self._background_timer = None
        for batch in self._batches(paths):
            self._process_chunk(batch)

    def _take_pending(self) -> list[str]:
        """Cancel debounce timers and return every path still waiting."""
        with self._lock:
            for timer in (self._active_timer, self._background_timer):
                if timer is not None:
                    timer.cancel()
            self._active_timer = None
            self._background_timer = None
            pending = list(self._pending_background)
            if self._pending_active is not None:
                pending.append(self._pending_active)
            self._pending_background.clear()
            self._pending_active = None
        return pending

    def _batches(self, paths: list[str]) -> list[list[str]]:
        stats = []
        for path in paths:
            stat = self.source.stat(path)
            stats.append(stat if stat is not None else DocumentStat(path, 0.0, 0))
        return [[stat.path for stat in batch] for batch in self._chunk_stats(stats)]

    def _chunk_stats(self, stats: list[DocumentStat]) -> list[list[DocumentStat]]:
        batches: list[list[DocumentStat]] = []
        current: list[DocumentStat] = []
        size = 0
        for stat in stats:
            current.append(stat)
            size += stat.size
            if len(current) >= self.config.batch_max_files or size >= self.config.batch_max_bytes:
                batches.append(current)
                current = []
                size = 0
        if current:
            batches.append(current)
        return batches

    def _process_chunk(
        self,
        paths: list[str],
        *,
        force: bool = False,
        cancel: threading.Event | None = None,
        session: int | None = None,
    ) -> Future | None:
        if not paths:
            return None

        def task(worker: IndexWorker) -> IndexStats:
            updates = []
            for path in paths:
                if cancel is not None and cancel.is_set():
                    break
                if self.config.is_excluded(path):
                    continue
                stat = self.source.stat(path)
                if stat is None:
                    continue
                try:
                    content = self.source.read(path)
                except OSError as exc:
                    LOGGER.error("Failed to read %s: %s", path, exc)
                    continue
                updates.append(
                    FileUpdate(
                        path=path,
                        content=content,
                        mtime=stat.mtime,
                        size=stat.size,
                        title=self.source.title(path),
                        links=self.source.resolved_links(path, content),
                    )
                )
            should_stop = cancel.is_set if cancel is not None else None
            return worker.update_files(updates, force=force, should_stop=should_stop)

        return self._track(self.workers.execute_mutation(task, session=session))

    def _track(self, future: Future) -> Future:
        future.add_done_callback(self._after_mutation)
        return future

    def _after_mutation(self, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if isinstance(exc, TaskDroppedError):
            return
        if exc is not None:
            LOGGER.error("Index mutation failed: %s", exc)
            return
        if self.running:
            self.request_save()

    # Scanning -------------------------------------------------------------------

    def scan_all(self, *, force_wipe: bool = False, supersede: bool = False) -> bool:
        """Bring the index in line with every document in the source.

        A second scan while one is running is ignored unless ``supersede`` is
        set, in which case the running scan is cancelled between documents.
        Every mutation of a scan is pinned to the worker session it started
        in, so a scan outliving a restart only produces dropped tasks.
        Returns True when the scan ran to completion.
        """
        with self._scan_lock:
            if self._scanning and not supersede:
                LOGGER.info("Scan already in progress")
                return False
            if self._cancel is not None:
                self._cancel.set()
            cancel = threading.Event()
            self._cancel = cancel
            self._scanning = True
            session = self.workers.session_id

        def stopped() -> bool:
            return cancel.is_set() or self.workers.session_id != session

        try:
            if force_wipe:
                LOGGER.info("Resetting index before full scan")
                self.workers.execute_mutation(lambda worker: worker.full_reset(), session=session).result()
            aliases = self.source.alias_map()
            if stopped():
                LOGGER.info("Scan cancelled")
                return False
            self.workers.execute_mutation(
                lambda worker: worker.update_alias_map(aliases), session=session
            ).result()

            documents = [doc for doc in self.source.list_documents() if not self.config.is_excluded(doc.path)]
            states = self.workers.query(lambda worker: worker.get_file_states())
            changed = []
            for doc in documents:
                if stopped():
                    break
                state = states.get(doc.path)
                if state is None or state.mtime != doc.mtime or state.size != doc.size or not state.has_content:
                    changed.append(doc)

            for batch in self._chunk_stats(changed):
                if stopped():
                    break
                self._process_chunk([doc.path for doc in batch], cancel=cancel, session=session)

            self.workers.wait_for_idle()
            if stopped():
                LOGGER.info("Scan cancelled")
                return False

            valid = [doc.path for doc in documents]
            self.workers.execute_mutation(lambda worker: worker.prune_orphans(valid), session=session).result()
            LOGGER.info("Scan complete: %d documents, %d changed", len(documents), len(changed))
            self.request_save()
            return True
        except TaskDroppedError:
            LOGGER.debug("Scan abandoned: worker session ended")
            return False
        except DocweaveError as exc:
            LOGGER.error("Scan failed: %s", exc)
            return False
        finally:
            with self._scan_lock:
                if self._cancel is cancel:
                    self._scanning = False
                    self._cancel = None

    def cancel_scan(self) -> None:
        with self._scan_lock:
            if self._cancel is not None:
                self._cancel.set()

    # Persistence ---------------------------------------------------------------

    def request_save(self) -> None:
        """Schedule one save on the idle timer; repeated calls coalesce."""
        with self._lock:
            if self._save_timer is None:
                self._save_timer = self._timer(self.config.idle_save_delay, self._run_save)

    def cancel_pending_save(self) -> None:
        with self._lock:
            if self._save_timer is not None:
                self._save_timer.cancel()
                self._save_timer = None

    def _run_save(self) -> None:
        with self._lock:
            self._save_timer = None
        self.save_state()

    def save_state(self) -> bool:
        """Write the current shard to both tiers. Failures are logged, never raised."""
        with self._save_lock:
            identity = self.workers.active_identity
            if identity is None:
                return False
            try:
                full, slim = self.workers.query(lambda worker: worker.save_tiers())
            except DocweaveError as exc:
                LOGGER.error("Save failed: %s", exc)
                return False
            return self.persistence.save_state(full, identity, slim)

    def force_save(self) -> bool:
        """Flush pending work, wait for the queue to drain and save synchronously."""
        self.cancel_pending_save()
        pending = self._take_pending()
        for batch in self._batches(pending):
            self._process_chunk(batch)
        self.workers.wait_for_idle()
        return self.save_state()

    # Configuration ---------------------------------------------------------------

    def update_config(self, config: AppConfig, embedder: EmbeddingProvider | None = None) -> None:
        """Apply new settings, restarting the worker when the embedding identity changes."""
        identity_changed = self.config.embedding_changed(config) or (
            embedder is not None and embedder is not self.embedder
        )
        if identity_changed:
            self.commit_config_change(config, embedder)
            return
        self.config = config
        self._track(self.workers.execute_mutation(lambda worker: worker.update_config(config)))

    def commit_config_change(self, config: AppConfig, embedder: EmbeddingProvider | None = None) -> bool:
        """Finish all work under the old identity, persist it, then restart under the new one."""
        self.cancel_pending_save()
        self.cancel_scan()
        pending = self._take_pending()
        for batch in self._batches(pending):
            self._process_chunk(batch)
        self.workers.wait_for_idle()
        if self.workers.is_ready:
            self.save_state()
        self.workers.terminate()
        self.quarantine.clear()

        self.config = config
        if embedder is not None:
            self.embedder = embedder
        LOGGER.info("Restarting worker for new configuration")
        return self.start(scan=True, supersede=True)

    def flush_and_shutdown(self) -> None:
        self.running = False
        self.cancel_pending_save()
        self.cancel_scan()
        try:
            pending = self._take_pending()
            for batch in self._batches(pending):
                self._process_chunk(batch)
            self.workers.wait_for_idle()
            self.save_state()
        except DocweaveError as exc:
            LOGGER.error("Error during shutdown flush: %s", exc)
        finally:
            self.workers.terminate()
