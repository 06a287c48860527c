"""Single-writer execution of index mutations.

All mutations go through one single-threaded executor so they never overlap.
Each mutation captures the worker session id when it is enqueued; if the
worker has been re-initialised or terminated by the time the mutation runs it
is dropped as a zombie task. Queries bypass the queue and run on a separate
pool.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, TypeVar

from docweave.config import AppConfig, EmbeddingIdentity
from docweave.embedding.encoder import EmbeddingProvider
from docweave.errors import TaskDroppedError, WorkerNotReadyError, WorkerTimeoutError
from docweave.index.indexer import IndexWorker

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerManager:
    """Owns the :class:`IndexWorker` lifecycle and the two call classes."""

    def __init__(self, *, query_workers: int = 4, query_timeout: float = 60.0) -> None:
        self.query_timeout = query_timeout
        self._session = 0
        self._worker: IndexWorker | None = None
        self._state_lock = threading.Lock()
        self._mutations = ThreadPoolExecutor(max_workers=1, thread_name_prefix="docweave-mutation")
        self._queries = ThreadPoolExecutor(max_workers=query_workers, thread_name_prefix="docweave-query")
        self._closed = False

    @property
    def session_id(self) -> int:
        return self._session

    @property
    def is_ready(self) -> bool:
        return self._worker is not None

    @property
    def active_identity(self) -> EmbeddingIdentity | None:
        worker = self._worker
        return worker.identity if worker is not None else None

    def initialize(
        self,
        embedder: EmbeddingProvider,
        config: AppConfig,
        identity: EmbeddingIdentity | None = None,
    ) -> int:
        """Start a fresh worker session and return its id."""
        worker = IndexWorker(embedder, config, identity=identity)
        with self._state_lock:
            self._session += 1
            self._worker = worker
            session = self._session
        LOGGER.info("Worker session %d started (%s)", session, worker.identity.shard_key)
        return session

    def get_worker(self) -> IndexWorker:
        worker = self._worker
        if worker is None:
            raise WorkerNotReadyError("Index worker is not running")
        return worker

    def execute_mutation(self, task: Callable[[IndexWorker], T], *, session: int | None = None) -> Future[T]:
        """Queue ``task`` behind every earlier mutation.

        The returned future fails with :class:`TaskDroppedError` when the
        session changed before the task got to run. ``session`` pins the task
        to an earlier session id instead of the current one.
        """
        if session is None:
            session = self._session

        def run() -> T:
            with self._state_lock:
                current = self._session
                worker = self._worker
            if session != current or worker is None:
                LOGGER.debug("Dropping zombie task from session %d (current %d)", session, current)
                raise TaskDroppedError(session, current)
            return task(worker)

        return self._mutations.submit(run)

    def execute_query(self, task: Callable[[IndexWorker], T]) -> Future[T]:
        """Run a read-only ``task`` immediately, concurrently with other calls."""
        worker = self.get_worker()
        return self._queries.submit(task, worker)

    def query(self, task: Callable[[IndexWorker], T], timeout: float | None = None) -> T:
        """Blocking :meth:`execute_query` bounded by the query timeout."""
        return self.wait(self.execute_query(task), timeout)

    def wait(self, future: Future[T], timeout: float | None = None) -> T:
        """Result of a query future; raises :class:`WorkerTimeoutError` past the timeout."""
        try:
            return future.result(timeout=self.query_timeout if timeout is None else timeout)
        except FuturesTimeoutError as exc:
            future.cancel()
            raise WorkerTimeoutError("Worker query timed out") from exc

    def wait_for_idle(self, timeout: float | None = None) -> None:
        """Block until every mutation queued so far has finished."""
        if self._closed:
            return
        self._mutations.submit(lambda: None).result(timeout=timeout)

    def terminate(self) -> None:
        """Tear the worker down; queued mutations of this session become zombies."""
        with self._state_lock:
            if self._worker is None:
                return
            self._worker = None
            self._session += 1
        LOGGER.info("Worker terminated")

    def shutdown(self) -> None:
        self.terminate()
        self._closed = True
        self._mutations.shutdown(wait=True)
        self._queries.shutdown(wait=True)
