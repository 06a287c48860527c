"""Typed failures raised by docweave components."""

from __future__ import annotations


class DocweaveError(Exception):
    """Base class for all docweave errors."""


class IndexIncompatibleError(DocweaveError):
    """Persisted index state cannot be used with the current configuration."""


class EmbeddingError(DocweaveError):
    """The embedding provider failed or returned unusable vectors."""


class TaskDroppedError(DocweaveError):
    """A queued mutation was dropped because its worker session ended."""

    def __init__(self, task_session: int, current_session: int) -> None:
        super().__init__(
            f"Task from session {task_session} dropped (current session {current_session})"
        )
        self.task_session = task_session
        self.current_session = current_session


class WorkerNotReadyError(DocweaveError):
    """The index worker has not been initialised or was terminated."""


class WorkerTimeoutError(DocweaveError):
    """A worker query did not complete within the configured timeout."""
