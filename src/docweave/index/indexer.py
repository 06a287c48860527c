"""Worker-side indexing engine.

:class:`IndexWorker` is the single owner of the vector index, the keyword
postings and the relationship graph. Mutations are expected to arrive one at a
time through :class:`docweave.sync.worker.WorkerManager`; queries may run
concurrently and only hold the lock for the in-memory lookup.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence

import numpy as np

from docweave.config import AppConfig, EmbeddingIdentity
from docweave.embedding.encoder import EmbeddingProvider, resolve_identity
from docweave.errors import EmbeddingError, IndexIncompatibleError
from docweave.index.codec import decode_state, encode_state
from docweave.index.graph import Direction, RelationshipGraph, TraversalMode
from docweave.index.scoring import ScoringConstants
from docweave.index.storage import VectorIndex
from docweave.models import ChunkRecord, FileState, FileUpdate, NodeMetadata, SearchResult
from docweave.utils.links import document_links, normalize_path, parse_aliases
from docweave.utils.text import chunk_spans, extract_headers, fast_hash, split_frontmatter

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexStats:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    processed_files: list[str] = field(default_factory=list)

    def increment(self, status: str, path: str) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


def _scoring_constants(config: AppConfig) -> ScoringConstants:
    return ScoringConstants(hybrid_boost=config.keyword_boost, hybrid_title_boost=config.title_boost)


class IndexWorker:
    """Coordinates chunking, embedding, indexing and graph maintenance."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        config: AppConfig | None = None,
        *,
        identity: EmbeddingIdentity | None = None,
    ) -> None:
        self.embedder = embedder
        self.config = config or AppConfig()
        self.identity = identity or resolve_identity(embedder, chunk_size=self.config.chunk_chars)
        self.index = VectorIndex(
            dimension=self.identity.dimension,
            model_id=self.identity.model_id,
            provider=self.identity.provider,
            chunk_size=self.identity.chunk_size,
            constants=_scoring_constants(self.config),
            max_keyword_matches=self.config.max_keyword_matches,
        )
        self.graph = RelationshipGraph.from_config(self.config)
        self.alias_map: dict[str, str] = {}
        self._lock = threading.RLock()

    # Mutations ------------------------------------------------------------

    def update_files(
        self,
        files: Sequence[FileUpdate],
        *,
        force: bool = False,
        should_stop: Callable[[], bool] | None = None,
    ) -> IndexStats:
        """Index a batch; one document's failure never aborts the others.

        ``should_stop`` is polled between documents so a superseded scan can
        stop early without interrupting a document half-way.
        """
        stats = IndexStats()
        for update in files:
            if should_stop is not None and should_stop():
                LOGGER.info("Batch cancelled after %d documents", len(stats.processed_files))
                break
            try:
                status = self.update_file(update, force=force)
            except Exception as exc:
                LOGGER.error("Failed to index %s: %s", update.path, exc)
                status = "failed"
            stats.increment(status, update.path)
        LOGGER.debug(
            "Batch done: %d inserted, %d updated, %d skipped, %d failed",
            stats.inserted,
            stats.updated,
            stats.skipped,
            stats.failed,
        )
        return stats

    def update_file(self, update: FileUpdate, *, force: bool = False) -> str:
        path = normalize_path(update.path)
        with self._lock:
            existing = self.index.get(path)
            if force:
                existing = None
            if (
                existing is not None
                and existing.has_content
                and existing.mtime == update.mtime
                and existing.size == update.size
            ):
                return "skipped"

        content = update.content
        content_hash = fast_hash(content)
        frontmatter, _, _ = split_frontmatter(content)
        headers = extract_headers(content)

        if existing is not None and existing.content_hash == content_hash:
            with self._lock:
                self.index.refresh(path, mtime=update.mtime, size=update.size, content=content, title=update.title)
                self._update_graph(path, update, frontmatter, headers)
            return "skipped"

        spans = [
            (start, end)
            for start, end in chunk_spans(content, max_chars=self.config.chunk_chars, overlap=self.config.overlap)
            if content[start:end].strip()
        ]
        texts = [content[start:end] for start, end in spans]
        token_count = 0
        vectors = np.zeros((0, self.index.dimension), dtype="float32")
        if texts:
            vectors, token_count = self.embedder.embed_document(texts, update.title)
            vectors = np.asarray(vectors, dtype="float32")
            if vectors.ndim != 2 or vectors.shape[1] != self.index.dimension:
                raise EmbeddingError(
                    f"Provider returned vectors of shape {vectors.shape}, "
                    f"expected (*, {self.index.dimension})"
                )
        chunks = [
            ChunkRecord(path, position, start, end, fast_hash(content[start:end]))
            for position, (start, end) in enumerate(spans)
        ]

        with self._lock:
            status = self.index.upsert(
                path,
                chunks,
                vectors,
                title=update.title,
                content=content,
                mtime=update.mtime,
                size=update.size,
                content_hash=content_hash,
                token_count=token_count,
            )
            self._update_graph(path, update, frontmatter, headers)
        return status

    def delete_file(self, path: str) -> None:
        path = normalize_path(path)
        with self._lock:
            self.index.delete(path)
            self.graph.remove_node(path)
            for alias in [alias for alias, target in self.alias_map.items() if target == path]:
                del self.alias_map[alias]

    def rename_file(self, old_path: str, new_path: str, title: str | None = None) -> None:
        old_path, new_path = normalize_path(old_path), normalize_path(new_path)
        with self._lock:
            self.index.rename(old_path, new_path, title=title)
            self.graph.rename_node(old_path, new_path, title=title)
            for alias, target in list(self.alias_map.items()):
                if target == old_path:
                    self.alias_map[alias] = new_path

    def clear_index(self) -> None:
        """Drop vectors and keyword postings; the graph and aliases survive."""
        with self._lock:
            self.index.clear()
        LOGGER.info("Vector index cleared")

    def full_reset(self) -> None:
        with self._lock:
            self.index.clear()
            self.graph.clear()
            self.alias_map.clear()
        LOGGER.info("Index and graph reset")

    def prune_orphans(self, valid_paths: Iterable[str]) -> int:
        valid = {normalize_path(path) for path in valid_paths}
        with self._lock:
            stale = [doc.path for doc in self.index.documents() if doc.path not in valid]
            for path in stale:
                self.index.delete(path)
            return self.graph.prune_orphans(valid) + len(stale)

    def update_alias_map(self, aliases: Mapping[str, str]) -> None:
        with self._lock:
            for alias, target in aliases.items():
                self.alias_map[alias.lower()] = normalize_path(target)

    def update_config(self, config: AppConfig) -> None:
        """Apply settings that do not change the embedding identity."""
        with self._lock:
            self.config = config
            self.index.constants = _scoring_constants(config)
            self.index.max_keyword_matches = config.max_keyword_matches
            graph = RelationshipGraph.from_config(config)
            graph.load_dict(self.graph.to_dict())
            self.graph = graph

    # Queries --------------------------------------------------------------

    def get_file_states(self) -> dict[str, FileState]:
        with self._lock:
            return self.index.file_states()

    def search(self, query: str, limit: int = 0, min_score: float | None = None) -> list[SearchResult]:
        vector = self.embedder.embed_query(query)
        return self.vector_search(vector, limit, min_score)

    def vector_search(self, vector: np.ndarray, limit: int = 0, min_score: float | None = None) -> list[SearchResult]:
        floor = self.config.recall_floor if min_score is None else min_score
        with self._lock:
            return self.index.search(vector, limit=limit, min_score=floor)

    def keyword_search(self, query: str, limit: int = 0) -> list[SearchResult]:
        with self._lock:
            return self.index.keyword_search(query, limit=limit)

    def get_similar(self, path: str, limit: int = 10) -> list[SearchResult]:
        with self._lock:
            return self.index.similar(normalize_path(path), limit=limit, min_score=self.config.recall_floor)

    def get_neighbors(
        self,
        path: str,
        direction: Direction = "both",
        mode: TraversalMode = "simple",
        decay: float | None = None,
    ) -> list[SearchResult]:
        with self._lock:
            return self.graph.get_neighbors(normalize_path(path), direction=direction, mode=mode, decay=decay)

    def get_centrality(self, path: str) -> float:
        with self._lock:
            return self.graph.get_centrality(normalize_path(path))

    def get_batch_centrality(self, paths: Iterable[str]) -> dict[str, float]:
        with self._lock:
            return self.graph.batch_centrality(paths)

    def get_batch_metadata(self, paths: Iterable[str]) -> dict[str, NodeMetadata]:
        with self._lock:
            return self.graph.metadata(paths)

    # Persistence ----------------------------------------------------------

    def save_index(self, *, slim: bool = False) -> bytes:
        with self._lock:
            header, vectors = self.index.export(slim=slim)
            header["graph"] = self.graph.to_dict()
            header["aliases"] = dict(self.alias_map)
        return encode_state(header, vectors)

    def save_tiers(self) -> tuple[bytes, bytes]:
        """Full and slim blobs taken from one consistent snapshot."""
        with self._lock:
            return self.save_index(), self.save_index(slim=True)

    def load_index(self, blob: bytes) -> bool:
        """Restore a saved state. False means the caller must rebuild from scratch."""
        try:
            header, vectors = decode_state(blob)
        except IndexIncompatibleError as exc:
            LOGGER.warning("Persisted index rejected: %s", exc)
            return False
        graph = header.get("graph", {})
        aliases = header.get("aliases", {})
        if not isinstance(graph, dict) or not isinstance(aliases, dict):
            LOGGER.warning("Persisted index rejected: malformed graph section")
            return False
        with self._lock:
            if not self.index.restore(header, vectors):
                return False
            self.graph.load_dict(graph)
            self.alias_map = {str(k): str(v) for k, v in aliases.items()}
        LOGGER.info(
            "Loaded index: %d documents, %d graph nodes%s",
            len(self.index),
            self.graph.order,
            " (slim)" if header.get("slim") else "",
        )
        return True

    # Internals ------------------------------------------------------------

    def _update_graph(self, path: str, update: FileUpdate, frontmatter: str, headers: list[str]) -> None:
        for alias in parse_aliases(frontmatter):
            self.alias_map[alias.lower()] = path
        self.alias_map.setdefault(update.title.lower(), path)
        links = update.links
        if links is None:
            links = document_links(update.content, path, self.alias_map)
        self.graph.add_node(path, title=update.title, headers=headers)
        self.graph.set_outgoing(path, links)
