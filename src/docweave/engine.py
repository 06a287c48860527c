"""Composition root wiring source, worker, search and context assembly together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List

from docweave.config import AppConfig
from docweave.embedding.encoder import EmbeddingProvider
from docweave.index.context import AssembledContext, ContextAssembler
from docweave.index.hydrator import ResultHydrator
from docweave.index.search import RerankClient, SearchPipeline, Searcher, rerank
from docweave.models import NodeMetadata, SearchResult
from docweave.sources.base import DocumentSource
from docweave.sources.filesystem import FileSystemSource
from docweave.sync.orchestrator import SyncOrchestrator
from docweave.sync.persistence import PersistenceManager

LOGGER = logging.getLogger(__name__)


class Engine:
    """Everything needed to index a document root and query it."""

    def __init__(
        self,
        root: Path,
        embedder: EmbeddingProvider,
        config: AppConfig | None = None,
        *,
        source: DocumentSource | None = None,
        persistence: PersistenceManager | None = None,
    ) -> None:
        self.root = Path(root)
        self.config = config or AppConfig()
        self.source = source or FileSystemSource(self.root)
        self.persistence = persistence or PersistenceManager(
            self.config.resolve_cache_dir(Path.cwd()), self.root, data_dir=self.config.data_dir
        )
        self.orchestrator = SyncOrchestrator(self.source, embedder, self.config, self.persistence)
        self.pipeline = SearchPipeline(self.orchestrator.workers, self.config)
        self.hydrator = ResultHydrator(self.source, search_range=self.config.hydration_search_range)
        self.searcher = Searcher(self.pipeline, self.hydrator, on_drift=self.orchestrator.report_drift)
        self.assembler = ContextAssembler(self.source, self.config, metadata_lookup=self._metadata)

    @property
    def workers(self):
        return self.orchestrator.workers

    def start(self, *, scan: bool = True) -> bool:
        return self.orchestrator.start(scan=scan)

    def _metadata(self, paths: list[str]) -> dict[str, NodeMetadata]:
        return self.workers.query(lambda worker: worker.get_batch_metadata(paths))

    def search(self, query: str, *, top_k: int = 10, reranker: RerankClient | None = None) -> List[SearchResult]:
        results = self.searcher.search(query, top_k=top_k)
        if reranker is not None and results:
            results = rerank(query, results, reranker)
        return results

    def context(self, query: str, *, budget_chars: int | None = None, top_k: int = 20) -> AssembledContext:
        results = self.searcher.search(query, top_k=top_k)
        return self.assembler.assemble(results, query, budget_chars)

    def neighbors(self, path: str, *, mode: str = "ontology") -> List[SearchResult]:
        return self.searcher.neighbors(path, mode=mode)

    def similar(self, path: str, *, top_k: int = 10) -> List[SearchResult]:
        return self.searcher.similar(path, top_k=top_k)

    def documents(self) -> list[dict[str, Any]]:
        states = self.workers.query(lambda worker: worker.get_file_states())
        return [
            {"path": path, "mtime": state.mtime, "size": state.size, "has_content": state.has_content}
            for path, state in sorted(states.items())
        ]

    def stats(self) -> dict[str, Any]:
        def collect(worker) -> dict[str, Any]:
            return {
                "document_count": len(worker.index),
                "chunk_count": worker.index.chunk_count(),
                "node_count": worker.graph.order,
                "edge_count": worker.graph.size,
                "shard": worker.identity.shard_key,
            }

        return self.workers.query(collect)

    def update_config(self, config: AppConfig, embedder: EmbeddingProvider | None = None) -> None:
        self.orchestrator.update_config(config, embedder)
        self.config = config
        self.pipeline.config = config
        self.assembler.config = config
        self.hydrator.search_range = config.hydration_search_range

    def close(self) -> None:
        self.orchestrator.flush_and_shutdown()
        self.workers.shutdown()
        self.persistence.close()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
