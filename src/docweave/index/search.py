"""Hybrid search: seed retrieval, graph expansion and graph-aware re-ranking."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, List, Protocol, Sequence

from pydantic import BaseModel, TypeAdapter, ValidationError

from docweave.config import AppConfig
from docweave.index.hydrator import ResultHydrator
from docweave.index.scoring import KeywordMatch, ScoringConstants, gars, hybrid_boost
from docweave.models import SearchResult
from docweave.sync.worker import WorkerManager

LOGGER = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    SEEDING = "seeding"
    EXPANDING = "expanding"
    SCORING = "scoring"
    DONE = "done"


def merge_hybrid(
    vector_hits: Sequence[SearchResult],
    keyword_hits: Sequence[SearchResult],
    constants: ScoringConstants,
) -> List[SearchResult]:
    """Union of both hit lists; documents found by both get the hybrid boost."""
    merged = {hit.path: replace(hit) for hit in vector_hits}
    for hit in keyword_hits:
        existing = merged.get(hit.path)
        if existing is None:
            merged[hit.path] = replace(hit)
            continue
        LOGGER.debug("Boosting %s (vector + keyword)", hit.path)
        existing.score = hybrid_boost(
            existing.score, KeywordMatch(hit.score, hit.is_title_match), constants
        )
        existing.is_keyword_match = True
        existing.is_title_match = existing.is_title_match or hit.is_title_match
    results = sorted(merged.values(), key=lambda result: (-result.score, result.path))
    for result in results:
        result.similarity = result.score
    return results


class SearchPipeline:
    """Seeding -> Expanding -> Scoring -> Done.

    Only hollow results flow through the pipeline; hydration happens after.
    """

    def __init__(self, workers: WorkerManager, config: AppConfig) -> None:
        self.workers = workers
        self.config = config
        self.last_trace: list[PipelineStage] = []

    @property
    def constants(self) -> ScoringConstants:
        return ScoringConstants(
            hybrid_boost=self.config.keyword_boost,
            hybrid_title_boost=self.config.title_boost,
        )

    def search(self, query: str, limit: int = 10) -> List[SearchResult]:
        self.last_trace = []
        query = query.strip()
        if not query or limit <= 0:
            LOGGER.debug("Empty query, nothing to search")
            self.last_trace.append(PipelineStage.DONE)
            return []

        seeds = self._seed(query, limit)
        if not seeds:
            self.last_trace.append(PipelineStage.DONE)
            return []
        candidates = self._expand(seeds)
        results = self._score(candidates, limit)
        self.last_trace.append(PipelineStage.DONE)
        if results:
            LOGGER.info("Top match for %r: %s (%.2f)", query, results[0].path, results[0].score)
        return results

    def _seed(self, query: str, limit: int) -> List[SearchResult]:
        self.last_trace.append(PipelineStage.SEEDING)
        pool = 2 * limit
        timeout = self.config.query_timeout
        vector_future = self.workers.execute_query(lambda worker: worker.search(query, pool))
        keyword_future = self.workers.execute_query(lambda worker: worker.keyword_search(query, pool))
        try:
            vector_hits = self.workers.wait(vector_future, timeout)
        except Exception:
            keyword_future.cancel()
            raise
        keyword_hits = self.workers.wait(keyword_future, timeout)
        LOGGER.debug("Seeding: %d vector hits, %d keyword hits", len(vector_hits), len(keyword_hits))
        return merge_hybrid(vector_hits, keyword_hits, self.constants)[:pool]

    def _expand(self, seeds: List[SearchResult]) -> dict[str, SearchResult]:
        self.last_trace.append(PipelineStage.EXPANDING)
        candidates = {seed.path: seed for seed in seeds}
        expanded = seeds[: self.config.expansion_seeds]
        futures = [
            (seed, self.workers.execute_query(
                lambda worker, path=seed.path: worker.get_neighbors(path, mode="ontology", decay=self.config.decay)
            ))
            for seed in expanded
        ]
        discovered = 0
        for seed, future in futures:
            for neighbor in self.workers.wait(future, self.config.query_timeout):
                activation = seed.score * neighbor.score
                existing = candidates.get(neighbor.path)
                if existing is None:
                    candidates[neighbor.path] = replace(
                        neighbor, score=0.0, similarity=0.0, activation=activation, is_graph_neighbor=True
                    )
                    discovered += 1
                elif existing.is_graph_neighbor:
                    existing.activation = max(existing.activation, activation)
        LOGGER.debug("Expanding: %d seeds expanded, %d documents discovered", len(expanded), discovered)
        return candidates

    def _score(self, candidates: dict[str, SearchResult], limit: int) -> List[SearchResult]:
        self.last_trace.append(PipelineStage.SCORING)
        centrality = self.workers.query(lambda worker: worker.get_batch_centrality(list(candidates)))
        weights = self.config.weights
        for result in candidates.values():
            result.centrality = centrality.get(result.path, 0.0)
            result.score = gars(result.similarity, result.centrality, result.activation, weights)
        ranked = sorted(candidates.values(), key=lambda result: (-result.score, result.path))
        return ranked[:limit]


class RerankItem(BaseModel):
    id: str
    score: float
    reasoning: str = ""


_RERANK_ADAPTER = TypeAdapter(list[RerankItem])


class RerankClient(Protocol):
    """External model that re-orders candidates; returns JSON text or parsed items."""

    def rerank(self, query: str, candidates: list[dict[str, Any]]) -> str | list[dict[str, Any]]: ...


def rerank(query: str, results: Sequence[SearchResult], client: RerankClient) -> List[SearchResult]:
    """Re-order ``results`` by the client's scores.

    A malformed response leaves the original order untouched. Results the
    client did not score keep their relative order after the scored ones.
    """
    payload = [
        {"id": result.path, "title": result.title, "excerpt": result.excerpt or "", "score": result.score}
        for result in results
    ]
    raw = client.rerank(query, payload)
    try:
        if isinstance(raw, str):
            items = _RERANK_ADAPTER.validate_json(raw)
        else:
            items = _RERANK_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        LOGGER.warning("Ignoring malformed rerank response: %s", exc)
        return list(results)

    by_path = {result.path: result for result in results}
    scored = sorted(
        (item for item in items if item.id in by_path), key=lambda item: item.score, reverse=True
    )
    ordered: List[SearchResult] = []
    seen: set[str] = set()
    for item in scored:
        if item.id not in seen:
            ordered.append(by_path[item.id])
            seen.add(item.id)
    ordered.extend(result for result in results if result.path not in seen)
    LOGGER.debug("Rerank reasoning: %s", json.dumps({item.id: item.reasoning for item in scored}))
    return ordered


class Searcher:
    """High-level API: hollow pipeline results hydrated against live documents."""

    def __init__(
        self,
        pipeline: SearchPipeline,
        hydrator: ResultHydrator,
        *,
        on_drift: Callable[[list[str]], None] | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.hydrator = hydrator
        self.on_drift = on_drift

    def _hydrate(self, results: List[SearchResult]) -> List[SearchResult]:
        outcome = self.hydrator.hydrate(results)
        if outcome.drifted and self.on_drift is not None:
            self.on_drift(outcome.drifted)
        return outcome.hydrated

    def search(self, query: str, *, top_k: int = 10) -> List[SearchResult]:
        return self._hydrate(self.pipeline.search(query, top_k))

    def similar(self, path: str, *, top_k: int = 10) -> List[SearchResult]:
        hits = self.pipeline.workers.query(lambda worker: worker.get_similar(path, top_k))
        return self._hydrate(hits)

    def neighbors(self, path: str, *, mode: str = "ontology", direction: str = "both") -> List[SearchResult]:
        hits = self.pipeline.workers.query(
            lambda worker: worker.get_neighbors(path, direction=direction, mode=mode)
        )
        return self._hydrate(hits)
