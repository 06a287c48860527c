"""Directed document graph with typed edges and topic-sibling traversal."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal

from docweave.config import AppConfig
from docweave.models import EdgeKind, Link, NodeMetadata, SearchResult, title_from_path

LOGGER = logging.getLogger(__name__)

Direction = Literal["out", "in", "both"]
TraversalMode = Literal["simple", "ontology"]


@dataclass(slots=True)
class GraphNode:
    title: str
    headers: list[str] = field(default_factory=list)
    placeholder: bool = False


class RelationshipGraph:
    """Documents as nodes, links as ``structural`` or ``body`` edges.

    A node created only because some document links to it is a placeholder
    until the target document itself is indexed.
    """

    def __init__(
        self,
        *,
        decay: float = 0.5,
        hub_min_degree: int = 5,
        topic_path: str = "Ontology",
        topic_min_in_degree: int = 1,
        structural_weight: float = 1.5,
        body_weight: float = 1.0,
    ) -> None:
        self.decay = decay
        self.hub_min_degree = hub_min_degree
        self.topic_path = topic_path.strip("/").lower()
        self.topic_min_in_degree = topic_min_in_degree
        self.weights: dict[str, float] = {"structural": structural_weight, "body": body_weight}
        self._nodes: dict[str, GraphNode] = {}
        self._out: dict[str, dict[str, EdgeKind]] = {}
        self._in: dict[str, dict[str, EdgeKind]] = {}

    @classmethod
    def from_config(cls, config: AppConfig) -> RelationshipGraph:
        return cls(
            decay=config.decay,
            hub_min_degree=config.hub_min_degree,
            topic_path=config.topic_path,
            topic_min_in_degree=config.topic_min_in_degree,
            structural_weight=config.structural_edge_weight,
            body_weight=config.body_edge_weight,
        )

    @property
    def order(self) -> int:
        return len(self._nodes)

    @property
    def size(self) -> int:
        return sum(len(targets) for targets in self._out.values())

    def has_node(self, path: str) -> bool:
        return path in self._nodes

    def nodes(self) -> list[str]:
        return list(self._nodes)

    # Mutations ------------------------------------------------------------

    def add_node(self, path: str, *, title: str | None = None, headers: Iterable[str] | None = None) -> None:
        node = self._nodes.get(path)
        if node is None:
            node = self._nodes[path] = GraphNode(title=title or title_from_path(path))
            self._out.setdefault(path, {})
            self._in.setdefault(path, {})
        node.placeholder = False
        if title:
            node.title = title
        if headers is not None:
            node.headers = list(headers)

    def add_edge(self, source: str, target: str, kind: EdgeKind = "body") -> None:
        if source == target:
            return
        if kind not in self.weights:
            raise ValueError(f"Unknown edge type: {kind}")
        if source not in self._nodes:
            self.add_node(source)
        if target not in self._nodes:
            self._nodes[target] = GraphNode(title=title_from_path(target), placeholder=True)
            self._out.setdefault(target, {})
            self._in.setdefault(target, {})
        existing = self._out[source].get(target)
        if existing is not None and self.weights[existing] >= self.weights[kind]:
            return
        self._out[source][target] = kind
        self._in[target][source] = kind

    def set_outgoing(self, source: str, links: Iterable[Link]) -> None:
        """Replace every outgoing edge of ``source``."""
        for target in list(self._out.get(source, {})):
            del self._in[target][source]
            self._drop_if_dangling(target)
        self._out[source] = {}
        for link in links:
            self.add_edge(source, link.target, link.kind)

    def remove_node(self, path: str) -> None:
        """Remove a document; it survives as a placeholder while others still link to it."""
        if path not in self._nodes:
            return
        for target in list(self._out.get(path, {})):
            del self._in[target][path]
            self._drop_if_dangling(target)
        self._out[path] = {}
        if self._in.get(path):
            self._nodes[path].placeholder = True
            self._nodes[path].headers = []
        else:
            self._delete(path)

    def rename_node(self, old_path: str, new_path: str, *, title: str | None = None) -> None:
        if old_path not in self._nodes or old_path == new_path:
            return
        outgoing = [Link(target, kind) for target, kind in self._out.get(old_path, {}).items()]
        incoming = list(self._in.get(old_path, {}).items())
        node = self._nodes[old_path]
        for target in list(self._out.get(old_path, {})):
            del self._in[target][old_path]
        for source in list(self._in.get(old_path, {})):
            del self._out[source][old_path]
        self._delete(old_path)

        self.add_node(new_path, title=title or title_from_path(new_path), headers=node.headers)
        for link in outgoing:
            self.add_edge(new_path, link.target, link.kind)
        for source, kind in incoming:
            self.add_edge(source, new_path, kind)

    def prune_orphans(self, valid_paths: Iterable[str]) -> int:
        """Drop every node whose path is not in ``valid_paths``."""
        valid = set(valid_paths)
        orphans = [path for path in self._nodes if path not in valid]
        for path in orphans:
            for target in list(self._out.get(path, {})):
                self._in[target].pop(path, None)
            for source in list(self._in.get(path, {})):
                self._out[source].pop(path, None)
            self._delete(path)
        if orphans:
            LOGGER.info("Pruned %d orphaned graph nodes", len(orphans))
        return len(orphans)

    def clear(self) -> None:
        self._nodes.clear()
        self._out.clear()
        self._in.clear()

    # Queries --------------------------------------------------------------

    def in_degree(self, path: str) -> int:
        return len(self._in.get(path, {}))

    def out_degree(self, path: str) -> int:
        return len(self._out.get(path, {}))

    def degree(self, path: str) -> int:
        return self.in_degree(path) + self.out_degree(path)

    def edge_kind(self, source: str, target: str) -> EdgeKind | None:
        return self._out.get(source, {}).get(target)

    def is_topic(self, path: str) -> bool:
        in_degree = self.in_degree(path)
        if in_degree >= self.hub_min_degree:
            return True
        lowered = path.lower()
        in_region = bool(self.topic_path) and (
            lowered == self.topic_path or lowered.startswith(self.topic_path + "/")
        )
        return in_region and in_degree >= self.topic_min_in_degree

    def hub_penalty(self, path: str) -> float:
        degree = self.degree(path)
        if degree > self.hub_min_degree:
            return 1.0 / math.log(degree + 1)
        return 1.0

    def edge_factor(self, kind: EdgeKind) -> float:
        return self.weights[kind] / max(self.weights.values())

    def get_neighbors(
        self,
        path: str,
        *,
        direction: Direction = "both",
        mode: TraversalMode = "simple",
        decay: float | None = None,
    ) -> list[SearchResult]:
        """Scored neighbours of ``path``.

        Each hop multiplies the score by ``decay`` and by the edge-type factor;
        hubs are damped by ``1 / log(degree + 1)``. In ``ontology`` mode every
        direct neighbour that qualifies as a topic also contributes the other
        documents linking to it (siblings). A node reached several ways keeps
        its best score.
        """
        if path not in self._nodes:
            return []
        decay = self.decay if decay is None else decay
        direct = self._adjacent(path, direction)
        scores: dict[str, float] = {}

        for neighbor, kind in direct.items():
            score = decay * self.edge_factor(kind) * self.hub_penalty(neighbor)
            scores[neighbor] = max(scores.get(neighbor, 0.0), score)

        if mode == "ontology":
            for topic in direct:
                if not self.is_topic(topic):
                    continue
                topic_score = scores[topic]
                for sibling, kind in self._in.get(topic, {}).items():
                    if sibling == path:
                        continue
                    score = topic_score * decay * self.edge_factor(kind) * self.hub_penalty(sibling)
                    if score > scores.get(sibling, 0.0):
                        scores[sibling] = score

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        return [
            SearchResult(
                path=neighbor,
                score=score,
                title=self._nodes[neighbor].title,
                is_graph_neighbor=True,
            )
            for neighbor, score in ranked
        ]

    def get_centrality(self, path: str) -> float:
        """Degree centrality normalised by graph size."""
        if path not in self._nodes or self.order <= 1:
            return 0.0
        return min(1.0, self.degree(path) / (self.order - 1))

    def batch_centrality(self, paths: Iterable[str]) -> dict[str, float]:
        return {path: self.get_centrality(path) for path in paths}

    def metadata(self, paths: Iterable[str]) -> dict[str, NodeMetadata]:
        result: dict[str, NodeMetadata] = {}
        for path in paths:
            node = self._nodes.get(path)
            if node is not None:
                result[path] = NodeMetadata(title=node.title, headers=list(node.headers))
        return result

    # Persistence ----------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": {
                path: {"title": node.title, "headers": node.headers, "placeholder": node.placeholder}
                for path, node in self._nodes.items()
            },
            "edges": [
                [source, target, kind]
                for source, targets in self._out.items()
                for target, kind in targets.items()
            ],
        }

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace the graph with a :meth:`to_dict` snapshot."""
        nodes = data.get("nodes", {})
        edges = data.get("edges", [])
        self.clear()
        for path, attrs in nodes.items():
            self._nodes[path] = GraphNode(
                title=attrs.get("title") or title_from_path(path),
                headers=list(attrs.get("headers", [])),
                placeholder=bool(attrs.get("placeholder", False)),
            )
            self._out[path] = {}
            self._in[path] = {}
        for source, target, kind in edges:
            placeholder_target = target not in self._nodes
            self.add_edge(source, target, kind)
            if placeholder_target:
                self._nodes[target].placeholder = True

    # Internals ------------------------------------------------------------

    def _adjacent(self, path: str, direction: Direction) -> dict[str, EdgeKind]:
        neighbors: dict[str, EdgeKind] = {}
        if direction in ("out", "both"):
            neighbors.update(self._out.get(path, {}))
        if direction in ("in", "both"):
            for source, kind in self._in.get(path, {}).items():
                existing = neighbors.get(source)
                if existing is None or self.weights[kind] > self.weights[existing]:
                    neighbors[source] = kind
        return neighbors

    def _drop_if_dangling(self, path: str) -> None:
        node = self._nodes.get(path)
        if node is not None and node.placeholder and not self._in.get(path) and not self._out.get(path):
            self._delete(path)

    def _delete(self, path: str) -> None:
        self._nodes.pop(path, None)
        self._out.pop(path, None)
        self._in.pop(path, None)
