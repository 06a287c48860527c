"""Core docweave data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

EdgeKind = Literal["structural", "body"]


@dataclass(slots=True, frozen=True)
class Link:
    """Resolved outgoing reference from one document to another."""

    target: str
    kind: EdgeKind = "body"


@dataclass(slots=True)
class DocumentStat:
    """Basic stat information supplied by a document source."""

    path: str
    mtime: float
    size: int


@dataclass(slots=True)
class FileUpdate:
    """Unit of work sent to the index worker for one changed document.

    When ``links`` is None the worker extracts and resolves links from ``content``.
    """

    path: str
    content: str
    mtime: float
    size: int
    title: str = ""
    links: list[Link] | None = None

    def __post_init__(self) -> None:
        if not self.title:
            self.title = title_from_path(self.path)


@dataclass(slots=True)
class ChunkRecord:
    """Contiguous span of a document paired with its anchor hash.

    ``start`` and ``end`` are character offsets into the raw document text.
    """

    document_path: str
    index: int
    start: int
    end: int
    anchor_hash: int


@dataclass(slots=True)
class FileState:
    """What the worker knows about an indexed document."""

    mtime: float
    size: int
    hash: int
    has_content: bool = True


@dataclass(slots=True)
class NodeMetadata:
    title: str
    headers: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SearchResult:
    """Ranked hit.

    The worker only ever returns *hollow* results (``excerpt is None``) carrying
    the path, score and chunk offsets. The hydrator fills ``excerpt`` from the
    live document.
    """

    path: str
    score: float
    title: str = ""
    excerpt: str | None = None
    is_keyword_match: bool = False
    is_title_match: bool = False
    is_graph_neighbor: bool = False
    token_count: int | None = None
    anchor_hash: int | None = None
    start: int | None = None
    end: int | None = None
    similarity: float = 0.0
    centrality: float = 0.0
    activation: float = 0.0

    @property
    def is_hollow(self) -> bool:
        return self.excerpt is None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "score": self.score,
            "title": self.title,
            "excerpt": self.excerpt,
            "is_keyword_match": self.is_keyword_match,
            "is_title_match": self.is_title_match,
            "is_graph_neighbor": self.is_graph_neighbor,
            "token_count": self.token_count,
            "similarity": self.similarity,
            "centrality": self.centrality,
            "activation": self.activation,
        }


def title_from_path(path: str) -> str:
    """Derive a display title from a document path (basename without extension)."""
    name = path.rsplit("/", 1)[-1]
    if "." in name:
        name = name.rsplit(".", 1)[0]
    return name
