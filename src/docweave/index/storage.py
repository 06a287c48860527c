"""In-memory vector and keyword index."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Iterator, List, Sequence

import numpy as np

from docweave.errors import IndexIncompatibleError
from docweave.index.codec import decode_state, encode_state
from docweave.index.scoring import DEFAULT_CONSTANTS, ScoringConstants, keyword_match, stem_variants
from docweave.models import ChunkRecord, FileState, SearchResult

LOGGER = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")


@dataclass(slots=True)
class IndexedDocument:
    """Per-document bookkeeping kept beside the vectors."""

    path: str
    title: str
    mtime: float
    size: int
    content_hash: int
    token_count: int = 0
    content: str = ""
    has_content: bool = True


class VectorIndex:
    """Chunk vectors plus inverted keyword postings for a set of documents.

    Vectors are stored L2-normalised so the dot product is cosine similarity.
    Search methods return hollow :class:`SearchResult` objects: offsets and
    anchors, never document text.
    """

    def __init__(
        self,
        *,
        dimension: int,
        model_id: str = "",
        provider: str = "",
        chunk_size: int = 1000,
        constants: ScoringConstants = DEFAULT_CONSTANTS,
        max_keyword_matches: int = 100,
    ) -> None:
        self.dimension = dimension
        self.model_id = model_id
        self.provider = provider
        self.chunk_size = chunk_size
        self.constants = constants
        self.max_keyword_matches = max_keyword_matches
        self._documents: dict[str, IndexedDocument] = {}
        self._chunks: dict[str, list[ChunkRecord]] = {}
        self._vectors: dict[str, np.ndarray] = {}
        self._postings: dict[str, set[str]] = {}
        self._matrix: np.ndarray | None = None
        self._rows: list[ChunkRecord] = []

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, path: object) -> bool:
        return path in self._documents

    # Mutations ------------------------------------------------------------

    def upsert(
        self,
        path: str,
        chunks: Sequence[ChunkRecord],
        vectors: np.ndarray,
        *,
        title: str,
        content: str,
        mtime: float,
        size: int,
        content_hash: int,
        token_count: int = 0,
    ) -> str:
        """Replace everything stored for ``path``. Returns 'inserted' or 'updated'."""
        matrix = np.asarray(vectors, dtype="float32")
        if not chunks:
            matrix = np.zeros((0, self.dimension), dtype="float32")
        if matrix.ndim != 2 or matrix.shape[0] != len(chunks):
            raise ValueError("Embeddings and chunks length mismatch")
        if matrix.shape[1] != self.dimension:
            raise ValueError(
                f"Embedding dimension {matrix.shape[1]} does not match index dimension {self.dimension}"
            )
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0

        status = "updated" if path in self._documents else "inserted"
        self._drop_postings(path)
        self._documents[path] = IndexedDocument(
            path=path,
            title=title,
            mtime=mtime,
            size=size,
            content_hash=content_hash,
            token_count=token_count,
            content=content,
            has_content=True,
        )
        self._chunks[path] = [replace(chunk, document_path=path) for chunk in chunks]
        self._vectors[path] = matrix / norms
        self._add_postings(path, content)
        self._matrix = None
        return status

    def refresh(self, path: str, *, mtime: float, size: int, content: str | None = None, title: str | None = None) -> None:
        """Update stat metadata (and restore stripped content) without re-embedding."""
        document = self._documents[path]
        document.mtime = mtime
        document.size = size
        if title:
            document.title = title
        if content is not None:
            self._drop_postings(path)
            document.content = content
            document.has_content = True
            self._add_postings(path, content)

    def delete(self, path: str) -> bool:
        if path not in self._documents:
            return False
        self._drop_postings(path)
        del self._documents[path]
        self._chunks.pop(path, None)
        self._vectors.pop(path, None)
        self._matrix = None
        return True

    def rename(self, old_path: str, new_path: str, *, title: str | None = None) -> bool:
        if old_path not in self._documents or old_path == new_path:
            return False
        self.delete(new_path)
        document = self._documents.pop(old_path)
        document.path = new_path
        if title:
            document.title = title
        self._documents[new_path] = document
        self._chunks[new_path] = [
            replace(chunk, document_path=new_path) for chunk in self._chunks.pop(old_path, [])
        ]
        self._vectors[new_path] = self._vectors.pop(old_path)
        for paths in self._postings.values():
            if old_path in paths:
                paths.discard(old_path)
                paths.add(new_path)
        self._matrix = None
        return True

    def clear(self) -> None:
        self._documents.clear()
        self._chunks.clear()
        self._vectors.clear()
        self._postings.clear()
        self._matrix = None
        self._rows = []

    # Queries --------------------------------------------------------------

    def documents(self) -> Iterator[IndexedDocument]:
        yield from self._documents.values()

    def get(self, path: str) -> IndexedDocument | None:
        return self._documents.get(path)

    def chunk_count(self, path: str | None = None) -> int:
        if path is not None:
            return len(self._chunks.get(path, []))
        return sum(len(chunks) for chunks in self._chunks.values())

    def file_states(self) -> dict[str, FileState]:
        return {
            path: FileState(doc.mtime, doc.size, doc.content_hash, doc.has_content)
            for path, doc in self._documents.items()
        }

    def search(self, query_vector: np.ndarray, *, limit: int = 0, min_score: float = 0.001) -> List[SearchResult]:
        """Best chunk per document for every document scoring at least ``min_score``."""
        matrix = self._ensure_matrix()
        if matrix.shape[0] == 0:
            return []
        query = np.asarray(query_vector, dtype="float32").reshape(-1)
        if query.shape[0] != self.dimension:
            raise IndexIncompatibleError(
                f"Query vector has dimension {query.shape[0]}, index expects {self.dimension}"
            )
        norm = float(np.linalg.norm(query))
        if norm == 0:
            return []
        scores = matrix @ (query / norm)

        best: dict[str, tuple[float, ChunkRecord]] = {}
        for idx in np.argsort(scores)[::-1]:
            score = float(scores[idx])
            if score < min_score:
                break
            chunk = self._rows[idx]
            if chunk.document_path not in best:
                best[chunk.document_path] = (score, chunk)
                if 0 < limit <= len(best):
                    break

        results: List[SearchResult] = []
        for path, (score, chunk) in best.items():
            document = self._documents[path]
            results.append(
                SearchResult(
                    path=path,
                    score=score,
                    title=document.title,
                    anchor_hash=chunk.anchor_hash,
                    start=chunk.start,
                    end=chunk.end,
                    token_count=document.token_count,
                    similarity=score,
                )
            )
        return results

    def keyword_search(self, query: str, *, limit: int = 0) -> List[SearchResult]:
        """Title, exact phrase and bag-of-tokens matches, best first."""
        query = query.strip()
        if len(query) <= 2:
            return []
        results: List[SearchResult] = []
        for path in self._keyword_candidates(query):
            document = self._documents[path]
            match = keyword_match(document.title, document.content, query, self.constants)
            if match is None:
                continue
            results.append(
                SearchResult(
                    path=path,
                    score=match.score,
                    title=document.title,
                    is_keyword_match=True,
                    is_title_match=match.is_title_match,
                    token_count=document.token_count,
                )
            )
            if len(results) >= self.max_keyword_matches:
                break
        results.sort(key=lambda result: result.score, reverse=True)
        return results[:limit] if limit > 0 else results

    def similar(self, path: str, *, limit: int = 10, min_score: float = 0.001) -> List[SearchResult]:
        """Documents closest to the mean vector of ``path``, excluding itself."""
        vectors = self._vectors.get(path)
        if vectors is None or vectors.shape[0] == 0:
            return []
        centroid = vectors.mean(axis=0)
        hits = self.search(centroid, limit=limit + 1 if limit > 0 else 0, min_score=min_score)
        hits = [hit for hit in hits if hit.path != path]
        return hits[:limit] if limit > 0 else hits

    # Persistence ----------------------------------------------------------

    def export(self, *, slim: bool = False) -> tuple[dict[str, Any], np.ndarray]:
        """Header dict and vector matrix describing the whole index."""
        documents = []
        chunks = []
        blocks = []
        for path in sorted(self._documents):
            document = self._documents[path]
            documents.append(
                {
                    "path": path,
                    "title": document.title,
                    "mtime": document.mtime,
                    "size": document.size,
                    "hash": document.content_hash,
                    "tokens": document.token_count,
                    "content": "" if slim else document.content,
                    "has_content": document.has_content and not slim,
                }
            )
            for chunk in self._chunks.get(path, []):
                chunks.append([path, chunk.index, chunk.start, chunk.end, chunk.anchor_hash])
            blocks.append(self._vectors[path])
        vectors = np.vstack(blocks) if blocks else np.zeros((0, self.dimension), dtype="float32")
        header = {
            "provider": self.provider,
            "model_id": self.model_id,
            "dimension": self.dimension,
            "chunk_size": self.chunk_size,
            "slim": slim,
            "documents": documents,
            "chunks": chunks,
        }
        return header, vectors

    def restore(self, header: dict[str, Any], vectors: np.ndarray) -> bool:
        """Replace state from an exported header; False leaves the index untouched."""
        reason = self._incompatibility(header, vectors)
        if reason:
            LOGGER.warning("Discarding persisted index: %s", reason)
            return False

        documents: dict[str, IndexedDocument] = {}
        for raw in header["documents"]:
            documents[raw["path"]] = IndexedDocument(
                path=raw["path"],
                title=raw.get("title", ""),
                mtime=float(raw["mtime"]),
                size=int(raw["size"]),
                content_hash=int(raw["hash"]),
                token_count=int(raw.get("tokens", 0)),
                content=raw.get("content", ""),
                has_content=bool(raw.get("has_content", False)),
            )
        chunks: dict[str, list[ChunkRecord]] = {path: [] for path in documents}
        rows: dict[str, list[int]] = {path: [] for path in documents}
        for row, (path, index, start, end, anchor) in enumerate(header["chunks"]):
            if path not in documents:
                LOGGER.warning("Discarding persisted index: chunk for unknown document %s", path)
                return False
            chunks[path].append(ChunkRecord(path, int(index), int(start), int(end), int(anchor)))
            rows[path].append(row)

        self.clear()
        self._documents = documents
        self._chunks = chunks
        self._vectors = {
            path: vectors[indices] if indices else np.zeros((0, self.dimension), dtype="float32")
            for path, indices in rows.items()
        }
        for path, document in documents.items():
            self._add_postings(path, document.content)
        return True

    def save(self, *, slim: bool = False) -> bytes:
        return encode_state(*self.export(slim=slim))

    def load(self, blob: bytes) -> bool:
        try:
            header, vectors = decode_state(blob)
        except IndexIncompatibleError as exc:
            LOGGER.warning("Discarding persisted index: %s", exc)
            return False
        return self.restore(header, vectors)

    # Internals ------------------------------------------------------------

    def _incompatibility(self, header: dict[str, Any], vectors: np.ndarray) -> str | None:
        if int(header.get("dimension", -1)) != self.dimension or vectors.shape[1:] != (self.dimension,):
            return f"dimension {header.get('dimension')} != {self.dimension}"
        if self.model_id and header.get("model_id") and header["model_id"] != self.model_id:
            return f"model {header['model_id']} != {self.model_id}"
        if int(header.get("chunk_size", self.chunk_size)) != self.chunk_size:
            return f"chunk size {header.get('chunk_size')} != {self.chunk_size}"
        if not isinstance(header.get("documents"), list) or not isinstance(header.get("chunks"), list):
            return "missing document table"
        if len(header["chunks"]) != vectors.shape[0]:
            return "chunk table does not match vector block"
        return None

    def _ensure_matrix(self) -> np.ndarray:
        if self._matrix is None:
            rows: list[ChunkRecord] = []
            blocks: list[np.ndarray] = []
            for path, chunks in self._chunks.items():
                if chunks:
                    rows.extend(chunks)
                    blocks.append(self._vectors[path])
            self._rows = rows
            self._matrix = np.vstack(blocks) if blocks else np.zeros((0, self.dimension), dtype="float32")
        return self._matrix

    def _add_postings(self, path: str, content: str) -> None:
        for word in set(_WORD_RE.findall(content.lower())):
            self._postings.setdefault(word, set()).add(path)

    def _drop_postings(self, path: str) -> None:
        document = self._documents.get(path)
        if document is None or not document.content:
            return
        for word in set(_WORD_RE.findall(document.content.lower())):
            paths = self._postings.get(word)
            if paths is not None:
                paths.discard(path)
                if not paths:
                    del self._postings[word]

    def _keyword_candidates(self, query: str) -> list[str]:
        query_lower = query.lower()
        candidates = {path for path, doc in self._documents.items() if query_lower in doc.title.lower()}
        stems = {
            variant
            for word in _WORD_RE.findall(query_lower)
            for variant in stem_variants(word)
        }
        if stems:
            for word, paths in self._postings.items():
                if any(stem in word for stem in stems):
                    candidates.update(paths)
        return sorted(candidates)
