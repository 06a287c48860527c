"""Shared fixtures: a deterministic embedder and an in-memory document source."""

from __future__ import annotations

import re
import zlib
from pathlib import Path
from typing import Sequence

import numpy as np
import pytest

from docweave.config import AppConfig
from docweave.models import DocumentStat, Link, title_from_path
from docweave.sources.base import ChangeListener
from docweave.utils.links import document_links, parse_aliases
from docweave.utils.text import estimate_tokens, split_frontmatter

_WORD_RE = re.compile(r"\w+")


class FakeEmbedder:
    """Bag-of-words hashing embedder: texts sharing words get similar vectors."""

    provider = "fake"

    def __init__(self, dimension: int = 1024, model_name: str = "fake-model") -> None:
        self.dimension = dimension
        self.model_name = model_name
        self.document_calls = 0

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype="float32")
        for word in _WORD_RE.findall(text.lower()):
            vector[zlib.crc32(word.encode("utf-8")) % self.dimension] += 1.0
        return vector

    def embed_query(self, text: str) -> np.ndarray:
        return self._vector(text)

    def embed_document(self, chunks: Sequence[str], title: str = "") -> tuple[np.ndarray, int]:
        self.document_calls += 1
        vectors = np.vstack([self._vector(f"{title} {chunk}") for chunk in chunks])
        return vectors, sum(estimate_tokens(chunk) for chunk in chunks)


class MemorySource:
    """Dictionary-backed document source with manual change notifications."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self.documents: dict[str, str] = {}
        self.mtimes: dict[str, float] = {}
        self.listeners: list[ChangeListener] = []
        self._clock = 1000.0
        for path, content in (documents or {}).items():
            self.put(path, content)

    def put(self, path: str, content: str) -> None:
        self._clock += 1.0
        self.documents[path] = content
        self.mtimes[path] = self._clock

    def remove(self, path: str) -> None:
        self.documents.pop(path, None)
        self.mtimes.pop(path, None)

    def list_documents(self) -> list[DocumentStat]:
        return [self.stat(path) for path in sorted(self.documents)]

    def exists(self, path: str) -> bool:
        return path in self.documents

    def read(self, path: str) -> str:
        if path not in self.documents:
            raise FileNotFoundError(path)
        return self.documents[path]

    def stat(self, path: str) -> DocumentStat | None:
        if path not in self.documents:
            return None
        return DocumentStat(path, self.mtimes[path], len(self.documents[path].encode("utf-8")))

    def title(self, path: str) -> str:
        return title_from_path(path)

    def alias_map(self) -> dict[str, str]:
        aliases = {}
        for path, content in self.documents.items():
            aliases[title_from_path(path).lower()] = path
            aliases[path[: -len(".md")].lower() if path.endswith(".md") else path.lower()] = path
            frontmatter, _, _ = split_frontmatter(content)
            for alias in parse_aliases(frontmatter):
                aliases[alias.lower()] = path
        return aliases

    def resolved_links(self, path: str, content: str | None = None) -> list[Link]:
        text = self.read(path) if content is None else content
        return document_links(text, path, self.alias_map())

    def subscribe(self, listener: ChangeListener) -> None:
        self.listeners.append(listener)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fast_config(tmp_path: Path) -> AppConfig:
    """Configuration with near-zero timers so sync tests finish quickly."""
    return AppConfig(
        cache_dir=tmp_path / "cache",
        indexing_delay=0.01,
        active_indexing_delay=0.05,
        idle_save_delay=0.01,
        query_timeout=5.0,
        chunk_chars=200,
        overlap=20,
    )


@pytest.fixture
def notes() -> dict[str, str]:
    return {
        "Ontology/Databases.md": "# Databases\nStorage engines and query planners.\n",
        "postgres.md": "---\nup: \"[[Ontology/Databases]]\"\n---\n# Postgres\nMVCC and vacuum tuning notes.\n",
        "sqlite.md": "---\nup: \"[[Ontology/Databases]]\"\n---\n# SQLite\nWAL mode and page cache.\n",
        "project-alpha.md": "# Project Alpha\nLaunch checklist for the rocket team.\n",
        "weekly.md": "# Weekly\nDiscussed [[project-alpha]] and [[postgres]] migrations.\n",
    }


@pytest.fixture
def memory_source(notes: dict[str, str]) -> MemorySource:
    return MemorySource(notes)
