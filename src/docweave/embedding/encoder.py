"""Embedding provider contract and the sentence-transformers implementation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Protocol, Sequence, runtime_checkable

import numpy as np
from sentence_transformers import SentenceTransformer

from docweave.config import DEFAULT_MODEL, EmbeddingIdentity
from docweave.errors import EmbeddingError
from docweave.utils.text import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ModelSpec:
    """Static description of an embedding model."""

    model_id: str
    provider: str
    dimension: int
    label: str = ""


KNOWN_MODELS: Mapping[str, ModelSpec] = MappingProxyType(
    {
        spec.model_id: spec
        for spec in (
            ModelSpec("sentence-transformers/all-MiniLM-L6-v2", "local", 384, "MiniLM L6 (fast)"),
            ModelSpec("sentence-transformers/all-mpnet-base-v2", "local", 768, "MPNet base"),
            ModelSpec("BAAI/bge-small-en-v1.5", "local", 384, "BGE small"),
            ModelSpec("BAAI/bge-base-en-v1.5", "local", 768, "BGE base"),
            ModelSpec("nomic-ai/nomic-embed-text-v1.5", "local", 768, "Nomic embed"),
        )
    }
)


def lookup_model(model_id: str, registry: Mapping[str, ModelSpec] = KNOWN_MODELS) -> ModelSpec | None:
    return registry.get(model_id)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """What the index needs from an embedding backend."""

    @property
    def provider(self) -> str: ...

    @property
    def model_name(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    def embed_query(self, text: str) -> np.ndarray: ...

    def embed_document(self, chunks: Sequence[str], title: str = "") -> tuple[np.ndarray, int]:
        """Return one vector per chunk of a document and its token count."""
        ...


def resolve_identity(embedder: EmbeddingProvider, *, chunk_size: int) -> EmbeddingIdentity:
    """Shard identity for the given provider, trusting the registry when it knows the model."""
    spec = lookup_model(embedder.model_name)
    dimension = spec.dimension if spec is not None else embedder.dimension
    if dimension != embedder.dimension:
        raise EmbeddingError(
            f"Model {embedder.model_name} reports dimension {embedder.dimension}, "
            f"expected {dimension}"
        )
    return EmbeddingIdentity(
        provider=embedder.provider,
        model_id=embedder.model_name,
        dimension=dimension,
        chunk_size=chunk_size,
    )


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    batch_size: int = 16
    normalize: bool = True
    device: str | None = None


class EmbeddingModel:
    """Thin wrapper around `SentenceTransformer` for query and document embeddings."""

    provider = "local"

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        try:
            self._model = SentenceTransformer(self.config.model_name, device=self.config.device)
        except Exception as exc:
            raise EmbeddingError(f"Unable to load model {self.config.model_name}: {exc}") from exc
        self.dimension = int(self._model.get_sentence_embedding_dimension())
        logger.info("Loaded %s (dimension %d)", self.config.model_name, self.dimension)

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings for input texts."""
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")
        try:
            embeddings = self._model.encode(
                sentences,
                batch_size=self.config.batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=self.config.normalize,
            )
        except Exception as exc:
            raise EmbeddingError(f"Embedding failed: {exc}") from exc
        return embeddings.astype("float32", copy=False)

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]

    def embed_document(self, chunks: Sequence[str], title: str = "") -> tuple[np.ndarray, int]:
        prefix = f"{title}\n" if title else ""
        vectors = self.embed(prefix + chunk for chunk in chunks)
        return vectors, sum(estimate_tokens(chunk) for chunk in chunks)
