"""Application configuration defaults."""

from __future__ import annotations

import hashlib
import re
import sys
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DATA_DIR_NAME = ".docweave"


def _get_default_cache_dir() -> Path:
    """Get the default hot-cache directory based on platform."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / "docweave"
    if sys.platform.startswith("win"):
        return Path.home() / "AppData" / "Local" / "docweave"
    return Path.home() / ".cache" / "docweave"


@dataclass(slots=True, frozen=True)
class GarsWeights:
    """Blend weights for similarity, centrality and activation."""

    similarity: float = 0.6
    centrality: float = 0.2
    activation: float = 0.2

    def __post_init__(self) -> None:
        for name in ("similarity", "centrality", "activation"):
            if getattr(self, name) < 0:
                raise ValueError(f"GARS weight '{name}' must be non-negative")


@dataclass(slots=True, frozen=True)
class EmbeddingIdentity:
    """The identity a persisted shard is keyed by."""

    provider: str
    model_id: str
    dimension: int
    chunk_size: int = 1000

    @property
    def shard_key(self) -> str:
        digest = hashlib.sha1(
            f"{self.provider}|{self.model_id}|{self.dimension}".encode("utf-8")
        ).hexdigest()[:8]
        slug = re.sub(r"[^a-z0-9]+", "-", self.model_id.lower()).strip("-")
        return f"{self.provider}-{slug}-{self.dimension}-{digest}"


@dataclass(slots=True)
class AppConfig:
    cache_dir: Path | None = None
    data_dir: str = DATA_DIR_NAME
    model_name: str = DEFAULT_MODEL
    provider: str = "local"
    excluded_folders: list[str] = field(default_factory=list)

    # Chunking
    chunk_chars: int = 1000
    overlap: int = 100

    # Ranking
    sim_weight: float = 0.6
    centrality_weight: float = 0.2
    activation_weight: float = 0.2
    decay: float = 0.5
    hub_min_degree: int = 5
    topic_path: str = "Ontology"
    topic_min_in_degree: int = 1
    structural_edge_weight: float = 1.5
    body_edge_weight: float = 1.0
    expansion_seeds: int = 5
    recall_floor: float = 0.001
    keyword_boost: float = 0.3
    title_boost: float = 0.5
    max_keyword_matches: int = 100

    # Context assembly
    primary_threshold: float = 0.9
    supporting_threshold: float = 0.7
    structural_threshold: float = 0.35
    soft_limit_ratio: float = 0.25
    structural_cap: int = 10
    max_context_documents: int = 100
    min_clip_chars: int = 500
    context_budget_chars: int = 24_000

    # Hydration
    hydration_search_range: int = 2000
    drift_max_retries: int = 3

    # Sync
    indexing_delay: float = 5.0
    active_indexing_delay: float = 30.0
    idle_save_delay: float = 2.0
    batch_max_files: int = 50
    batch_max_bytes: int = 5 * 1024 * 1024
    query_timeout: float = 60.0

    def __post_init__(self) -> None:
        if self.cache_dir is None:
            self.cache_dir = _get_default_cache_dir()
        for name in (
            "sim_weight",
            "centrality_weight",
            "activation_weight",
            "recall_floor",
            "keyword_boost",
            "title_boost",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if not 0 < self.decay <= 1:
            raise ValueError("decay must be in (0, 1]")
        if not (
            0 <= self.structural_threshold
            <= self.supporting_threshold
            <= self.primary_threshold
            <= 1
        ):
            raise ValueError(
                "Context thresholds must satisfy 0 <= structural <= supporting <= primary <= 1"
            )
        if not 0 < self.soft_limit_ratio <= 1:
            raise ValueError("soft_limit_ratio must be in (0, 1]")
        if self.chunk_chars <= 0 or self.overlap < 0 or self.overlap >= self.chunk_chars:
            raise ValueError("chunk_chars must be positive and larger than overlap")
        if self.context_budget_chars <= 0:
            raise ValueError("context_budget_chars must be positive")

    @property
    def weights(self) -> GarsWeights:
        return GarsWeights(self.sim_weight, self.centrality_weight, self.activation_weight)

    def resolve_cache_dir(self, base_dir: Path | None = None) -> Path:
        if self.cache_dir is None:
            self.cache_dir = _get_default_cache_dir()
        if Path(self.cache_dir).is_absolute() or base_dir is None:
            return Path(self.cache_dir)
        return base_dir / self.cache_dir

    def is_excluded(self, path: str) -> bool:
        """Return True for the data directory and any configured excluded folder."""
        lowered = path.lower()
        if lowered == self.data_dir or lowered.startswith(self.data_dir + "/"):
            return True
        for folder in self.excluded_folders:
            normalized = folder.lower().rstrip("/")
            if lowered == normalized or lowered.startswith(normalized + "/"):
                return True
        return False

    def embedding_changed(self, other: AppConfig) -> bool:
        return (
            self.model_name != other.model_name
            or self.provider != other.provider
            or self.chunk_chars != other.chunk_chars
        )

    @classmethod
    def from_toml(cls, path: Path, **overrides: Any) -> AppConfig:
        """Load configuration from the ``[docweave]`` table of a TOML file."""
        with Path(path).open("rb") as handle:
            raw = tomllib.load(handle)
        section = raw.get("docweave", raw)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(section) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        values = dict(section)
        if "cache_dir" in values:
            values["cache_dir"] = Path(values["cache_dir"]).expanduser()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
