"""Heuristic scoring functions for hybrid search.

Everything here is pure: no index access, no I/O. The constants are
empirically tuned and exposed through :class:`ScoringConstants` so callers
can override them from configuration.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from docweave.config import GarsWeights

_QUOTE_RE = re.compile(r"[\"'()]")
_STOPWORDS = frozenset({"or", "and"})


@dataclass(slots=True, frozen=True)
class ScoringConstants:
    title_match: float = 1.2
    body_match: float = 0.85
    fuzzy_base: float = 0.4
    fuzzy_short_threshold: float = 0.6
    short_query_boost: float = 0.3
    fuzzy_long_threshold: float = 0.3
    fuzzy_long_hit_multiplier: float = 0.08
    fuzzy_cap: float = 0.75
    long_query_tokens: int = 4
    long_query_min_hits: int = 2
    hybrid_boost: float = 0.3
    hybrid_title_boost: float = 0.5


DEFAULT_CONSTANTS = ScoringConstants()


@dataclass(slots=True, frozen=True)
class KeywordMatch:
    score: float
    is_title_match: bool = False


def tokenize_query(query: str) -> list[str]:
    """Lowercase query tokens longer than two characters, minus boolean operators."""
    cleaned = _QUOTE_RE.sub(" ", query.lower())
    return [token for token in cleaned.split() if len(token) > 2 and token not in _STOPWORDS]


def stem_variants(token: str) -> tuple[str, ...]:
    """The token plus crude stems with a plural or verb suffix removed."""
    variants = [token]
    for suffix in ("s", "ing", "ed"):
        if token.endswith(suffix) and len(token) > len(suffix):
            variants.append(token[: -len(suffix)])
    return tuple(variants)


def title_score(title_lower: str, query_lower: str, constants: ScoringConstants = DEFAULT_CONSTANTS) -> float | None:
    if query_lower and query_lower in title_lower:
        return constants.title_match
    return None


def exact_body_score(content_lower: str, query_lower: str, constants: ScoringConstants = DEFAULT_CONSTANTS) -> float | None:
    if query_lower and query_lower in content_lower:
        return constants.body_match
    return None


def fuzzy_score(tokens: list[str], content_lower: str, constants: ScoringConstants = DEFAULT_CONSTANTS) -> float:
    """Bag-of-tokens score.

    Short queries need a high hit ratio to score at all. Long queries accept a
    lower ratio but scale with the absolute number of hits, up to a cap.
    """
    if not tokens:
        return 0.0
    hits = sum(
        1 for token in tokens if any(variant in content_lower for variant in stem_variants(token))
    )
    ratio = hits / len(tokens)

    if len(tokens) < constants.long_query_tokens:
        if ratio > constants.fuzzy_short_threshold:
            return constants.fuzzy_base + ratio * constants.short_query_boost
        return 0.0

    if hits >= constants.long_query_min_hits or ratio > constants.fuzzy_long_threshold:
        return min(
            constants.fuzzy_base + hits * constants.fuzzy_long_hit_multiplier,
            constants.fuzzy_cap,
        )
    return 0.0


def keyword_match(
    title: str,
    content: str,
    query: str,
    constants: ScoringConstants = DEFAULT_CONSTANTS,
) -> KeywordMatch | None:
    """Score one document against a keyword query: title, then exact body, then fuzzy."""
    query_lower = query.strip().lower()
    if len(query_lower) <= 2:
        return None
    score = title_score(title.lower(), query_lower, constants)
    if score is not None:
        return KeywordMatch(score, is_title_match=True)

    content_lower = content.lower()
    score = exact_body_score(content_lower, query_lower, constants)
    if score is not None:
        return KeywordMatch(score)

    tokens = tokenize_query(query_lower)
    if len(tokens) > 1:
        score = fuzzy_score(tokens, content_lower, constants)
        if score > 0:
            return KeywordMatch(score)
    return None


def hybrid_boost(
    vector_score: float,
    keyword: KeywordMatch | None,
    constants: ScoringConstants = DEFAULT_CONSTANTS,
) -> float:
    """Additive boost for documents confirmed by both vector and keyword search."""
    score = vector_score
    if keyword is not None:
        score += constants.hybrid_boost
        if keyword.is_title_match:
            score += constants.hybrid_title_boost
    return score


def gars(similarity: float, centrality: float, activation: float, weights: GarsWeights) -> float:
    """Graph-aware relevance score.

    Inputs are clamped at zero so raising any weight never lowers the score.
    """
    return (
        max(similarity, 0.0) * weights.similarity
        + max(centrality, 0.0) * weights.centrality
        + max(activation, 0.0) * weights.activation
    )
