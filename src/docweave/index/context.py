"""Budgeted context assembly ("accordion").

Results are packed best first. How much of a document is included depends on
its score relative to the top score:

* primary   - the full document if it fits the per-document soft cap, else a clip
* supporting - a clip of half the soft cap
* structural - only its header outline, for a limited number of documents
* below that - skipped
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from docweave.config import AppConfig
from docweave.models import NodeMetadata, SearchResult
from docweave.sources.base import DocumentSource
from docweave.utils.text import CHARS_PER_TOKEN, extract_headers

LOGGER = logging.getLogger(__name__)

CLIP_MARKER = "...[clipped]..."

MetadataLookup = Callable[[list[str]], dict[str, NodeMetadata]]


@dataclass(slots=True)
class AssembledContext:
    text: str = ""
    used_paths: list[str] = field(default_factory=list)
    tiers: dict[str, str] = field(default_factory=dict)

    @property
    def used_chars(self) -> int:
        return len(self.text)


def clip_content(content: str, query: str, window: int, *, is_keyword_match: bool, min_chars: int = 500) -> str:
    """At most ``window`` characters of ``content``, markers included.

    Keyword matches are centred on the first case-insensitive occurrence of
    the query; everything else is taken from the start of the document.
    """
    if window < min_chars:
        return ""
    if len(content) <= window:
        return content
    if is_keyword_match and query:
        idx = content.lower().find(query.lower())
        if idx != -1:
            body = window - 2 * (len(CLIP_MARKER) + 1)
            start = max(0, idx - body // 2)
            end = min(len(content), start + body)
            start = max(0, end - body)
            return f"{CLIP_MARKER}\n{content[start:end]}\n{CLIP_MARKER}"
    body = window - (len(CLIP_MARKER) + 1)
    return f"{content[:body]}\n{CLIP_MARKER}"


def structural_summary(headers: Sequence[str]) -> str:
    if headers:
        outline = "\n".join(f"- {header}" for header in headers)
        return f"Note Structure / Key Topics:\n{outline}\n... (Full content available via search) ..."
    return "... (Note details available via search or tools if needed) ..."


class ContextAssembler:
    """Packs ranked results into a character budget."""

    def __init__(
        self,
        source: DocumentSource,
        config: AppConfig | None = None,
        *,
        metadata_lookup: MetadataLookup | None = None,
    ) -> None:
        self.source = source
        self.config = config or AppConfig()
        self.metadata_lookup = metadata_lookup

    def assemble_tokens(self, results: Iterable[SearchResult], query: str, budget_tokens: int) -> AssembledContext:
        return self.assemble(results, query, budget_tokens * CHARS_PER_TOKEN)

    def assemble(self, results: Iterable[SearchResult], query: str, budget_chars: int | None = None) -> AssembledContext:
        config = self.config
        budget = config.context_budget_chars if budget_chars is None else budget_chars
        soft_cap = int(budget * config.soft_limit_ratio)
        ranked = sorted(results, key=lambda result: result.score, reverse=True)
        top_score = ranked[0].score if ranked else 0.0
        metadata = self.metadata_lookup([r.path for r in ranked]) if self.metadata_lookup and ranked else {}
        LOGGER.debug("Assembling context: budget %d chars, soft cap %d", budget, soft_cap)

        context = AssembledContext()
        parts: list[str] = []
        used = 0
        structural_count = 0

        for result in ranked:
            if used >= budget or len(context.used_paths) >= config.max_context_documents:
                LOGGER.info("Context assembly stopped after %d documents", len(context.used_paths))
                break
            if result.path in context.tiers or not self.source.exists(result.path):
                continue
            try:
                content = self.source.read(result.path)
            except OSError as exc:
                LOGGER.error("Failed to read %s for context: %s", result.path, exc)
                continue

            header = f"\n--- Document: {result.path} (Relevance: {result.score:.2f}) ---\n"
            room = budget - used - len(header) - 1
            if room <= 0:
                break
            relevance = result.score / top_score if top_score > 0 else 0.0

            if relevance >= config.primary_threshold:
                tier = "primary"
                if len(content) <= soft_cap and len(content) <= room:
                    addition = content
                else:
                    addition = clip_content(
                        content,
                        query,
                        min(soft_cap, room),
                        is_keyword_match=result.is_keyword_match,
                        min_chars=config.min_clip_chars,
                    )
            elif relevance >= config.supporting_threshold:
                tier = "supporting"
                addition = clip_content(
                    content,
                    query,
                    min(soft_cap // 2, room),
                    is_keyword_match=result.is_keyword_match,
                    min_chars=config.min_clip_chars,
                )
            elif relevance >= config.structural_threshold:
                tier = "structural"
                if structural_count >= config.structural_cap:
                    LOGGER.debug("Structural cap reached, skipping %s", result.path)
                    continue
                node = metadata.get(result.path)
                headers = node.headers if node is not None else extract_headers(content)
                addition = structural_summary(headers)
                if len(addition) > room:
                    continue
                structural_count += 1
            else:
                LOGGER.debug("Skipping %s (%.0f%% relevance)", result.path, relevance * 100)
                continue

            if not addition:
                continue
            LOGGER.debug("[%s] %s: %d chars", tier, result.path, len(addition))
            parts.append(f"{header}{addition}\n")
            used += len(header) + len(addition) + 1
            context.used_paths.append(result.path)
            context.tiers[result.path] = tier

        context.text = "".join(parts)
        return context
