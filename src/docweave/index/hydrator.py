"""Resolve hollow search hits against live documents, healing drift."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Sequence

from docweave.models import SearchResult
from docweave.sources.base import DocumentSource
from docweave.utils.text import FALLBACK_EXCERPT_LENGTH, body_preview, clean_snippet, fast_hash

LOGGER = logging.getLogger(__name__)

DRIFT_PLACEHOLDER = "(Content drifted - Re-indexing in background)"


@dataclass(slots=True)
class HydrationResult:
    hydrated: list[SearchResult] = field(default_factory=list)
    drifted: list[str] = field(default_factory=list)


class DriftQuarantine:
    """Per-session retry budget for drift-triggered re-indexing."""

    def __init__(self, max_retries: int = 3) -> None:
        self.max_retries = max_retries
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def should_retry(self, path: str) -> bool:
        """Consume one retry for ``path``; False once the budget is spent."""
        with self._lock:
            count = self._counts.get(path, 0)
            if count < self.max_retries:
                self._counts[path] = count + 1
                return True
        LOGGER.warning("%s quarantined after %d unhealed drift reports", path, self.max_retries)
        return False

    def is_quarantined(self, path: str) -> bool:
        with self._lock:
            return self._counts.get(path, 0) >= self.max_retries

    def reset(self, path: str) -> None:
        with self._lock:
            self._counts.pop(path, None)

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()


class ResultHydrator:
    """Fills ``excerpt`` on hollow results from the document source.

    A chunk whose anchor no longer matches at its recorded offsets is searched
    for within ``search_range`` characters on either side, nearest first.
    """

    def __init__(
        self,
        source: DocumentSource,
        *,
        search_range: int = 2000,
        excerpt_length: int = FALLBACK_EXCERPT_LENGTH,
    ) -> None:
        self.source = source
        self.search_range = search_range
        self.excerpt_length = excerpt_length

    def hydrate(self, results: Sequence[SearchResult]) -> HydrationResult:
        outcome = HydrationResult()
        for result in results:
            if not result.is_hollow:
                outcome.hydrated.append(
                    replace(result, excerpt=clean_snippet(result.excerpt or "", limit=self.excerpt_length))
                )
                continue
            if not self.source.exists(result.path):
                outcome.hydrated.append(replace(result, excerpt=""))
                continue
            try:
                text = self.source.read(result.path)
            except OSError as exc:
                LOGGER.error("Hydration failed for %s: %s", result.path, exc)
                outcome.hydrated.append(replace(result, excerpt=""))
                continue

            aligned = self.align(text, result.anchor_hash, result.start, result.end)
            if aligned is None:
                LOGGER.debug("Drift detected in %s", result.path)
                outcome.drifted.append(result.path)
                excerpt = DRIFT_PLACEHOLDER
            else:
                excerpt = clean_snippet(aligned, limit=self.excerpt_length)
            outcome.hydrated.append(replace(result, excerpt=excerpt))
        return outcome

    def align(self, text: str, anchor: int | None, start: int | None, end: int | None) -> str | None:
        """Return the anchored span of ``text`` or None when it cannot be found."""
        if anchor is None or start is None or end is None or end <= start:
            return body_preview(text, limit=self.excerpt_length)

        span = text[start:end]
        if len(span) == end - start and fast_hash(span) == anchor:
            return span.strip()

        length = end - start
        lower = max(0, start - self.search_range)
        upper = min(len(text), end + self.search_range)
        for delta in range(1, self.search_range + 1):
            for position in (start + delta, start - delta):
                if position < lower or position + length > upper:
                    continue
                candidate = text[position : position + length]
                if fast_hash(candidate) == anchor:
                    LOGGER.debug("Healed drift: chunk moved by %+d characters", position - start)
                    return candidate.strip()
        return None
