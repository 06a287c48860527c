"""Text helpers: offset-aware chunking, anchor hashing and snippet cleaning."""

from __future__ import annotations

import math
import re
import zlib
from typing import Iterator

CHARS_PER_TOKEN = 4
FALLBACK_EXCERPT_LENGTH = 300

_HEADER_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$", re.MULTILINE)
_HEADER_LINE_RE = re.compile(r"^#{1,6}\s+.*$", re.MULTILINE)
_WIKI_EMBED_RE = re.compile(r"!\[\[.*?\]\]")
_IMAGE_RE = re.compile(r"!\[.*?\]\(.*?\)")
_BLOCKQUOTE_RE = re.compile(r"^>\s?", re.MULTILINE)
_CODE_FENCE_RE = re.compile(r"```.*?```", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")


def chunk_spans(text: str, *, max_chars: int = 1000, overlap: int = 100) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` character spans covering ``text``.

    Spans overlap by ``overlap`` characters. A span is shortened to end on the
    last newline in its second half so chunks tend to follow paragraph breaks.
    """
    if not text:
        return
    length = len(text)
    start = 0
    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            newline = text.rfind("\n", start + max_chars // 2, end)
            if newline != -1:
                end = newline + 1
        yield start, end
        if end >= length:
            break
        start = max(end - overlap, start + 1)


def fast_hash(text: str) -> int:
    """Non-cryptographic 32-bit anchor hash of a text span."""
    return zlib.crc32(text.encode("utf-8"))


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def split_frontmatter(text: str) -> tuple[str, str, int]:
    """Split a Markdown document into ``(frontmatter, body, body_offset)``."""
    if not text.startswith("---"):
        return "", text, 0
    first_line_end = text.find("\n")
    if first_line_end == -1:
        return "", text, 0
    closing = text.find("\n---", first_line_end)
    if closing == -1:
        return "", text, 0

    body_start = closing + 4
    while body_start < len(text) and text[body_start] in "- \r\t":
        body_start += 1
    if body_start < len(text) and text[body_start] == "\n":
        body_start += 1
    return text[:body_start].strip(), text[body_start:], body_start


def extract_headers(text: str) -> list[str]:
    """Return Markdown header titles in document order, skipping fenced code."""
    stripped = _CODE_FENCE_RE.sub("", text)
    return [match.group(2) for match in _HEADER_RE.finditer(stripped) if match.group(2)]


def clean_snippet(text: str, *, limit: int = FALLBACK_EXCERPT_LENGTH) -> str:
    """Turn a raw Markdown span into a compact single-line excerpt."""
    if not text:
        return ""
    clean = _CODE_FENCE_RE.sub(" [Code Block] ", text)
    clean = _HEADER_LINE_RE.sub(" ", clean)
    clean = _WIKI_EMBED_RE.sub("", clean)
    clean = _IMAGE_RE.sub("", clean)
    clean = _BLOCKQUOTE_RE.sub("", clean)
    clean = _WHITESPACE_RE.sub(" ", clean).strip()

    if not clean:
        match = _HEADER_RE.search(text)
        if match:
            return match.group(2)

    if len(clean) > limit:
        return clean[:limit] + "..."
    return clean


def body_preview(text: str, *, limit: int = FALLBACK_EXCERPT_LENGTH) -> str:
    """Start of the document body, used when a hit carries no chunk anchor."""
    _, body, _ = split_frontmatter(text)
    body = _IMAGE_RE.sub("", _WIKI_EMBED_RE.sub("", body))
    return body[:limit].strip() + "..."
