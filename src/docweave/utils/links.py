"""Link extraction, path normalisation and alias handling for Markdown notes."""

from __future__ import annotations

import re
from typing import Mapping
from urllib.parse import unquote

from docweave.models import Link
from docweave.utils.text import split_frontmatter

_EXTERNAL_RE = re.compile(r"^(https?|mailto):", re.IGNORECASE)
_ALIASES_KEY_RE = re.compile(r"^aliases\s*:\s*(.*)$", re.IGNORECASE)


def normalize_path(path: str) -> str:
    """Use forward slashes and strip leading ``./``, leading and trailing slashes."""
    if not path:
        return ""
    p = path.replace("\\", "/")
    p = re.sub(r"/+", "/", p)
    if p.startswith("./"):
        p = p[2:]
    return p.strip("/")


def resolve_path(link: str, alias_map: Mapping[str, str] | None = None, base_path: str | None = None) -> str:
    """Resolve a raw link target to a canonical document path."""
    normalized = normalize_path(link)

    if base_path and (link.startswith("./") or link.startswith("../")):
        segments = [s for s in base_path.split("/") if s]
        for segment in link.replace("\\", "/").split("/"):
            if segment in ("", "."):
                continue
            if segment == "..":
                if segments:
                    segments.pop()
            else:
                segments.append(segment)
        normalized = "/".join(segments)

    if alias_map:
        resolved = alias_map.get(normalized.lower())
        if resolved:
            return resolved

    if "." not in normalized.rsplit("/", 1)[-1] and not normalized.startswith("#"):
        if not _EXTERNAL_RE.match(normalized):
            return normalized + ".md"
    return normalized


def _skip_code(text: str, i: int) -> int:
    """Return the index just past the code span starting at ``i``."""
    length = len(text)
    start = i
    while i < length and text[i] == "`":
        i += 1
    ticks = i - start
    delimiter = "`" * ticks
    search = i
    while search < length:
        found = text.find(delimiter, search)
        if found == -1:
            break
        j = found
        while j < length and text[j] == "`":
            j += 1
        if j - found == ticks:
            return j
        search = j
    return start + ticks


def _closing(text: str, i: int, open_char: str, close_char: str) -> int:
    """Index just past the bracket matching the one before ``i``, or -1."""
    depth = 1
    length = len(text)
    while i < length and depth > 0:
        char = text[i]
        if char == "\\":
            i += 2
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
        i += 1
    return i if depth == 0 else -1


def extract_links(text: str) -> list[str]:
    """Extract wikilink and Markdown link targets from ``text``.

    Code spans, fenced blocks, escaped brackets, external URLs and heading
    anchors are ignored.
    """
    links: list[str] = []
    i = 0
    length = len(text)
    while i < length:
        char = text[i]
        if char == "\\":
            i += 2
            continue
        if char == "`":
            i = _skip_code(text, i)
            continue
        if char == "[":
            if i + 1 < length and text[i + 1] == "[":
                end = text.find("]]", i + 2)
                if end != -1:
                    raw = text[i + 2 : end]
                    if "\n" not in raw:
                        target = raw.split("|", 1)[0].split("#", 1)[0].strip()
                        if target:
                            links.append(target)
                        i = end + 2
                        continue
            else:
                close = _closing(text, i + 1, "[", "]")
                if close != -1 and close < length and text[close] == "(":
                    paren = _closing(text, close + 1, "(", ")")
                    if paren != -1:
                        raw_url = text[close + 1 : paren - 1].strip()
                        if raw_url and not _EXTERNAL_RE.match(raw_url):
                            target = raw_url.split("#", 1)[0].strip().lstrip("/")
                            if target:
                                links.append(unquote(target))
                        i = paren
                        continue
        i += 1
    return links


def parse_aliases(frontmatter: str) -> list[str]:
    """Read ``aliases`` from YAML frontmatter in inline, scalar or dash-list form."""
    aliases: list[str] = []
    lines = frontmatter.splitlines()
    for index, line in enumerate(lines):
        match = _ALIASES_KEY_RE.match(line.strip())
        if not match:
            continue
        value = match.group(1).strip()
        if value.startswith("[") and value.endswith("]"):
            aliases.extend(part.strip().strip("\"'") for part in value[1:-1].split(","))
        elif value:
            aliases.append(value.strip("\"'"))
        else:
            for follow in lines[index + 1 :]:
                item = follow.strip()
                if not item.startswith("-"):
                    break
                aliases.append(item[1:].strip().strip("\"'"))
        break
    return [alias for alias in aliases if alias]


def document_links(
    text: str,
    path: str,
    alias_map: Mapping[str, str] | None = None,
) -> list[Link]:
    """Resolve the outgoing links of a document.

    Links declared in the frontmatter are ``structural``; inline mentions in
    the body are ``body``. A target linked both ways keeps the structural kind.
    """
    frontmatter, body, _ = split_frontmatter(text)
    base = path.rsplit("/", 1)[0] if "/" in path else ""
    resolved: dict[str, Link] = {}
    for kind, section in (("structural", frontmatter), ("body", body)):
        for raw in extract_links(section):
            target = resolve_path(raw, alias_map, base)
            if target and target != path and target not in resolved:
                resolved[target] = Link(target=target, kind=kind)
    return list(resolved.values())
