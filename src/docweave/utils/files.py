"""Utility helpers for working with files."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

MARKDOWN_SUFFIXES = (".md", ".markdown")


def iter_markdown_paths(root: Path) -> Iterator[Path]:
    """Yield Markdown files under ``root`` in sorted order, skipping hidden directories."""
    for item in sorted(root.rglob("*")):
        relative = item.relative_to(root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if item.is_file() and item.suffix.lower() in MARKDOWN_SUFFIXES:
            yield item


def relative_key(root: Path, path: Path) -> str:
    """Document key for ``path``: its POSIX path relative to ``root``."""
    return Path(path).resolve().relative_to(Path(root).resolve()).as_posix()
