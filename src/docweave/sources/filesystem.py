"""Markdown files on local disk as a document source."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from docweave.config import DATA_DIR_NAME
from docweave.models import DocumentStat, Link, title_from_path
from docweave.sources.base import ChangeListener
from docweave.utils.files import MARKDOWN_SUFFIXES, iter_markdown_paths, relative_key
from docweave.utils.links import document_links, normalize_path, parse_aliases
from docweave.utils.text import split_frontmatter

LOGGER = logging.getLogger(__name__)


class _ChangeHandler(FileSystemEventHandler):
    """Translates watchdog events into document keys for the listeners."""

    def __init__(self, source: FileSystemSource) -> None:
        super().__init__()
        self.source = source

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        key = self.source.key_for(event.src_path)
        if not event.is_directory and key is not None:
            self.source.notify_modify(key)

    def on_deleted(self, event: FileSystemEvent) -> None:
        key = self.source.key_for(event.src_path)
        if not event.is_directory and key is not None:
            self.source.notify_delete(key)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        old_key = self.source.key_for(event.src_path)
        new_key = self.source.key_for(event.dest_path)
        if old_key is not None and new_key is not None:
            self.source.notify_rename(old_key, new_key)
        elif old_key is not None:
            self.source.notify_delete(old_key)
        elif new_key is not None:
            self.source.notify_modify(new_key)


class FileSystemSource:
    """Serves Markdown documents below ``root`` keyed by their relative POSIX path."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise FileNotFoundError(f"Document root not found: {self.root}")
        self._listeners: list[ChangeListener] = []
        self._observer: Observer | None = None
        self._document_names: dict[str, tuple[list[str], list[str]]] | None = None
        self._aliases: dict[str, str] | None = None
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.root / normalize_path(key)

    def key_for(self, raw_path: str | bytes) -> str | None:
        """Document key for an absolute path, or None if it is not an indexable document."""
        path = Path(raw_path.decode() if isinstance(raw_path, bytes) else raw_path)
        if path.suffix.lower() not in MARKDOWN_SUFFIXES:
            return None
        try:
            key = relative_key(self.root, path)
        except ValueError:
            return None
        if key.startswith(DATA_DIR_NAME + "/") or any(part.startswith(".") for part in key.split("/")):
            return None
        return key

    def list_documents(self) -> list[DocumentStat]:
        stats = []
        for path in iter_markdown_paths(self.root):
            stat = path.stat()
            stats.append(DocumentStat(relative_key(self.root, path), stat.st_mtime, stat.st_size))
        return stats

    def exists(self, path: str) -> bool:
        return self._path(path).is_file()

    def read(self, path: str) -> str:
        return self._path(path).read_text(encoding="utf-8", errors="replace")

    def stat(self, path: str) -> DocumentStat | None:
        target = self._path(path)
        if not target.is_file():
            return None
        stat = target.stat()
        return DocumentStat(normalize_path(path), stat.st_mtime, stat.st_size)

    def title(self, path: str) -> str:
        return title_from_path(path)

    def _document_aliases(self, key: str) -> tuple[list[str], list[str]]:
        """Path-derived names and frontmatter aliases of one document."""
        names = [title_from_path(key).lower(), key[: -len(Path(key).suffix)].lower()]
        try:
            frontmatter, _, _ = split_frontmatter(self.read(key))
        except OSError as exc:
            LOGGER.warning("Could not read aliases of %s: %s", key, exc)
            frontmatter = ""
        return names, [alias.lower() for alias in parse_aliases(frontmatter)]

    def alias_map(self) -> dict[str, str]:
        """Lowercase basename and frontmatter alias -> document key.

        Frontmatter aliases win over path-derived names; among equals the
        last document wins.
        """
        with self._lock:
            if self._document_names is None:
                self._document_names = {
                    doc.path: self._document_aliases(doc.path) for doc in self.list_documents()
                }
                self._aliases = None
            if self._aliases is None:
                aliases: dict[str, str] = {}
                for key, (names, _) in self._document_names.items():
                    for name in names:
                        aliases[name] = key
                for key, (_, extra) in self._document_names.items():
                    for alias in extra:
                        aliases[alias] = key
                self._aliases = aliases
            return dict(self._aliases)

    def resolved_links(self, path: str, content: str | None = None) -> list[Link]:
        text = self.read(path) if content is None else content
        return document_links(text, normalize_path(path), self.alias_map())

    # Change notifications ---------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _refresh_aliases(self, key: str | None, removed: str | None = None) -> None:
        """Re-read the aliases of ``key`` only; a map not built yet stays unbuilt."""
        with self._lock:
            if self._document_names is None:
                return
            if removed is not None:
                self._document_names.pop(removed, None)
            if key is not None:
                if self._path(key).is_file():
                    self._document_names[key] = self._document_aliases(key)
                else:
                    self._document_names.pop(key, None)
            self._aliases = None

    def notify_modify(self, key: str) -> None:
        self._refresh_aliases(key)
        for listener in self._listeners:
            listener.on_modify(key)

    def notify_delete(self, key: str) -> None:
        self._refresh_aliases(None, removed=key)
        for listener in self._listeners:
            listener.on_delete(key)

    def notify_rename(self, old_key: str, new_key: str) -> None:
        self._refresh_aliases(new_key, removed=old_key)
        for listener in self._listeners:
            listener.on_rename(old_key, new_key)

    def start_watching(self) -> None:
        if self._observer is not None:
            return
        self._observer = Observer()
        self._observer.schedule(_ChangeHandler(self), str(self.root), recursive=True)
        self._observer.start()
        LOGGER.info("Watching %s for changes", self.root)

    def stop_watching(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join()
        self._observer = None
        LOGGER.info("Stopped watching %s", self.root)
