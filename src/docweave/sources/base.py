"""Document source contract.

Everything the core needs from the host storage: listing, reading, stat,
resolved outgoing links and change notifications. A filesystem, a cloud store
or an in-memory test double can all implement it.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from docweave.models import DocumentStat, Link


@runtime_checkable
class ChangeListener(Protocol):
    def on_modify(self, path: str) -> None: ...

    def on_delete(self, path: str) -> None: ...

    def on_rename(self, old_path: str, new_path: str) -> None: ...


@runtime_checkable
class DocumentSource(Protocol):
    def list_documents(self) -> list[DocumentStat]: ...

    def exists(self, path: str) -> bool: ...

    def read(self, path: str) -> str: ...

    def stat(self, path: str) -> DocumentStat | None: ...

    def title(self, path: str) -> str: ...

    def resolved_links(self, path: str, content: str | None = None) -> list[Link]: ...

    def alias_map(self) -> dict[str, str]: ...

    def subscribe(self, listener: ChangeListener) -> None: ...
