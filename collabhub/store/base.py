from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol

EntryType = Literal["file", "folder"]


@dataclass(frozen=True)
class FileSystemEntry:
    """Canonical file/folder record.

    `parent_id` None means the project root. `path` is derived from the parent
    chain ('/src/app.py'). `content` is None for binary or oversized files;
    `sha256` is always set for files.
    """

    id: str
    project_id: str
    name: str
    kind: EntryType
    parent_id: str | None
    path: str
    content: str | None = None
    sha256: str | None = None
    updated_at: str = ""

    @property
    def is_folder(self) -> bool:
        return self.kind == "folder"

    def to_dict(self, *, include_content: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "type": self.kind,
            "parent_id": self.parent_id,
            "path": self.path,
            "sha256": self.sha256,
            "updated_at": self.updated_at,
        }
        if include_content:
            out["content"] = self.content
        return out


class CanonicalStore(Protocol):
    """Persistence for canonical file records.

    Synchronous; the engine calls it from worker threads. Implementations
    keep exactly one entry per (project, path): `create_entry` raises
    EntryExists when the path is taken, and `move_entry` likewise for the
    destination.
    """

    def get_entry_by_path(self, project_id: str, path: str) -> FileSystemEntry | None: ...

    def get_entry(self, project_id: str, entry_id: str) -> FileSystemEntry | None: ...

    def create_entry(
        self,
        project_id: str,
        *,
        name: str,
        kind: EntryType,
        parent_id: str | None,
        content: str | None = None,
        sha256: str | None = None,
    ) -> FileSystemEntry: ...

    def update_content(
        self,
        project_id: str,
        entry_id: str,
        *,
        content: str | None,
        sha256: str | None = None,
    ) -> FileSystemEntry: ...

    def delete_entry(self, project_id: str, entry_id: str) -> bool: ...

    def list_children(
        self, project_id: str, parent_id: str | None
    ) -> list[FileSystemEntry]: ...

    def move_entry(
        self,
        project_id: str,
        entry_id: str,
        *,
        new_parent_id: str | None,
        new_name: str,
    ) -> FileSystemEntry: ...


def walk_entries(store: CanonicalStore, project_id: str) -> list[FileSystemEntry]:
    """All entries of a project, parents before children."""
    out: list[FileSystemEntry] = []
    stack: list[str | None] = [None]
    while stack:
        parent_id = stack.pop()
        children = sorted(store.list_children(project_id, parent_id), key=lambda e: e.path)
        out.extend(children)
        stack.extend(reversed([c.id for c in children if c.is_folder]))
    return out
