from __future__ import annotations

import hashlib
import posixpath
import threading
import uuid
from dataclasses import replace
from datetime import UTC, datetime

from collabhub.errors import EntryExists
from collabhub.store.base import EntryType, FileSystemEntry


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class InMemoryCanonicalStore:
    """Thread-safe in-process CanonicalStore.

    Used by the dev server and tests; production deployments plug in their
    own persistence behind the same interface.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        # project_id -> entry_id -> entry
        self._entries: dict[str, dict[str, FileSystemEntry]] = {}
        # (project_id, path) -> entry_id
        self._by_path: dict[tuple[str, str], str] = {}

    def _project(self, project_id: str) -> dict[str, FileSystemEntry]:
        return self._entries.setdefault(project_id, {})

    def _path_for(self, project_id: str, parent_id: str | None, name: str) -> str:
        if parent_id is None:
            return "/" + name
        parent = self._project(project_id).get(parent_id)
        if parent is None:
            raise FileNotFoundError(f"parent not found: {parent_id}")
        if not parent.is_folder:
            raise NotADirectoryError(parent.path)
        return posixpath.join(parent.path, name)

    def get_entry_by_path(self, project_id: str, path: str) -> FileSystemEntry | None:
        with self._lock:
            entry_id = self._by_path.get((project_id, path))
            if entry_id is None:
                return None
            return self._project(project_id).get(entry_id)

    def get_entry(self, project_id: str, entry_id: str) -> FileSystemEntry | None:
        with self._lock:
            return self._project(project_id).get(entry_id)

    def create_entry(
        self,
        project_id: str,
        *,
        name: str,
        kind: EntryType,
        parent_id: str | None,
        content: str | None = None,
        sha256: str | None = None,
    ) -> FileSystemEntry:
        if not name or "/" in name:
            raise ValueError(f"invalid entry name: {name!r}")
        with self._lock:
            path = self._path_for(project_id, parent_id, name)
            if (project_id, path) in self._by_path:
                raise EntryExists(project_id, path)
            if kind == "file" and sha256 is None:
                sha256 = _sha256_text(content or "")
            entry = FileSystemEntry(
                id=str(uuid.uuid4()),
                project_id=project_id,
                name=name,
                kind=kind,
                parent_id=parent_id,
                path=path,
                content=content if kind == "file" else None,
                sha256=sha256 if kind == "file" else None,
                updated_at=_now_iso(),
            )
            self._project(project_id)[entry.id] = entry
            self._by_path[(project_id, path)] = entry.id
            return entry

    def update_content(
        self,
        project_id: str,
        entry_id: str,
        *,
        content: str | None,
        sha256: str | None = None,
    ) -> FileSystemEntry:
        with self._lock:
            cur = self._project(project_id).get(entry_id)
            if cur is None:
                raise FileNotFoundError(entry_id)
            if cur.is_folder:
                raise IsADirectoryError(cur.path)
            if sha256 is None:
                sha256 = _sha256_text(content or "")
            updated = replace(cur, content=content, sha256=sha256, updated_at=_now_iso())
            self._project(project_id)[entry_id] = updated
            return updated

    def delete_entry(self, project_id: str, entry_id: str) -> bool:
        with self._lock:
            entries = self._project(project_id)
            cur = entries.get(entry_id)
            if cur is None:
                return False
            for e in self._subtree(project_id, cur):
                entries.pop(e.id, None)
                self._by_path.pop((project_id, e.path), None)
            return True

    def list_children(
        self, project_id: str, parent_id: str | None
    ) -> list[FileSystemEntry]:
        with self._lock:
            return sorted(
                (e for e in self._project(project_id).values() if e.parent_id == parent_id),
                key=lambda e: e.name,
            )

    def move_entry(
        self,
        project_id: str,
        entry_id: str,
        *,
        new_parent_id: str | None,
        new_name: str,
    ) -> FileSystemEntry:
        if not new_name or "/" in new_name:
            raise ValueError(f"invalid entry name: {new_name!r}")
        with self._lock:
            entries = self._project(project_id)
            cur = entries.get(entry_id)
            if cur is None:
                raise FileNotFoundError(entry_id)
            new_path = self._path_for(project_id, new_parent_id, new_name)
            if new_path == cur.path:
                return cur
            if (project_id, new_path) in self._by_path:
                raise EntryExists(project_id, new_path)
            if cur.is_folder and new_path.startswith(cur.path + "/"):
                raise ValueError("cannot move a folder into itself")

            old_prefix = cur.path
            now = _now_iso()
            for e in self._subtree(project_id, cur):
                self._by_path.pop((project_id, e.path), None)
                moved_path = new_path + e.path[len(old_prefix) :]
                if e.id == cur.id:
                    moved = replace(
                        e,
                        name=new_name,
                        parent_id=new_parent_id,
                        path=moved_path,
                        updated_at=now,
                    )
                else:
                    moved = replace(e, path=moved_path)
                entries[e.id] = moved
                self._by_path[(project_id, moved_path)] = e.id
            return entries[entry_id]

    def _subtree(self, project_id: str, root: FileSystemEntry) -> list[FileSystemEntry]:
        entries = self._project(project_id)
        prefix = root.path + "/"
        return [root] + [e for e in entries.values() if e.path.startswith(prefix)]
