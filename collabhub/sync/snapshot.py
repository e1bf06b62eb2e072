from __future__ import annotations

import posixpath
from collections.abc import Iterable
from dataclasses import dataclass

from collabhub.sandbox_backends.base import ManifestEntry
from collabhub.sandbox_files.policy import is_ignored_path
from collabhub.sync.events import ChangeEvent, ChangeKind


@dataclass(frozen=True)
class SnapshotEntry:
    kind: str  # "file" | "dir"
    size: int | None
    mtime_ns: int
    sha256: str | None


Snapshot = dict[str, SnapshotEntry]


def snapshot_from_manifest(entries: Iterable[ManifestEntry]) -> Snapshot:
    snap: Snapshot = {}
    for e in entries:
        if e.path == "/" or is_ignored_path(e.path):
            continue
        snap[e.path] = SnapshotEntry(
            kind=e.kind, size=e.size, mtime_ns=e.mtime_ns, sha256=e.sha256
        )
    return snap


def _depth(path: str) -> int:
    return path.count("/")


def _ancestors(path: str) -> Iterable[str]:
    parent = posixpath.dirname(path)
    while parent and parent != "/":
        yield parent
        parent = posixpath.dirname(parent)


def _file_changed(old: SnapshotEntry, new: SnapshotEntry) -> bool:
    if old.sha256 and new.sha256:
        return old.sha256 != new.sha256
    # No hash on one side: fall back to size/mtime.
    return (old.size, old.mtime_ns) != (new.size, new.mtime_ns)


def diff_snapshots(old: Snapshot, new: Snapshot) -> list[ChangeEvent]:
    """Change events turning `old` into `new`.

    Order: type-flip deletions, folder creations (shallow first), file
    creations and modifications, file deletions, folder deletions (deep
    first). Deletions under a deleted folder collapse into the folder's event.
    """
    deleted_dirs = {
        p
        for p, e in old.items()
        if e.kind == "dir" and (p not in new or new[p].kind != "dir")
    }

    def _under_deleted_dir(path: str) -> bool:
        return any(a in deleted_dirs for a in _ancestors(path))

    flips: list[ChangeEvent] = []
    folder_creates: list[ChangeEvent] = []
    file_changes: list[ChangeEvent] = []
    file_deletes: list[ChangeEvent] = []
    folder_deletes: list[ChangeEvent] = []

    for path, o in old.items():
        n = new.get(path)
        if n is not None and n.kind == o.kind:
            continue
        if _under_deleted_dir(path):
            continue
        kind = ChangeKind.FOLDER_DELETED if o.kind == "dir" else ChangeKind.FILE_DELETED
        event = ChangeEvent(kind=kind, path=path)
        if n is not None:
            flips.append(event)
        elif o.kind == "dir":
            folder_deletes.append(event)
        else:
            file_deletes.append(event)

    for path, n in new.items():
        o = old.get(path)
        if n.kind == "dir":
            if o is None or o.kind != "dir":
                folder_creates.append(ChangeEvent(kind=ChangeKind.FOLDER_CREATED, path=path))
            continue
        if o is None or o.kind != "file":
            file_changes.append(
                ChangeEvent(kind=ChangeKind.FILE_CREATED, path=path, sha256=n.sha256)
            )
        elif _file_changed(o, n):
            file_changes.append(
                ChangeEvent(kind=ChangeKind.FILE_MODIFIED, path=path, sha256=n.sha256)
            )

    flips.sort(key=lambda e: (-_depth(e.path), e.path))
    folder_creates.sort(key=lambda e: (_depth(e.path), e.path))
    file_changes.sort(key=lambda e: e.path)
    file_deletes.sort(key=lambda e: e.path)
    folder_deletes.sort(key=lambda e: (-_depth(e.path), e.path))
    return flips + folder_creates + file_changes + file_deletes + folder_deletes
