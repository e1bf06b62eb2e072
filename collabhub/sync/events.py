from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class ChangeKind(Enum):
    FILE_CREATED = "file_created"
    FILE_MODIFIED = "file_modified"
    FILE_DELETED = "file_deleted"
    FOLDER_CREATED = "folder_created"
    FOLDER_DELETED = "folder_deleted"


_FOLDER_KINDS = (ChangeKind.FOLDER_CREATED, ChangeKind.FOLDER_DELETED)
_DELETE_KINDS = (ChangeKind.FILE_DELETED, ChangeKind.FOLDER_DELETED)


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    path: str
    sha256: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_folder(self) -> bool:
        return self.kind in _FOLDER_KINDS

    @property
    def is_delete(self) -> bool:
        return self.kind in _DELETE_KINDS

    def echo_key(self) -> tuple[str, str, str | None]:
        """(path, kind, hash) as tagged by the filesystem bridge."""
        if self.is_delete:
            return (self.path, "delete", None)
        if self.kind == ChangeKind.FOLDER_CREATED:
            return (self.path, "dir", None)
        return (self.path, "file", self.sha256)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "path": self.path,
            "sha256": self.sha256,
            "timestamp": self.timestamp,
        }
