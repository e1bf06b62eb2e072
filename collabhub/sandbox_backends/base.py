from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol

EntryKind = Literal["file", "dir"]


@dataclass(frozen=True)
class ManifestEntry:
    """One filesystem entry as reported by a sandbox backend.

    `path` is a public path ('/src/app.py'). `sha256` is set for files only.
    """

    path: str
    kind: EntryKind
    size: int | None
    mtime_ns: int
    sha256: str | None = None


@dataclass(frozen=True)
class SandboxInfo:
    sandbox_id: str
    root_dir: str
    exists: bool = False


class TerminalProcess(Protocol):
    """An interactive process attached to a pseudo-terminal inside a sandbox.

    `read` blocks until output is available and returns b"" at EOF. It is only
    ever called from a dedicated reader thread.
    """

    def read(self, max_bytes: int = 4096) -> bytes: ...

    def write(self, data: bytes) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def is_alive(self) -> bool: ...

    def exit_code(self) -> int | None: ...

    def terminate(self) -> None: ...


class SandboxBackend(Protocol):
    """Abstract sandbox backend.

    All methods are blocking and are called from worker threads. Paths are
    public sandbox paths rooted at "/" (the sandbox working directory).

    - read_file raises FileNotFoundError for missing files and
      IsADirectoryError for directories.
    - write_file creates missing parent directories.
    - remove of a missing path is not an error.
    """

    name: str

    def create_sandbox(self, *, project_id: str) -> SandboxInfo: ...

    def delete_sandbox(self, *, sandbox_id: str) -> bool: ...

    def is_alive(self, *, sandbox_id: str) -> bool: ...

    def read_file(self, *, sandbox_id: str, path: str) -> bytes: ...

    def write_file(self, *, sandbox_id: str, path: str, payload: bytes) -> None: ...

    def make_dir(self, *, sandbox_id: str, path: str) -> None: ...

    def remove(self, *, sandbox_id: str, path: str, recursive: bool) -> None: ...

    def move(self, *, sandbox_id: str, src: str, dst: str) -> None: ...

    def list_dir(self, *, sandbox_id: str, path: str) -> list[ManifestEntry]: ...

    def manifest(self, *, sandbox_id: str) -> list[ManifestEntry]: ...

    def spawn_terminal(
        self, *, sandbox_id: str, cols: int, rows: int, shell: str
    ) -> TerminalProcess: ...
