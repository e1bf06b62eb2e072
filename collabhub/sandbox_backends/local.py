"""Process-local sandbox backend.

Each project gets a directory under a base dir; terminals are real shells on a
pseudo-terminal whose working directory is that sandbox directory. Intended
for development and tests; isolation is by directory only.
"""

from __future__ import annotations

import contextlib
import fcntl
import hashlib
import logging
import os
import pty
import shutil
import signal
import struct
import subprocess
import tempfile
import termios
import threading
from pathlib import Path

from collabhub.config import local_sandbox_base_dir
from collabhub.sandbox_backends.base import ManifestEntry, SandboxInfo

logger = logging.getLogger(__name__)

# Never exported: VCS internals and dependency trees can be enormous.
_PRUNE_DIRS = {".git", "node_modules"}


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _sandbox_dir_name(project_id: str) -> str:
    digest = hashlib.sha256(project_id.encode("utf-8")).hexdigest()[:12]
    return f"local-{digest}"


class LocalPtyProcess:
    """Shell on a local pseudo-terminal."""

    def __init__(
        self, *, argv: list[str], cwd: str, cols: int, rows: int, env: dict[str, str]
    ) -> None:
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, cols, rows)
            self._proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                close_fds=True,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        self._fd = master_fd
        self._closed = False
        self._lock = threading.Lock()

    @property
    def pid(self) -> int:
        return self._proc.pid

    def read(self, max_bytes: int = 4096) -> bytes:
        try:
            return os.read(self._fd, max_bytes)
        except OSError:
            # EIO once the child side of the pty is gone; EBADF after terminate().
            return b""

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            n = os.write(self._fd, view)
            view = view[n:]

    def resize(self, cols: int, rows: int) -> None:
        _set_winsize(self._fd, cols, rows)

    def is_alive(self) -> bool:
        return self._proc.poll() is None

    def exit_code(self) -> int | None:
        return self._proc.poll()

    def terminate(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        # start_new_session=True makes the shell pid the process group id.
        if self._proc.poll() is None:
            try:
                os.killpg(self._proc.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
            try:
                self._proc.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                with contextlib.suppress(ProcessLookupError):
                    os.killpg(self._proc.pid, signal.SIGKILL)
                with contextlib.suppress(subprocess.TimeoutExpired):
                    self._proc.wait(timeout=1.0)
        with contextlib.suppress(OSError):
            os.close(self._fd)


class LocalSandboxBackend:
    name = "local"

    def __init__(self, base_dir: str | None = None) -> None:
        raw = base_dir or local_sandbox_base_dir()
        if raw:
            self._base = Path(raw).resolve()
            self._base.mkdir(parents=True, exist_ok=True)
        else:
            self._base = Path(tempfile.mkdtemp(prefix="collabhub-sandboxes-")).resolve()
        # (sandbox_id, path) -> (size, mtime_ns, sha256); avoids rehashing unchanged files.
        self._hash_cache: dict[tuple[str, str], tuple[int, int, str]] = {}
        self._cache_lock = threading.Lock()

    @property
    def base_dir(self) -> Path:
        return self._base

    def _root(self, sandbox_id: str) -> Path:
        root = (self._base / sandbox_id).resolve()
        if root.parent != self._base:
            raise ValueError(f"invalid sandbox id: {sandbox_id}")
        return root

    def _safe_path(self, sandbox_id: str, path: str) -> Path:
        root = self._root(sandbox_id)
        rel = (path or "").strip().lstrip("/")
        if not rel or rel == ".":
            return root
        full = (root / rel).resolve()
        # Prevent escape from the sandbox root (including via symlinks).
        if root not in full.parents and full != root:
            raise PermissionError("path escapes sandbox root")
        return full

    def _public(self, root: Path, full: Path) -> str:
        return "/" + full.relative_to(root).as_posix()

    # ---- lifecycle

    def create_sandbox(self, *, project_id: str) -> SandboxInfo:
        sandbox_id = _sandbox_dir_name(project_id)
        root = self._root(sandbox_id)
        exists = root.is_dir()
        root.mkdir(parents=True, exist_ok=True)
        logger.info(
            "local sandbox %s for project %s (exists=%s)", sandbox_id, project_id, exists
        )
        return SandboxInfo(sandbox_id=sandbox_id, root_dir=str(root), exists=exists)

    def delete_sandbox(self, *, sandbox_id: str) -> bool:
        root = self._root(sandbox_id)
        with self._cache_lock:
            for key in [k for k in self._hash_cache if k[0] == sandbox_id]:
                del self._hash_cache[key]
        if not root.exists():
            return False
        shutil.rmtree(root)
        return True

    def is_alive(self, *, sandbox_id: str) -> bool:
        return self._root(sandbox_id).is_dir()

    # ---- files

    def read_file(self, *, sandbox_id: str, path: str) -> bytes:
        full = self._safe_path(sandbox_id, path)
        if full.is_dir():
            raise IsADirectoryError(path)
        if not full.is_file():
            raise FileNotFoundError(path)
        return full.read_bytes()

    def write_file(self, *, sandbox_id: str, path: str, payload: bytes) -> None:
        full = self._safe_path(sandbox_id, path)
        if full.is_dir():
            raise IsADirectoryError(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(payload)

    def make_dir(self, *, sandbox_id: str, path: str) -> None:
        full = self._safe_path(sandbox_id, path)
        if full.exists() and not full.is_dir():
            raise FileExistsError(path)
        full.mkdir(parents=True, exist_ok=True)

    def remove(self, *, sandbox_id: str, path: str, recursive: bool) -> None:
        full = self._safe_path(sandbox_id, path)
        if full == self._root(sandbox_id):
            raise PermissionError("refusing to delete sandbox root")
        if full.is_symlink() or full.is_file():
            full.unlink()
        elif full.is_dir():
            if recursive:
                shutil.rmtree(full)
            else:
                full.rmdir()

    def move(self, *, sandbox_id: str, src: str, dst: str) -> None:
        s = self._safe_path(sandbox_id, src)
        d = self._safe_path(sandbox_id, dst)
        if not s.exists():
            raise FileNotFoundError(src)
        d.parent.mkdir(parents=True, exist_ok=True)
        os.replace(s, d)

    def list_dir(self, *, sandbox_id: str, path: str) -> list[ManifestEntry]:
        root = self._root(sandbox_id)
        base = self._safe_path(sandbox_id, path)
        if not base.is_dir():
            raise FileNotFoundError(path)
        out: list[ManifestEntry] = []
        for child in sorted(base.iterdir()):
            entry = self._entry(sandbox_id, root, child, with_hash=False)
            if entry is not None:
                out.append(entry)
        return out

    def manifest(self, *, sandbox_id: str) -> list[ManifestEntry]:
        root = self._root(sandbox_id)
        if not root.is_dir():
            raise FileNotFoundError(f"sandbox {sandbox_id} is gone")
        out: list[ManifestEntry] = []
        for dirpath, dirs, files in os.walk(root, followlinks=False):
            dirs[:] = [d for d in dirs if d not in _PRUNE_DIRS]
            here = Path(dirpath)
            for name in dirs + files:
                entry = self._entry(sandbox_id, root, here / name, with_hash=True)
                if entry is not None:
                    out.append(entry)
        out.sort(key=lambda e: e.path)
        return out

    def _entry(
        self, sandbox_id: str, root: Path, full: Path, *, with_hash: bool
    ) -> ManifestEntry | None:
        try:
            st = full.lstat()
        except FileNotFoundError:
            # Removed between listing and stat.
            return None
        public = self._public(root, full)
        if full.is_symlink():
            return None
        if full.is_dir():
            return ManifestEntry(
                path=public, kind="dir", size=None, mtime_ns=int(st.st_mtime_ns)
            )
        if not full.is_file():
            return None
        sha = None
        if with_hash:
            sha = self._file_hash(sandbox_id, public, full, st.st_size, st.st_mtime_ns)
            if sha is None:
                return None
        return ManifestEntry(
            path=public,
            kind="file",
            size=int(st.st_size),
            mtime_ns=int(st.st_mtime_ns),
            sha256=sha,
        )

    def _file_hash(
        self, sandbox_id: str, public: str, full: Path, size: int, mtime_ns: int
    ) -> str | None:
        key = (sandbox_id, public)
        with self._cache_lock:
            cached = self._hash_cache.get(key)
        if cached and cached[0] == size and cached[1] == mtime_ns:
            return cached[2]
        try:
            sha = _sha256_file(full)
        except FileNotFoundError:
            return None
        with self._cache_lock:
            self._hash_cache[key] = (size, mtime_ns, sha)
        return sha

    # ---- terminals

    def spawn_terminal(
        self, *, sandbox_id: str, cols: int, rows: int, shell: str
    ) -> LocalPtyProcess:
        root = self._root(sandbox_id)
        if not root.is_dir():
            raise FileNotFoundError(f"sandbox {sandbox_id} is gone")
        exe = shutil.which(shell) or shutil.which("sh")
        if exe is None:
            raise FileNotFoundError(f"no shell available (wanted {shell})")
        env = os.environ.copy()
        env.update({"TERM": "xterm-256color", "PWD": str(root), "HOME": str(root)})
        logger.debug("spawning %s in %s (%sx%s)", exe, root, cols, rows)
        return LocalPtyProcess(argv=[exe], cwd=str(root), cols=cols, rows=rows, env=env)
