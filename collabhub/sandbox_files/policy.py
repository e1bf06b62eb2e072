from __future__ import annotations

import posixpath
from dataclasses import dataclass

from collabhub.errors import PathInvalid

DENY_WRITE_PATHS: set[str] = set()
DENY_WRITE_PREFIXES = ("/node_modules/", "/.git/")

# Never mirrored in either direction: tool caches, VCS internals, editor swap files.
IGNORED_DIR_NAMES = frozenset({".git", "node_modules", ".tmp", ".temp", "__pycache__"})
IGNORED_SUFFIXES = ("~", ".tmp", ".temp", ".swp", ".pyc")
IGNORED_PATHS = frozenset({"/.bash_history"})

_FORBIDDEN_CHARS = ("\x00", "\\")


@dataclass(frozen=True)
class Policy:
    deny_write_paths: set[str]
    deny_write_prefixes: tuple[str, ...]


DEFAULT_POLICY = Policy(
    deny_write_paths=set(DENY_WRITE_PATHS),
    deny_write_prefixes=DENY_WRITE_PREFIXES,
)


def normalize_public_path(path: str) -> str:
    """Normalize a public (sandbox-rooted) POSIX path like '/src/app.py'.

    Case is preserved. Traversal segments are rejected rather than collapsed.
    """
    raw = (path or "").strip()
    if not raw:
        raise PathInvalid("empty path")
    if any(c in raw for c in _FORBIDDEN_CHARS):
        raise PathInvalid("invalid path")

    # Allow callers to pass paths like "src/app.py".
    if not raw.startswith("/"):
        raw = "/" + raw

    # normpath collapses "..", so reject any original traversal segment first.
    if ".." in raw.split("/"):
        raise PathInvalid("path traversal not allowed")

    norm = posixpath.normpath(raw)
    if norm.startswith("//"):
        norm = "/" + norm.lstrip("/")
    if not norm.startswith("/") or norm == ".":
        raise PathInvalid("invalid path")
    return norm


def relative_path(path: str) -> str:
    """'/src/app.py' -> 'src/app.py' ('/' -> '.')."""
    rel = normalize_public_path(path).lstrip("/")
    return rel or "."


def split_segments(path: str) -> list[str]:
    p = normalize_public_path(path)
    return [s for s in p.split("/") if s]


def parent_path(path: str) -> str:
    p = normalize_public_path(path)
    return posixpath.dirname(p) or "/"


def base_name(path: str) -> str:
    p = normalize_public_path(path)
    return posixpath.basename(p)


def join_path(parent: str, name: str) -> str:
    if not name or "/" in name:
        raise PathInvalid(f"invalid entry name: {name!r}")
    return normalize_public_path(posixpath.join(parent or "/", name))


def is_within(path: str, ancestor: str) -> bool:
    """True when `path` equals `ancestor` or lives below it."""
    if ancestor == "/":
        return True
    return path == ancestor or path.startswith(ancestor.rstrip("/") + "/")


def is_ignored_path(path: str) -> bool:
    if path in IGNORED_PATHS:
        return True
    parts = [s for s in path.split("/") if s]
    if any(part in IGNORED_DIR_NAMES for part in parts):
        return True
    return bool(parts) and parts[-1].endswith(IGNORED_SUFFIXES)


def is_denied_path(path: str, *, policy: Policy = DEFAULT_POLICY) -> bool:
    if path in policy.deny_write_paths:
        return True
    normalized = path.rstrip("/") + "/" if path != "/" else "/"
    return any(normalized.startswith(p) for p in policy.deny_write_prefixes)


def require_mutation_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    p = normalize_public_path(path)
    if p == "/":
        raise PermissionError("refusing to modify root")
    if is_denied_path(p, policy=policy):
        raise PermissionError(f"writes not allowed for '{p}'")
    return p


def require_read_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    # Reads are allowed broadly; keep traversal/root validation consistent.
    _ = policy
    return normalize_public_path(path)
