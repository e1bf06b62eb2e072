from __future__ import annotations

import pytest

from collabhub.errors import PathInvalid
from collabhub.sandbox_files.policy import (
    base_name,
    is_ignored_path,
    is_within,
    join_path,
    normalize_public_path,
    parent_path,
    relative_path,
    require_mutation_allowed,
)


def test_normalize_public_path_accepts_relative() -> None:
    assert normalize_public_path("src/App.tsx") == "/src/App.tsx"


def test_normalize_public_path_preserves_case() -> None:
    assert normalize_public_path("/Hello/World.PY") == "/Hello/World.PY"


def test_normalize_public_path_collapses_slashes() -> None:
    assert normalize_public_path("//a///b/") == "/a/b"


def test_normalize_public_path_rejects_empty() -> None:
    with pytest.raises(ValueError):
        normalize_public_path("")


def test_normalize_public_path_rejects_traversal() -> None:
    with pytest.raises(PathInvalid):
        normalize_public_path("/src/../secrets.txt")


@pytest.mark.parametrize("bad", ["a\\b", "a\x00b"])
def test_normalize_public_path_rejects_forbidden_chars(bad: str) -> None:
    with pytest.raises(PathInvalid):
        normalize_public_path(bad)


def test_require_mutation_denies_root() -> None:
    with pytest.raises(PermissionError):
        require_mutation_allowed("/")


def test_require_mutation_denies_node_modules() -> None:
    with pytest.raises(PermissionError):
        require_mutation_allowed("/node_modules/x.js")


def test_require_mutation_denies_git_dir() -> None:
    with pytest.raises(PermissionError):
        require_mutation_allowed("/.git")


def test_path_helpers() -> None:
    assert parent_path("/a/b/c.txt") == "/a/b"
    assert parent_path("/c.txt") == "/"
    assert base_name("/a/b/c.txt") == "c.txt"
    assert join_path("/a", "b.txt") == "/a/b.txt"
    assert relative_path("/") == "."
    with pytest.raises(PathInvalid):
        join_path("/a", "x/y")


def test_is_within() -> None:
    assert is_within("/a/b", "/a")
    assert is_within("/a", "/a")
    assert not is_within("/ab", "/a")
    assert is_within("/anything", "/")


@pytest.mark.parametrize(
    "path",
    [
        "/.git/HEAD",
        "/node_modules/react/index.js",
        "/pkg/__pycache__/m.cpython-312.pyc",
        "/notes.txt~",
        "/.main.py.swp",
        "/build.tmp",
        "/.bash_history",
    ],
)
def test_ignored_paths(path: str) -> None:
    assert is_ignored_path(path)


@pytest.mark.parametrize("path", ["/Hello/hello.py", "/src/tmp/app.js", "/gitignore"])
def test_regular_paths_not_ignored(path: str) -> None:
    assert not is_ignored_path(path)
