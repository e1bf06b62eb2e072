from __future__ import annotations

import asyncio
import base64
import importlib.util
import sys
from pathlib import Path

import pytest

pytest.importorskip("fastapi")
from fastapi import HTTPException
from fastapi.responses import Response


def _load_runtime_module(root: Path):
    repo_root = Path(__file__).resolve().parents[1]
    runtime_path = repo_root / "k8s/images/collabhub-sandbox/runtime.py"
    spec = importlib.util.spec_from_file_location("collabhub_sandbox_runtime", runtime_path)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    module.ROOT = root.resolve()
    return module


@pytest.fixture
def runtime(tmp_path: Path):
    return _load_runtime_module(tmp_path)


def _write(runtime, path: str, payload: bytes) -> dict:
    req = runtime.WriteB64Request(path=path, content_b64=base64.b64encode(payload).decode("ascii"))
    return asyncio.run(runtime.write_b64(req))


def test_healthz_reports_missing_root(runtime, tmp_path: Path):
    response = Response()
    payload = asyncio.run(runtime.healthz(response))
    assert payload["status"] == "ok"

    runtime.ROOT = (tmp_path / "gone").resolve()
    response = Response()
    payload = asyncio.run(runtime.healthz(response))
    assert response.status_code == 503
    assert payload["status"] == "degraded"


def test_write_then_download(runtime, tmp_path: Path):
    assert _write(runtime, "/src/app.py", b"print(1)\n")["ok"] is True
    assert (tmp_path / "src" / "app.py").read_bytes() == b"print(1)\n"

    resp = asyncio.run(runtime.download("src/app.py"))
    assert resp.body == b"print(1)\n"

    with pytest.raises(HTTPException) as exc:
        asyncio.run(runtime.download("src"))
    assert exc.value.status_code == 409
    with pytest.raises(HTTPException) as exc:
        asyncio.run(runtime.download("missing.txt"))
    assert exc.value.status_code == 404


def test_bad_requests_are_rejected(runtime):
    with pytest.raises(HTTPException) as exc:
        asyncio.run(runtime.write_b64(runtime.WriteB64Request(path="a.txt", content_b64="@@")))
    assert exc.value.status_code == 400

    with pytest.raises(HTTPException) as exc:
        _write(runtime, "../outside.txt", b"x")
    assert exc.value.status_code == 400

    with pytest.raises(HTTPException) as exc:
        asyncio.run(runtime.rm(runtime.RemoveRequest(path="/")))
    assert exc.value.status_code == 400


def test_mkdir_rm_and_rename(runtime, tmp_path: Path):
    _write(runtime, "file.txt", b"")
    with pytest.raises(HTTPException) as exc:
        asyncio.run(runtime.mkdir(runtime.PathRequest(path="file.txt")))
    assert exc.value.status_code == 409

    asyncio.run(runtime.mkdir(runtime.PathRequest(path="docs/api")))
    assert (tmp_path / "docs" / "api").is_dir()

    out = asyncio.run(runtime.rename(runtime.RenameRequest(src="file.txt", dst="docs/file.txt")))
    assert out["ok"] is True
    assert (tmp_path / "docs" / "file.txt").exists()

    with pytest.raises(HTTPException) as exc:
        asyncio.run(runtime.rename(runtime.RenameRequest(src="nope", dst="x")))
    assert exc.value.status_code == 404

    assert asyncio.run(runtime.rm(runtime.RemoveRequest(path="docs")))["existed"] is True
    assert asyncio.run(runtime.rm(runtime.RemoveRequest(path="docs")))["existed"] is False


def test_manifest_and_list(runtime, tmp_path: Path):
    _write(runtime, "src/a.py", b"a")
    (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "pkg" / "index.js").write_text("x")

    entries = asyncio.run(runtime.manifest(dir=".", hash=1))["entries"]
    assert [(e["path"], e["kind"]) for e in entries] == [
        ("src", "dir"),
        ("src/a.py", "file"),
    ]
    by_path = {e["path"]: e for e in entries}
    assert by_path["src/a.py"]["size"] == 1
    assert by_path["src/a.py"]["sha256"] is not None
    assert by_path["src"]["sha256"] is None

    unhashed = asyncio.run(runtime.manifest(dir=".", hash=0))["entries"]
    assert all(e["sha256"] is None for e in unhashed)

    listing = asyncio.run(runtime.list_dir(dir="src"))["entries"]
    assert [e["path"] for e in listing] == ["src/a.py"]
