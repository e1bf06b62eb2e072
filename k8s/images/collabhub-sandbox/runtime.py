from __future__ import annotations

import asyncio
import base64
import hashlib
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel


ROOT = Path(os.environ.get("SANDBOX_ROOT_DIR") or "/workspace").resolve()

app = FastAPI(title="Collabhub Sandbox Runtime", version="1.0.0")

# Never exported, and node_modules can be enormous.
PRUNE_DIRS = {".git", "node_modules"}


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except Exception:
        return int(default)


def _hash_max_bytes() -> int:
    # Files larger than this are reported without a content hash.
    return max(1024, _env_int("SANDBOX_MANIFEST_HASH_MAX_BYTES", 8 * 1024 * 1024))


class WriteB64Request(BaseModel):
    path: str
    content_b64: str


class PathRequest(BaseModel):
    path: str


class RemoveRequest(BaseModel):
    path: str
    recursive: bool = True


class RenameRequest(BaseModel):
    src: str
    dst: str


@dataclass(frozen=True)
class _Entry:
    path: str
    kind: Literal["file", "dir"]
    size: int | None
    mtime_ns: int
    sha256: str | None


def _safe_path(rel_path: str) -> Path:
    p = (rel_path or "").strip().lstrip("/")
    if not p:
        raise ValueError("empty path")

    full = (ROOT / p).resolve()
    # Prevent escape from the sandbox root.
    if ROOT not in full.parents and full != ROOT:
        raise ValueError(f"path escapes {ROOT}")
    return full


def _resolve_or_400(rel_path: str) -> Path:
    try:
        return _safe_path(rel_path)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _file_sha256(full: Path) -> str:
    h = hashlib.sha256()
    with full.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def _entry_for(full: Path, *, with_hash: bool) -> _Entry | None:
    try:
        st = full.lstat()
    except FileNotFoundError:
        return None
    rel = str(full.relative_to(ROOT))
    if full.is_symlink():
        return None
    if full.is_dir():
        return _Entry(path=rel, kind="dir", size=None, mtime_ns=int(st.st_mtime_ns), sha256=None)
    if not full.is_file():
        return None
    sha = None
    if with_hash and st.st_size <= _hash_max_bytes():
        try:
            sha = _file_sha256(full)
        except OSError:
            sha = None
    return _Entry(
        path=rel, kind="file", size=int(st.st_size), mtime_ns=int(st.st_mtime_ns), sha256=sha
    )


def _walk_manifest(base: Path, *, with_hash: bool) -> list[_Entry]:
    out: list[_Entry] = []
    for root, dirs, files in os.walk(base, followlinks=False):
        dirs[:] = [d for d in dirs if d not in PRUNE_DIRS]
        here = Path(root)
        for name in dirs + files:
            entry = _entry_for(here / name, with_hash=with_hash)
            if entry is not None:
                out.append(entry)
    out.sort(key=lambda e: e.path)
    return out


def _entries_payload(entries: list[_Entry]) -> dict:
    return {
        "entries": [
            {
                "path": e.path,
                "kind": e.kind,
                "size": e.size,
                "mtime_ns": e.mtime_ns,
                "sha256": e.sha256,
            }
            for e in entries
        ]
    }


@app.get("/healthz")
async def healthz(response: Response) -> dict:
    if not ROOT.is_dir():
        response.status_code = 503
        return {"status": "degraded", "root": str(ROOT)}
    return {"status": "ok", "root": str(ROOT)}


@app.get("/download/{file_path:path}")
async def download(file_path: str):
    full = _resolve_or_400(file_path)
    if full.is_dir():
        raise HTTPException(status_code=409, detail="is a directory")
    if not full.is_file():
        raise HTTPException(status_code=404, detail="file not found")

    payload = await asyncio.to_thread(full.read_bytes)
    return Response(content=payload, media_type="application/octet-stream")


@app.post("/write_b64")
async def write_b64(req: WriteB64Request) -> dict:
    full = _resolve_or_400(req.path)
    if full == ROOT:
        raise HTTPException(status_code=400, detail="cannot write the root")

    try:
        payload = base64.b64decode(req.content_b64.encode("ascii"), validate=True)
    except Exception:
        raise HTTPException(status_code=400, detail="invalid base64")

    if full.is_dir():
        raise HTTPException(status_code=409, detail="is a directory")

    def _write_sync() -> None:
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(payload)

    await asyncio.to_thread(_write_sync)
    return {"ok": True, "path": str(req.path)}


@app.post("/mkdir")
async def mkdir(req: PathRequest) -> dict:
    full = _resolve_or_400(req.path)
    if full.exists() and not full.is_dir():
        raise HTTPException(status_code=409, detail="a file is in the way")

    def _mkdir_sync() -> None:
        full.mkdir(parents=True, exist_ok=True)

    try:
        await asyncio.to_thread(_mkdir_sync)
    except FileExistsError:
        # A parent component is a regular file.
        raise HTTPException(status_code=409, detail="a file is in the way")
    return {"ok": True, "path": str(req.path)}


@app.post("/rm")
async def rm(req: RemoveRequest) -> dict:
    full = _resolve_or_400(req.path)
    if full == ROOT:
        raise HTTPException(status_code=400, detail="refusing to delete the root")

    def _rm_sync() -> bool:
        if full.is_symlink() or full.is_file():
            full.unlink()
            return True
        if full.is_dir():
            if req.recursive:
                shutil.rmtree(full)
            else:
                full.rmdir()
            return True
        return False

    try:
        existed = await asyncio.to_thread(_rm_sync)
    except OSError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True, "path": str(req.path), "existed": existed}


@app.post("/rename")
async def rename(req: RenameRequest) -> dict:
    src = _resolve_or_400(req.src)
    dst = _resolve_or_400(req.dst)
    if src == ROOT or dst == ROOT:
        raise HTTPException(status_code=400, detail="cannot move the root")
    if not src.exists():
        raise HTTPException(status_code=404, detail="source not found")

    def _rename_sync() -> None:
        dst.parent.mkdir(parents=True, exist_ok=True)
        os.replace(src, dst)

    try:
        await asyncio.to_thread(_rename_sync)
    except OSError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True, "src": req.src, "dst": req.dst}


@app.get("/list")
async def list_dir(dir: str = ".") -> dict:
    base = _resolve_or_400(dir or ".")
    if not base.is_dir():
        raise HTTPException(status_code=404, detail="dir not found")

    def _list_sync() -> list[_Entry]:
        out: list[_Entry] = []
        for child in sorted(base.iterdir()):
            entry = _entry_for(child, with_hash=False)
            if entry is not None:
                out.append(entry)
        return out

    return _entries_payload(await asyncio.to_thread(_list_sync))


@app.get("/manifest")
async def manifest(dir: str = ".", hash: int = 0) -> dict:
    base = _resolve_or_400(dir or ".")
    if not base.is_dir():
        raise HTTPException(status_code=404, detail="dir not found")

    entries = await asyncio.to_thread(_walk_manifest, base, with_hash=bool(hash))
    return _entries_payload(entries)
