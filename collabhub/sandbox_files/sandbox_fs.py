from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from collabhub.config import sandbox_request_timeout_s, sync_max_text_bytes
from collabhub.errors import SandboxUnavailable, SyncConflict
from collabhub.sandbox_backends.base import ManifestEntry, SandboxBackend
from collabhub.sandbox_files.echo import EchoSuppressor
from collabhub.sandbox_files.policy import (
    DEFAULT_POLICY,
    base_name,
    require_mutation_allowed,
    require_read_allowed,
)
from collabhub.sandboxes.retry import NON_RETRYABLE, RetryPolicy, retry_async

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadResult:
    path: str
    content: str | None
    sha256: str
    is_binary: bool
    size: int


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes((text or "").encode("utf-8"))


def _looks_binary(data: bytes) -> bool:
    if b"\x00" in data:
        return True
    try:
        data.decode("utf-8")
        return False
    except UnicodeDecodeError:
        return True


class SandboxFs:
    """Async filesystem bridge into one sandbox.

    Backend calls run in worker threads with a per-call timeout and are retried
    by the sandbox's RetryPolicy. Writes made here are tagged in the echo
    suppressor so the change watcher does not report them back as shell edits.
    """

    def __init__(
        self,
        backend: SandboxBackend,
        *,
        project_id: str,
        sandbox_id: str,
        echo: EchoSuppressor,
        retry: RetryPolicy | None = None,
        timeout_s: float | None = None,
        on_unavailable: Callable[[str], Any] | None = None,
    ) -> None:
        self._backend = backend
        self.project_id = project_id
        self.sandbox_id = sandbox_id
        self.echo = echo
        self._retry = retry or RetryPolicy.from_env()
        self._timeout_s = float(timeout_s or sandbox_request_timeout_s())
        self._on_unavailable = on_unavailable

    async def _call(self, label: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        async def _once() -> Any:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, sandbox_id=self.sandbox_id, **kwargs),
                timeout=self._timeout_s,
            )

        try:
            return await retry_async(
                _once, policy=self._retry, label=f"{label} [{self.sandbox_id}]"
            )
        except NON_RETRYABLE:
            raise
        except Exception as exc:
            logger.warning(
                "sandbox %s unavailable during %s: %s", self.sandbox_id, label, exc
            )
            if self._on_unavailable is not None:
                self._on_unavailable(f"{label}: {exc}")
            raise SandboxUnavailable(self.project_id) from exc

    async def ls(self, path: str) -> list[dict[str, Any]]:
        p = require_read_allowed(path, policy=DEFAULT_POLICY)
        infos: list[ManifestEntry] = await self._call(
            "ls", self._backend.list_dir, path=p
        )
        return [
            {"path": e.path, "name": base_name(e.path), "is_dir": e.kind == "dir"}
            for e in infos
        ]

    async def read(self, path: str) -> ReadResult:
        p = require_read_allowed(path, policy=DEFAULT_POLICY)
        payload: bytes = await self._call("read", self._backend.read_file, path=p)
        sha = sha256_bytes(payload)
        if len(payload) > sync_max_text_bytes() or _looks_binary(payload):
            return ReadResult(
                path=p, content=None, sha256=sha, is_binary=True, size=len(payload)
            )
        return ReadResult(
            path=p,
            content=payload.decode("utf-8"),
            sha256=sha,
            is_binary=False,
            size=len(payload),
        )

    async def _current_sha(self, path: str) -> str | None:
        try:
            cur = await self.read(path)
        except FileNotFoundError:
            return None
        return cur.sha256

    async def write(
        self,
        *,
        path: str,
        content: str,
        expected_sha256: str | None = None,
    ) -> str:
        """Write text content; returns the new sha256.

        Identical content is a no-op. With `expected_sha256` the write only
        happens while the sandbox copy still has that hash.
        """
        p = require_mutation_allowed(path, policy=DEFAULT_POLICY)
        payload = (content or "").encode("utf-8")
        new_sha = sha256_bytes(payload)

        cur_sha = await self._current_sha(p)
        if expected_sha256:
            if cur_sha is None:
                raise FileNotFoundError("file_not_found")
            if cur_sha != expected_sha256:
                raise SyncConflict(p)
        if cur_sha == new_sha:
            return new_sha

        self.echo.tag(p, "file", new_sha)
        await self._call("write", self._backend.write_file, path=p, payload=payload)
        return new_sha

    async def create_file(self, *, path: str, content: str = "") -> str:
        return await self.write(path=path, content=content)

    async def mkdir(self, path: str) -> None:
        p = require_mutation_allowed(path, policy=DEFAULT_POLICY)
        try:
            await self._call("stat", self._backend.list_dir, path=p)
            return
        except FileNotFoundError:
            pass
        self.echo.tag(p, "dir")
        await self._call("mkdir", self._backend.make_dir, path=p)

    async def rename(
        self,
        *,
        src: str,
        dst: str,
        is_dir: bool = False,
        sha256: str | None = None,
    ) -> None:
        s = require_mutation_allowed(src, policy=DEFAULT_POLICY)
        d = require_mutation_allowed(dst, policy=DEFAULT_POLICY)
        if s == d:
            return
        self.echo.tag(s, "delete")
        if is_dir:
            self.echo.tag(d, "dir")
        else:
            self.echo.tag(d, "file", sha256)
        await self._call("rename", self._backend.move, src=s, dst=d)

    async def rm(self, *, path: str, recursive: bool = True) -> None:
        p = require_mutation_allowed(path, policy=DEFAULT_POLICY)
        self.echo.tag(p, "delete")
        await self._call("rm", self._backend.remove, path=p, recursive=recursive)

    async def manifest(self) -> list[ManifestEntry]:
        return await self._call("manifest", self._backend.manifest)
