"""Two-way reconciliation between a sandbox and the canonical store.

One reconciler per project. Editor operations, watcher batches and forced
syncs are all jobs on a single queue, applied strictly in arrival order by one
worker task; there is no per-file locking.

Editor changes land in the canonical store first and are then mirrored into
the sandbox. A mirror that fails is kept in the pending set and retried by the
next forced sync. Sandbox changes (from the change watcher) are applied to the
canonical store and broadcast to the project.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from collabhub.errors import EntryExists, SyncConflict
from collabhub.messages import MessageType
from collabhub.sandbox_files.policy import (
    base_name,
    is_ignored_path,
    is_within,
    parent_path,
    require_mutation_allowed,
    split_segments,
)
from collabhub.sandbox_files.sandbox_fs import SandboxFs, sha256_text
from collabhub.store.base import CanonicalStore, FileSystemEntry, walk_entries
from collabhub.sync.events import ChangeEvent, ChangeKind
from collabhub.sync.snapshot import snapshot_from_manifest
from collabhub.sync.watcher import ChangeWatcher

logger = logging.getLogger(__name__)

Notify = Callable[[MessageType, dict], Awaitable[None]]


@dataclass(frozen=True)
class SyncResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    retried: int = 0
    duration_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "retried": self.retried,
            "duration_s": round(self.duration_s, 4),
        }


@dataclass(frozen=True)
class EditorResult:
    entry: FileSystemEntry | None
    created: bool = False
    mirrored: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry": self.entry.to_dict() if self.entry else None,
            "created": self.created,
            "mirrored": self.mirrored,
        }


def _depth(path: str) -> int:
    return path.count("/")


class SyncReconciler:
    def __init__(
        self,
        project_id: str,
        *,
        store: CanonicalStore,
        fs: SandboxFs,
        notify: Notify | None = None,
        watcher: ChangeWatcher | None = None,
    ) -> None:
        self.project_id = project_id
        self._store = store
        self._fs = fs
        self._notify = notify
        self.watcher = watcher

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        # Editor paths whose sandbox mirror failed.
        self._pending: set[str] = set()
        # path -> last content hash both sides agreed on.
        self._agreed: dict[str, str] = {}

    # ---- worker

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        # Fail jobs nobody will run.
        while not self._queue.empty():
            _label, _fn, fut = self._queue.get_nowait()
            if fut is not None and not fut.done():
                fut.cancel()
            self._queue.task_done()

    async def _run(self) -> None:
        while True:
            label, fn, fut = await self._queue.get()
            try:
                result = await fn()
            except asyncio.CancelledError:
                if fut is not None and not fut.done():
                    fut.cancel()
                raise
            except Exception as exc:
                logger.exception(
                    "sync job %s failed for project %s; skipping", label, self.project_id
                )
                if fut is not None and not fut.done():
                    fut.set_exception(exc)
            else:
                if fut is not None and not fut.done():
                    fut.set_result(result)
            finally:
                self._queue.task_done()

    async def _submit(self, label: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        fut = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((label, fn, fut))
        return await fut

    async def drain(self) -> None:
        """Wait until every queued job has been applied."""
        await self._queue.join()

    @property
    def pending_paths(self) -> set[str]:
        return set(self._pending)

    # ---- helpers

    async def _call_store(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, self.project_id, *args, **kwargs)

    async def _get(self, path: str) -> FileSystemEntry | None:
        return await self._call_store(self._store.get_entry_by_path, path)

    async def _publish(
        self,
        kind: str,
        entry: FileSystemEntry | None,
        *,
        path: str,
        origin: str,
        **extra: Any,
    ) -> None:
        if self._notify is None:
            return
        data: dict[str, Any] = {
            "project_id": self.project_id,
            "kind": kind,
            "path": path,
            "origin": origin,
            "entry": entry.to_dict(include_content=not entry.is_folder) if entry else None,
        }
        data.update(extra)
        await self._notify(MessageType.FILE_SYSTEM_UPDATE, data)

    def _drop_tracking(self, path: str) -> None:
        for p in [p for p in self._agreed if is_within(p, path)]:
            del self._agreed[p]

    def _remap_tracking(self, src: str, dst: str) -> None:
        for p in [p for p in self._agreed if is_within(p, src)]:
            self._agreed[dst + p[len(src) :]] = self._agreed.pop(p)
        for p in [p for p in self._pending if is_within(p, src)]:
            self._pending.discard(p)
            self._pending.add(dst + p[len(src) :])

    async def _ensure_folder_chain(self, path: str, *, origin: str) -> str | None:
        """Id of the canonical folder at `path`, creating missing ancestors.

        None stands for the project root.
        """
        if path == "/":
            return None
        parent_id: str | None = None
        current = ""
        for seg in split_segments(path):
            current = f"{current}/{seg}"
            entry = await self._get(current)
            if entry is None:
                try:
                    entry = await self._call_store(
                        self._store.create_entry,
                        name=seg,
                        kind="folder",
                        parent_id=parent_id,
                    )
                    if origin == "editor":
                        await self._mirror(current)
                    await self._publish(
                        ChangeKind.FOLDER_CREATED.value, entry, path=current, origin=origin
                    )
                except EntryExists:
                    entry = await self._get(current)
                    if entry is None:
                        raise
            if not entry.is_folder:
                raise NotADirectoryError(current)
            parent_id = entry.id
        return parent_id

    async def _check_folder_chain(self, path: str) -> None:
        """Raise if an existing ancestor of `path` is a file; creates nothing."""
        current = ""
        for seg in split_segments(path):
            current = f"{current}/{seg}"
            entry = await self._get(current)
            if entry is None:
                return
            if not entry.is_folder:
                raise NotADirectoryError(current)

    async def _mirror(self, path: str) -> bool:
        """Make the sandbox match the canonical record at `path`."""
        try:
            entry = await self._get(path)
            if entry is None:
                await self._fs.rm(path=path, recursive=True)
            elif entry.is_folder:
                await self._fs.mkdir(path)
            elif entry.content is not None:
                sha = await self._fs.write(path=path, content=entry.content)
                self._agreed[path] = sha
        except Exception as exc:
            logger.warning(
                "mirror of %s into sandbox %s failed; will retry on next sync: %s",
                path,
                self._fs.sandbox_id,
                exc,
            )
            self._pending.add(path)
            return False
        self._pending.discard(path)
        return True

    # ---- editor -> sandbox

    async def create_file(
        self, path: str, content: str = "", *, user_id: str | None = None
    ) -> EditorResult:
        p = require_mutation_allowed(path)

        async def job() -> EditorResult:
            existing = await self._get(p)
            if existing is not None:
                return EditorResult(existing, created=False)
            parent_id = await self._ensure_folder_chain(parent_path(p), origin="editor")
            try:
                entry = await self._call_store(
                    self._store.create_entry,
                    name=base_name(p),
                    kind="file",
                    parent_id=parent_id,
                    content=content or "",
                )
            except EntryExists:
                return EditorResult(await self._get(p), created=False)
            mirrored = await self._mirror(p)
            await self._publish(
                ChangeKind.FILE_CREATED.value,
                entry,
                path=p,
                origin="editor",
                user_id=user_id,
            )
            return EditorResult(entry, created=True, mirrored=mirrored)

        return await self._submit(f"create_file {p}", job)

    async def create_folder(self, path: str, *, user_id: str | None = None) -> EditorResult:
        p = require_mutation_allowed(path)

        async def job() -> EditorResult:
            existing = await self._get(p)
            if existing is not None:
                return EditorResult(existing, created=False)
            parent_id = await self._ensure_folder_chain(parent_path(p), origin="editor")
            try:
                entry = await self._call_store(
                    self._store.create_entry,
                    name=base_name(p),
                    kind="folder",
                    parent_id=parent_id,
                )
            except EntryExists:
                return EditorResult(await self._get(p), created=False)
            mirrored = await self._mirror(p)
            await self._publish(
                ChangeKind.FOLDER_CREATED.value,
                entry,
                path=p,
                origin="editor",
                user_id=user_id,
            )
            return EditorResult(entry, created=True, mirrored=mirrored)

        return await self._submit(f"create_folder {p}", job)

    async def save_file(
        self,
        path: str,
        content: str,
        *,
        expected_sha256: str | None = None,
        user_id: str | None = None,
    ) -> EditorResult:
        p = require_mutation_allowed(path)
        new_sha = sha256_text(content)

        async def job() -> EditorResult:
            entry = await self._get(p)
            if entry is None:
                if expected_sha256:
                    raise FileNotFoundError(p)
                parent_id = await self._ensure_folder_chain(parent_path(p), origin="editor")
                entry = await self._call_store(
                    self._store.create_entry,
                    name=base_name(p),
                    kind="file",
                    parent_id=parent_id,
                    content=content,
                )
                kind = ChangeKind.FILE_CREATED.value
                created = True
            else:
                if entry.is_folder:
                    raise IsADirectoryError(p)
                if expected_sha256 and entry.sha256 != expected_sha256:
                    raise SyncConflict(p)
                if entry.sha256 == new_sha:
                    return EditorResult(entry, created=False)
                entry = await self._call_store(
                    self._store.update_content, entry.id, content=content, sha256=new_sha
                )
                kind = ChangeKind.FILE_MODIFIED.value
                created = False
            mirrored = await self._mirror(p)
            await self._publish(kind, entry, path=p, origin="editor", user_id=user_id)
            return EditorResult(entry, created=created, mirrored=mirrored)

        return await self._submit(f"save_file {p}", job)

    async def rename(self, src: str, dst: str, *, user_id: str | None = None) -> EditorResult:
        """Rename and/or move an entry (folders move with their subtree)."""
        s = require_mutation_allowed(src)
        d = require_mutation_allowed(dst)

        async def job() -> EditorResult:
            entry = await self._get(s)
            if entry is None:
                raise FileNotFoundError(s)
            if s == d:
                return EditorResult(entry, created=False)
            if await self._get(d) is not None:
                raise EntryExists(self.project_id, d)
            if entry.is_folder and is_within(d, s):
                raise ValueError("cannot move a folder into itself")
            await self._check_folder_chain(parent_path(d))
            parent_id = await self._ensure_folder_chain(parent_path(d), origin="editor")
            moved = await self._call_store(
                self._store.move_entry,
                entry.id,
                new_parent_id=parent_id,
                new_name=base_name(d),
            )
            self._remap_tracking(s, d)

            mirrored = True
            try:
                await self._fs.rename(
                    src=s, dst=d, is_dir=moved.is_folder, sha256=moved.sha256
                )
            except FileNotFoundError:
                # Sandbox never had the source; write the destination from canonical.
                mirrored = await self._mirror_subtree(d)
            except Exception as exc:
                logger.warning("rename %s -> %s not mirrored: %s", s, d, exc)
                self._pending.update({s, d})
                mirrored = False
            await self._publish(
                "entry_renamed", moved, path=d, origin="editor", old_path=s, user_id=user_id
            )
            return EditorResult(moved, created=False, mirrored=mirrored)

        return await self._submit(f"rename {s} -> {d}", job)

    async def _mirror_subtree(self, path: str) -> bool:
        ok = await self._mirror(path)
        entry = await self._get(path)
        if entry is None or not entry.is_folder:
            return ok
        for child in await asyncio.to_thread(walk_entries, self._store, self.project_id):
            if child.path != path and is_within(child.path, path):
                ok = await self._mirror(child.path) and ok
        return ok

    async def delete(self, path: str, *, user_id: str | None = None) -> EditorResult:
        p = require_mutation_allowed(path)

        async def job() -> EditorResult:
            entry = await self._get(p)
            if entry is None:
                return EditorResult(None, created=False)
            await self._call_store(self._store.delete_entry, entry.id)
            self._drop_tracking(p)
            for pending in [x for x in self._pending if is_within(x, p)]:
                self._pending.discard(pending)
            mirrored = await self._mirror(p)
            kind = ChangeKind.FOLDER_DELETED if entry.is_folder else ChangeKind.FILE_DELETED
            await self._publish(kind.value, entry, path=p, origin="editor", user_id=user_id)
            return EditorResult(entry, created=False, mirrored=mirrored)

        return await self._submit(f"delete {p}", job)

    # ---- sandbox -> editor

    async def handle_changes(self, events: list[ChangeEvent]) -> None:
        """Apply a watcher batch (queued behind earlier jobs)."""
        if not events:
            return

        async def job() -> None:
            for ev in events:
                try:
                    await self._apply_event(ev)
                except Exception:
                    logger.exception(
                        "failed to apply %s %s for project %s",
                        ev.kind.value,
                        ev.path,
                        self.project_id,
                    )

        await self._submit(f"changes x{len(events)}", job)

    async def _apply_event(self, ev: ChangeEvent) -> str | None:
        """Apply one sandbox change. Returns "created"/"updated"/"deleted" or None."""
        if is_ignored_path(ev.path):
            return None
        if ev.kind in (ChangeKind.FILE_CREATED, ChangeKind.FILE_MODIFIED):
            return await self._apply_file(ev.path, ev.sha256)
        if ev.kind == ChangeKind.FOLDER_CREATED:
            entry = await self._get(ev.path)
            if entry is not None and not entry.is_folder:
                await self._delete_canonical(entry, origin="sandbox")
            if entry is not None and entry.is_folder:
                return None
            await self._ensure_folder_chain(ev.path, origin="sandbox")
            return "created"
        # deletions
        entry = await self._get(ev.path)
        if entry is None:
            return None
        await self._delete_canonical(entry, origin="sandbox")
        return "deleted"

    async def _delete_canonical(self, entry: FileSystemEntry, *, origin: str) -> None:
        await self._call_store(self._store.delete_entry, entry.id)
        self._drop_tracking(entry.path)
        kind = ChangeKind.FOLDER_DELETED if entry.is_folder else ChangeKind.FILE_DELETED
        await self._publish(kind.value, entry, path=entry.path, origin=origin)

    async def _apply_file(self, path: str, event_sha: str | None) -> str | None:
        entry = await self._get(path)
        if entry is not None and entry.is_folder:
            await self._delete_canonical(entry, origin="sandbox")
            entry = None

        if entry is not None and event_sha and entry.sha256 == event_sha:
            self._agreed[path] = event_sha
            return None

        try:
            res = await self._fs.read(path)
        except (FileNotFoundError, IsADirectoryError):
            # Gone (or replaced) before we got to it; a later scan reports that.
            return None

        if entry is None:
            parent_id = await self._ensure_folder_chain(parent_path(path), origin="sandbox")
            try:
                created = await self._call_store(
                    self._store.create_entry,
                    name=base_name(path),
                    kind="file",
                    parent_id=parent_id,
                    content=res.content,
                    sha256=res.sha256,
                )
            except EntryExists:
                entry = await self._get(path)
                if entry is None:
                    raise
            else:
                self._agreed[path] = res.sha256
                await self._publish(
                    ChangeKind.FILE_CREATED.value, created, path=path, origin="sandbox"
                )
                return "created"

        if entry.sha256 == res.sha256:
            self._agreed[path] = res.sha256
            return None

        agreed = self._agreed.get(path)
        conflict = agreed is not None and entry.sha256 != agreed
        updated = await self._call_store(
            self._store.update_content, entry.id, content=res.content, sha256=res.sha256
        )
        self._agreed[path] = res.sha256
        self._pending.discard(path)
        await self._publish(
            ChangeKind.FILE_MODIFIED.value, updated, path=path, origin="sandbox"
        )
        if conflict and self._notify is not None:
            logger.info(
                "concurrent edit of %s in project %s; sandbox version kept",
                path,
                self.project_id,
            )
            await self._notify(
                MessageType.SYNC_CONFLICT,
                {
                    "project_id": self.project_id,
                    "path": path,
                    "entry_id": updated.id,
                    "winner": "sandbox",
                    "sha256": res.sha256,
                },
            )
        return "updated"

    # ---- forced sync / seeding

    async def force_sync(self) -> SyncResult:
        return await self._submit("force_sync", self._force_sync)

    async def _force_sync(self) -> SyncResult:
        started = time.monotonic()

        retried = 0
        for path in sorted(self._pending, key=_depth):
            if await self._mirror(path):
                retried += 1

        if self.watcher is not None:
            # Advance the watcher baseline; the full diff below covers its events.
            await self.watcher.scan(force=True)

        sandbox = snapshot_from_manifest(await self._fs.manifest())
        canonical = {
            e.path: e
            for e in await asyncio.to_thread(walk_entries, self._store, self.project_id)
        }

        created = updated = deleted = 0
        for path in sorted(sandbox, key=lambda p: (_depth(p), p)):
            snap = sandbox[path]
            entry = canonical.get(path)
            if snap.kind == "dir":
                if entry is not None and entry.is_folder:
                    continue
                outcome = await self._apply_event(
                    ChangeEvent(kind=ChangeKind.FOLDER_CREATED, path=path)
                )
            else:
                if entry is not None and not entry.is_folder and entry.sha256 == snap.sha256:
                    self._agreed[path] = entry.sha256 or ""
                    continue
                outcome = await self._apply_file(path, snap.sha256)
            if outcome == "created":
                created += 1
            elif outcome == "updated":
                updated += 1

        removed: list[str] = []
        for path in sorted(canonical, key=lambda p: (_depth(p), p)):
            entry = canonical[path]
            snap = sandbox.get(path)
            if snap is not None:
                # Present (a kind flip was already replaced above).
                continue
            if is_ignored_path(path) or any(is_within(path, r) for r in removed):
                continue
            if any(is_within(p, path) for p in self._pending):
                continue
            current = await self._get(path)
            if current is None:
                continue
            await self._delete_canonical(current, origin="sandbox")
            removed.append(path)
            deleted += 1

        duration = time.monotonic() - started
        if self.watcher is not None:
            self.watcher.record_sync(duration)
        result = SyncResult(
            created=created,
            updated=updated,
            deleted=deleted,
            retried=retried,
            duration_s=duration,
        )
        logger.info("forced sync for project %s: %s", self.project_id, result.to_dict())
        return result

    async def seed_sandbox(self) -> int:
        """Write the canonical tree into a fresh sandbox. Returns entries written.

        Runs before the watcher baseline is taken, outside the job queue.
        """
        entries = await asyncio.to_thread(walk_entries, self._store, self.project_id)
        sandbox = snapshot_from_manifest(await self._fs.manifest())
        written = 0
        for e in entries:
            if is_ignored_path(e.path):
                continue
            have = sandbox.get(e.path)
            if e.is_folder:
                if have is None or have.kind != "dir":
                    await self._fs.mkdir(e.path)
                    written += 1
                continue
            if e.content is None:
                logger.debug("not seeding binary file %s", e.path)
                continue
            if have is not None and have.kind == "file" and have.sha256 == e.sha256:
                self._agreed[e.path] = e.sha256 or ""
                continue
            self._agreed[e.path] = await self._fs.write(path=e.path, content=e.content)
            written += 1
        logger.info(
            "seeded sandbox %s for project %s with %d entries",
            self._fs.sandbox_id,
            self.project_id,
            written,
        )
        return written
