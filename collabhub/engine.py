"""Workspace engine facade.

Wires the sandbox registry, reconciler, change watcher, terminal sessions and
presence together and exposes the operations the transport layer calls.

    engine = WorkspaceEngine()
    await engine.start()
    status = await engine.request_sandbox("p1")
    session = await engine.open_terminal("p1", tab_id="1", user_id="u1", connection_id=cid)
    await engine.save_file("p1", "/main.py", "print('hi')\n", user_id="u1")
    result = await engine.force_sync("p1")
    await engine.close()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any

from collabhub.access import AccessPolicy, AllowAllAccess
from collabhub.broadcast import EventBroadcaster, project_room
from collabhub.config import maintenance_interval_s
from collabhub.errors import SandboxUnavailable, TerminalNotFound
from collabhub.messages import MessageType
from collabhub.presence.coordinator import PresenceCoordinator
from collabhub.presence.locks import FileLock, LockCoordinator
from collabhub.sandbox_backends.base import SandboxBackend
from collabhub.sandbox_backends.factory import get_backend
from collabhub.sandbox_files.policy import normalize_public_path
from collabhub.sandbox_files.sandbox_fs import ReadResult
from collabhub.sandboxes.registry import SandboxHandle, SandboxRegistry, SandboxStatus
from collabhub.sandboxes.retry import RetryPolicy
from collabhub.store.base import CanonicalStore
from collabhub.store.memory import InMemoryCanonicalStore
from collabhub.sync.reconciler import EditorResult, SyncReconciler, SyncResult
from collabhub.sync.watcher import PollingChangeWatcher, WatcherStatus
from collabhub.terminals.manager import TerminalSession, TerminalSessionManager

logger = logging.getLogger(__name__)


@dataclass
class ProjectRuntime:
    reconciler: SyncReconciler
    watcher: PollingChangeWatcher


class WorkspaceEngine:
    def __init__(
        self,
        *,
        backend: SandboxBackend | None = None,
        store: CanonicalStore | None = None,
        access: AccessPolicy | None = None,
        broadcaster: EventBroadcaster | None = None,
        registry: SandboxRegistry | None = None,
        terminals: TerminalSessionManager | None = None,
        retry: RetryPolicy | None = None,
        watcher_interval_s: float | None = None,
    ) -> None:
        self.broadcaster = broadcaster or EventBroadcaster()
        self.registry = registry or SandboxRegistry(backend or get_backend(), retry=retry)
        self.store: CanonicalStore = store or InMemoryCanonicalStore()
        self.access: AccessPolicy = access or AllowAllAccess()
        self.terminals = terminals or TerminalSessionManager(self.registry, self.broadcaster)
        self.locks = LockCoordinator(self.broadcaster)
        self.presence = PresenceCoordinator(self.broadcaster, locks=self.locks)
        self._watcher_interval_s = watcher_interval_s

        self._projects: dict[str, ProjectRuntime] = {}
        self._background: set[asyncio.Task] = set()
        self._maintenance: asyncio.Task | None = None

        self.registry.on_ready(self._on_sandbox_ready)
        self.registry.on_stopped(self._on_sandbox_stopped)
        self.registry.on_status_change(self._on_status_change)

    # ---- lifecycle

    async def start(self) -> None:
        if self._maintenance is None:
            self._maintenance = asyncio.create_task(self._maintenance_loop())

    async def close(self) -> None:
        if self._maintenance is not None:
            self._maintenance.cancel()
            try:
                await self._maintenance
            except asyncio.CancelledError:
                pass
            self._maintenance = None
        await self.terminals.close_all()
        await self.registry.close()
        await self.presence.close()
        for task in list(self._background):
            task.cancel()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(maintenance_interval_s())
            try:
                closed = await self.terminals.cleanup_idle()
                if closed:
                    logger.info("closed %d idle terminal session(s)", closed)
            except Exception:
                logger.exception("terminal idle cleanup failed")

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ---- registry hooks

    async def _notify_project(
        self, project_id: str, type: MessageType, data: dict[str, Any]
    ) -> None:
        await self.broadcaster.publish(project_room(project_id), type, data)

    async def _on_sandbox_ready(self, handle: SandboxHandle) -> None:
        pid = handle.project_id
        reconciler = SyncReconciler(
            pid,
            store=self.store,
            fs=handle.fs,
            notify=partial(self._notify_project, pid),
        )
        # Seed before the watcher baseline so seeded files are not reported back.
        await reconciler.seed_sandbox()
        watcher = PollingChangeWatcher(
            handle.fs,
            on_changes=reconciler.handle_changes,
            interval_s=self._watcher_interval_s,
            retry=handle.retry,
            on_degraded=partial(self.registry.mark_degraded, pid),
            on_recovered=partial(self.registry.mark_recovered, pid),
        )
        reconciler.watcher = watcher
        # Registered first so the stop hook cleans up after a failed start.
        self._projects[pid] = ProjectRuntime(reconciler=reconciler, watcher=watcher)
        await reconciler.start()
        await watcher.start()

    async def _on_sandbox_stopped(self, project_id: str) -> None:
        rt = self._projects.pop(project_id, None)
        if rt is not None:
            await rt.watcher.stop()
        await self.terminals.close_project(project_id)
        if rt is not None:
            await rt.reconciler.stop()

    def _on_status_change(self, status: SandboxStatus) -> None:
        self._spawn(
            self._notify_project(
                status.project_id, MessageType.SANDBOX_STATUS, status.to_dict()
            )
        )

    # ---- access

    def check_project_access(self, project_id: str, user_id: str | None) -> None:
        if user_id is not None and not self.access.can_access_project(user_id, project_id):
            raise PermissionError(f"no access to project '{project_id}'")

    async def _check_edit(self, project_id: str, path: str, user_id: str | None) -> None:
        if user_id is None:
            return
        self.check_project_access(project_id, user_id)
        entry = await asyncio.to_thread(
            self.store.get_entry_by_path, project_id, normalize_public_path(path)
        )
        # Entries not created yet are identified by their path.
        file_id = entry.id if entry is not None else normalize_public_path(path)
        if not self.access.can_edit(user_id, file_id):
            raise PermissionError(f"user '{user_id}' may not edit '{path}'")

    # ---- sandboxes

    async def request_sandbox(
        self, project_id: str, *, wait: bool = True, user_id: str | None = None
    ) -> SandboxStatus:
        """Ensure the project has a sandbox.

        wait=True blocks until it is ready (state "ready") or provisioning has
        failed (state "error"). wait=False returns immediately with "ready" or
        "pending" and provisions in the background.
        """
        self.check_project_access(project_id, user_id)
        if wait:
            try:
                await self.registry.acquire(project_id)
            except SandboxUnavailable:
                pass
            return self.registry.status(project_id)

        current = self.registry.status(project_id)
        if current.state in ("ready", "pending"):
            return current
        self._spawn(self._acquire_in_background(project_id))
        return SandboxStatus(project_id=project_id, state="pending")

    async def _acquire_in_background(self, project_id: str) -> None:
        try:
            await self.registry.acquire(project_id)
        except SandboxUnavailable as exc:
            logger.warning("background provisioning for %s failed: %s", project_id, exc)

    def sandbox_status(self, project_id: str) -> SandboxStatus:
        return self.registry.status(project_id)

    async def teardown(self, project_id: str) -> bool:
        return await self.registry.teardown(project_id)

    async def _runtime(self, project_id: str) -> tuple[SandboxHandle, ProjectRuntime]:
        handle = await self.registry.acquire(project_id)
        rt = self._projects.get(project_id)
        if rt is None:
            raise SandboxUnavailable(project_id)
        return handle, rt

    # ---- terminals

    async def open_terminal(
        self,
        project_id: str,
        *,
        tab_id: str,
        user_id: str,
        connection_id: str,
        cols: int | None = None,
        rows: int | None = None,
        since_seq: int | None = None,
    ) -> TerminalSession:
        self.check_project_access(project_id, user_id)
        handle = await self.registry.acquire(project_id)
        return await self.terminals.open(
            handle,
            tab_id=tab_id,
            user_id=user_id,
            connection_id=connection_id,
            cols=cols,
            rows=rows,
            since_seq=since_seq,
        )

    def _check_terminal(self, session_id: str, user_id: str | None) -> None:
        if user_id is None:
            return
        session = self.terminals.get(session_id)
        if session is None:
            raise TerminalNotFound(session_id)
        self.check_project_access(session.project_id, user_id)
        if session.user_id != user_id:
            raise PermissionError(f"terminal '{session_id}' belongs to another user")

    async def send_input(self, session_id: str, data: str, *, user_id: str | None = None) -> None:
        self._check_terminal(session_id, user_id)
        await self.terminals.input(session_id, data)

    async def resize(
        self, session_id: str, cols: int, rows: int, *, user_id: str | None = None
    ) -> TerminalSession:
        self._check_terminal(session_id, user_id)
        return await self.terminals.resize(session_id, cols, rows)

    async def close_terminal(self, session_id: str, *, user_id: str | None = None) -> None:
        self._check_terminal(session_id, user_id)
        await self.terminals.close(session_id)

    # ---- sync

    async def force_sync(self, project_id: str, *, user_id: str | None = None) -> SyncResult:
        self.check_project_access(project_id, user_id)
        _handle, rt = await self._runtime(project_id)
        return await rt.reconciler.force_sync()

    def get_watcher_status(self, project_id: str) -> WatcherStatus:
        rt = self._projects.get(project_id)
        if rt is None:
            return WatcherStatus(is_active=False)
        return rt.watcher.status()

    def set_watcher_interval(self, project_id: str, seconds: float) -> WatcherStatus:
        rt = self._projects.get(project_id)
        if rt is None:
            raise SandboxUnavailable(project_id, "no active sandbox for project")
        rt.watcher.set_interval(seconds)
        return rt.watcher.status()

    # ---- editor operations

    async def list_dir(self, project_id: str, path: str = "/") -> list[dict[str, Any]]:
        handle, _rt = await self._runtime(project_id)
        return await handle.fs.ls(path)

    async def read_file(self, project_id: str, path: str) -> ReadResult:
        handle, _rt = await self._runtime(project_id)
        return await handle.fs.read(path)

    async def create_file(
        self, project_id: str, path: str, content: str = "", *, user_id: str | None = None
    ) -> EditorResult:
        await self._check_edit(project_id, path, user_id)
        _handle, rt = await self._runtime(project_id)
        return await rt.reconciler.create_file(path, content, user_id=user_id)

    async def create_folder(
        self, project_id: str, path: str, *, user_id: str | None = None
    ) -> EditorResult:
        await self._check_edit(project_id, path, user_id)
        _handle, rt = await self._runtime(project_id)
        return await rt.reconciler.create_folder(path, user_id=user_id)

    async def save_file(
        self,
        project_id: str,
        path: str,
        content: str,
        *,
        user_id: str | None = None,
        expected_sha256: str | None = None,
    ) -> EditorResult:
        await self._check_edit(project_id, path, user_id)
        _handle, rt = await self._runtime(project_id)
        return await rt.reconciler.save_file(
            path, content, expected_sha256=expected_sha256, user_id=user_id
        )

    async def rename_entry(
        self, project_id: str, src: str, dst: str, *, user_id: str | None = None
    ) -> EditorResult:
        await self._check_edit(project_id, src, user_id)
        await self._check_edit(project_id, dst, user_id)
        _handle, rt = await self._runtime(project_id)
        return await rt.reconciler.rename(src, dst, user_id=user_id)

    async def delete_entry(
        self, project_id: str, path: str, *, user_id: str | None = None
    ) -> EditorResult:
        await self._check_edit(project_id, path, user_id)
        _handle, rt = await self._runtime(project_id)
        return await rt.reconciler.delete(path, user_id=user_id)

    # ---- locks

    async def lock_file(self, project_id: str, file_id: str, user_id: str) -> FileLock:
        self.check_project_access(project_id, user_id)
        if not self.access.can_edit(user_id, file_id):
            raise PermissionError(f"user '{user_id}' may not edit '{file_id}'")
        return await self.locks.acquire(file_id, user_id, project_id=project_id)

    async def unlock_file(self, file_id: str, user_id: str) -> bool:
        return await self.locks.release(file_id, user_id)
