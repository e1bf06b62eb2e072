"""Per-project sandbox lifecycle.

The registry owns every Sandbox record. At most one sandbox is active per
project: concurrent `acquire` calls share a single provisioning task, so every
caller gets the same handle (or the same failure).

    registry = SandboxRegistry(get_backend())
    registry.on_ready(seed_and_watch)
    handle = await registry.acquire("project-1")
    registry.attach("project-1", session_id)
    ...
    registry.release("project-1", session_id)   # idle countdown starts at zero
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from collabhub.config import sandbox_idle_timeout_s, sync_echo_window_s
from collabhub.errors import SandboxUnavailable
from collabhub.sandbox_backends.base import SandboxBackend
from collabhub.sandbox_files.echo import EchoSuppressor
from collabhub.sandbox_files.sandbox_fs import SandboxFs
from collabhub.sandboxes.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

SandboxState = Literal["provisioning", "ready", "degraded", "stopped"]
StatusState = Literal["ready", "pending", "error", "stopped"]


@dataclass(frozen=True)
class SandboxHandle:
    project_id: str
    sandbox_id: str
    root_dir: str
    backend: SandboxBackend
    fs: SandboxFs
    echo: EchoSuppressor
    retry: RetryPolicy


@dataclass(frozen=True)
class SandboxStatus:
    project_id: str
    state: StatusState
    sandbox_id: str | None = None
    degraded: bool = False
    sessions: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "state": self.state,
            "sandbox_id": self.sandbox_id,
            "degraded": self.degraded,
            "sessions": self.sessions,
            "error": self.error,
        }


@dataclass
class Sandbox:
    project_id: str
    state: SandboxState
    echo: EchoSuppressor
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    sandbox_id: str | None = None
    root_dir: str | None = None
    sessions: set[str] = field(default_factory=set)
    last_error: str | None = None
    handle: SandboxHandle | None = None
    idle_task: asyncio.Task | None = None


ReadyHook = Callable[[SandboxHandle], Awaitable[None]]
StopHook = Callable[[str], Awaitable[None]]
StatusHook = Callable[[SandboxStatus], None]


class SandboxRegistry:
    def __init__(
        self,
        backend: SandboxBackend,
        *,
        idle_timeout_s: float | None = None,
        retry: RetryPolicy | None = None,
        echo_window_s: float | None = None,
    ) -> None:
        self._backend = backend
        self._idle_timeout_s = (
            float(idle_timeout_s) if idle_timeout_s is not None else sandbox_idle_timeout_s()
        )
        self._retry = retry or RetryPolicy.from_env()
        self._echo_window_s = (
            float(echo_window_s) if echo_window_s is not None else sync_echo_window_s()
        )

        self._sandboxes: dict[str, Sandbox] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._errors: dict[str, str] = {}

        self._ready_hooks: list[ReadyHook] = []
        self._stop_hooks: list[StopHook] = []
        self._status_hooks: list[StatusHook] = []

    @property
    def backend(self) -> SandboxBackend:
        return self._backend

    # ---- hooks

    def on_ready(self, hook: ReadyHook) -> None:
        self._ready_hooks.append(hook)

    def on_stopped(self, hook: StopHook) -> None:
        self._stop_hooks.append(hook)

    def on_status_change(self, hook: StatusHook) -> None:
        self._status_hooks.append(hook)

    def _notify_status(self, project_id: str) -> None:
        st = self.status(project_id)
        for hook in list(self._status_hooks):
            try:
                hook(st)
            except Exception:
                logger.exception("sandbox status hook failed for %s", project_id)

    # ---- lookups

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def get(self, project_id: str) -> SandboxHandle | None:
        """Handle of an already-provisioned sandbox, without provisioning."""
        sb = self._sandboxes.get(project_id)
        if sb is None or sb.state not in ("ready", "degraded"):
            return None
        return sb.handle

    def list_projects(self) -> list[str]:
        return list(self._sandboxes.keys())

    def status(self, project_id: str) -> SandboxStatus:
        sb = self._sandboxes.get(project_id)
        if sb is None:
            err = self._errors.get(project_id)
            if err is not None:
                return SandboxStatus(project_id=project_id, state="error", error=err)
            return SandboxStatus(project_id=project_id, state="stopped")
        if sb.state == "provisioning":
            return SandboxStatus(project_id=project_id, state="pending")
        return SandboxStatus(
            project_id=project_id,
            state="ready" if sb.state in ("ready", "degraded") else "stopped",
            sandbox_id=sb.sandbox_id,
            degraded=sb.state == "degraded",
            sessions=len(sb.sessions),
            error=sb.last_error,
        )

    # ---- acquire / provision

    async def acquire(
        self, project_id: str, retry: RetryPolicy | None = None
    ) -> SandboxHandle:
        """Return the project's sandbox, provisioning it when needed.

        Raises SandboxUnavailable when provisioning fails; every concurrent
        caller sees the same outcome.
        """
        task = self._inflight.get(project_id)
        if task is None:
            task = asyncio.create_task(self._acquire(project_id, retry or self._retry))
            self._inflight[project_id] = task

            def _done(t: asyncio.Task, pid: str = project_id) -> None:
                if self._inflight.get(pid) is t:
                    self._inflight.pop(pid, None)

            task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _acquire(self, project_id: str, policy: RetryPolicy) -> SandboxHandle:
        async with self._lock_for(project_id):
            sb = self._sandboxes.get(project_id)
            if sb is not None and sb.handle is not None and sb.state in ("ready", "degraded"):
                alive = await asyncio.to_thread(
                    self._backend.is_alive, sandbox_id=sb.handle.sandbox_id
                )
                if alive:
                    sb.last_activity = time.time()
                    return sb.handle
                logger.warning(
                    "sandbox %s for project %s is gone; re-provisioning",
                    sb.sandbox_id,
                    project_id,
                )
                await self._teardown_locked(project_id)
            return await self._provision_locked(project_id, policy)

    async def _provision_locked(
        self, project_id: str, policy: RetryPolicy
    ) -> SandboxHandle:
        sb = Sandbox(
            project_id=project_id,
            state="provisioning",
            echo=EchoSuppressor(window_s=self._echo_window_s),
        )
        self._sandboxes[project_id] = sb
        self._notify_status(project_id)
        logger.info("provisioning sandbox for project %s", project_id)

        async def _create():
            return await asyncio.to_thread(
                self._backend.create_sandbox, project_id=project_id
            )

        try:
            info = await retry_async(
                _create, policy=policy, label=f"provision sandbox for {project_id}"
            )
        except Exception as exc:
            self._sandboxes.pop(project_id, None)
            self._errors[project_id] = str(exc) or exc.__class__.__name__
            self._notify_status(project_id)
            raise SandboxUnavailable(project_id) from exc

        sb.sandbox_id = info.sandbox_id
        sb.root_dir = info.root_dir
        fs = SandboxFs(
            self._backend,
            project_id=project_id,
            sandbox_id=info.sandbox_id,
            echo=sb.echo,
            retry=policy,
            on_unavailable=lambda reason: self.mark_degraded(project_id, reason),
        )
        sb.handle = SandboxHandle(
            project_id=project_id,
            sandbox_id=info.sandbox_id,
            root_dir=info.root_dir,
            backend=self._backend,
            fs=fs,
            echo=sb.echo,
            retry=policy,
        )

        try:
            for hook in list(self._ready_hooks):
                await hook(sb.handle)
        except Exception as exc:
            logger.exception("sandbox ready hooks failed for project %s", project_id)
            await self._teardown_locked(project_id)
            self._errors[project_id] = str(exc) or exc.__class__.__name__
            self._notify_status(project_id)
            raise SandboxUnavailable(project_id) from exc

        sb.state = "ready"
        sb.last_activity = time.time()
        self._errors.pop(project_id, None)
        logger.info(
            "sandbox %s ready for project %s (reused=%s)",
            info.sandbox_id,
            project_id,
            info.exists,
        )
        if not sb.sessions:
            self._start_idle_countdown(sb)
        self._notify_status(project_id)
        return sb.handle

    # ---- reference counting

    def attach(self, project_id: str, session_id: str) -> None:
        sb = self._sandboxes.get(project_id)
        if sb is None:
            return
        sb.sessions.add(session_id)
        sb.last_activity = time.time()
        if sb.idle_task is not None:
            sb.idle_task.cancel()
            sb.idle_task = None

    def release(self, project_id: str, session_id: str) -> None:
        sb = self._sandboxes.get(project_id)
        if sb is None:
            return
        sb.sessions.discard(session_id)
        sb.last_activity = time.time()
        if not sb.sessions and sb.state in ("ready", "degraded"):
            self._start_idle_countdown(sb)

    def touch(self, project_id: str) -> None:
        sb = self._sandboxes.get(project_id)
        if sb is not None:
            sb.last_activity = time.time()

    def _start_idle_countdown(self, sb: Sandbox) -> None:
        if sb.idle_task is not None:
            sb.idle_task.cancel()
        sb.idle_task = asyncio.create_task(self._idle_countdown(sb))

    async def _idle_countdown(self, sb: Sandbox) -> None:
        delay = self._idle_timeout_s
        while True:
            await asyncio.sleep(delay)
            # Any acquire or touch since the countdown began extends it.
            delay = sb.last_activity + self._idle_timeout_s - time.time()
            if delay <= 0:
                break
        async with self._lock_for(sb.project_id):
            if self._sandboxes.get(sb.project_id) is not sb or sb.sessions:
                return
            # Detach first so teardown does not cancel the running countdown.
            sb.idle_task = None
            logger.info(
                "sandbox %s for project %s idle for %.0fs; stopping",
                sb.sandbox_id,
                sb.project_id,
                self._idle_timeout_s,
            )
            await self._teardown_locked(sb.project_id)

    # ---- health

    def mark_degraded(self, project_id: str, reason: str) -> None:
        sb = self._sandboxes.get(project_id)
        if sb is None or sb.state not in ("ready", "degraded"):
            return
        changed = sb.state != "degraded"
        sb.state = "degraded"
        sb.last_error = reason
        if changed:
            logger.warning("sandbox for project %s degraded: %s", project_id, reason)
            self._notify_status(project_id)

    def mark_recovered(self, project_id: str) -> None:
        sb = self._sandboxes.get(project_id)
        if sb is None or sb.state != "degraded":
            return
        sb.state = "ready"
        sb.last_error = None
        logger.info("sandbox for project %s recovered", project_id)
        self._notify_status(project_id)

    # ---- teardown

    async def teardown(self, project_id: str) -> bool:
        async with self._lock_for(project_id):
            return await self._teardown_locked(project_id)

    async def _teardown_locked(self, project_id: str) -> bool:
        sb = self._sandboxes.pop(project_id, None)
        if sb is None:
            return False
        if sb.idle_task is not None:
            sb.idle_task.cancel()
            sb.idle_task = None
        sb.state = "stopped"
        sb.sessions.clear()
        sb.echo.clear()

        for hook in list(self._stop_hooks):
            try:
                await hook(project_id)
            except Exception:
                logger.exception("sandbox stop hook failed for project %s", project_id)

        if sb.sandbox_id:
            try:
                await asyncio.to_thread(
                    self._backend.delete_sandbox, sandbox_id=sb.sandbox_id
                )
            except Exception:
                logger.error(
                    "Failed to delete sandbox %s for project %s. "
                    "Manual cleanup may be required.",
                    sb.sandbox_id,
                    project_id,
                    exc_info=True,
                )
        logger.info("sandbox for project %s stopped", project_id)
        self._notify_status(project_id)
        return True

    async def close(self) -> None:
        """Tear down all sandboxes. Called on application shutdown."""
        project_ids = list(self._sandboxes.keys())
        logger.info("closing sandbox registry, tearing down %d sandboxes", len(project_ids))
        for project_id in project_ids:
            await self.teardown(project_id)
