"""Interactive terminal sessions inside project sandboxes.

Each session owns one shell process on a pseudo-terminal. A reader thread
moves raw output into an asyncio queue; a pump task decodes it, appends it to
a bounded replay buffer and pushes it to the session's subscribers.

Sessions are addressed for reattachment by (project, user, tab), so a browser
reload within the grace period lands back in the same shell and receives the
output it missed.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Literal

from collabhub.broadcast import EventBroadcaster
from collabhub.config import (
    terminal_buffer_max_chars,
    terminal_default_size,
    terminal_idle_timeout_s,
    terminal_max_sessions,
    terminal_reconnect_grace_s,
    terminal_shell,
)
from collabhub.errors import SessionLimitReached, TerminalNotFound, TerminalProcessExited
from collabhub.messages import MessageType
from collabhub.sandbox_backends.base import TerminalProcess
from collabhub.sandboxes.registry import SandboxHandle, SandboxRegistry

logger = logging.getLogger(__name__)

TerminalState = Literal["initializing", "ready", "closed", "errored"]

_MAX_DIM = 1000
_READ_CHUNK = 4096


def _clamp_dim(v: Any, default: int) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        return default
    return max(1, min(_MAX_DIM, n))


@dataclass
class TerminalSession:
    id: str
    project_id: str
    sandbox_id: str
    tab_id: str
    user_id: str
    cols: int
    rows: int
    state: TerminalState = "initializing"
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    disconnected_at: float | None = None
    subscribers: set[str] = field(default_factory=set)
    buffer: deque[tuple[int, str]] = field(default_factory=deque)
    buffer_chars: int = 0
    next_seq: int = 1
    delivered_seq: int = 0
    exit_code: int | None = None
    process: TerminalProcess | None = None
    reader: threading.Thread | None = None
    pump: asyncio.Task | None = None
    grace_task: asyncio.Task | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.project_id, self.user_id, self.tab_id)

    @property
    def last_seq(self) -> int:
        return self.next_seq - 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "project_id": self.project_id,
            "tab_id": self.tab_id,
            "user_id": self.user_id,
            "cols": self.cols,
            "rows": self.rows,
            "state": self.state,
            "last_seq": self.last_seq,
            "created_at": self.created_at,
        }


def _read_loop(
    proc: TerminalProcess, queue: asyncio.Queue, loop: asyncio.AbstractEventLoop
) -> None:
    """Thread: read process output and hand it to the event loop.

    Puts bytes chunks, then None at EOF (or the exception if reading failed).
    """
    end: Any = None
    try:
        while True:
            data = proc.read(_READ_CHUNK)
            if not data:
                break
            loop.call_soon_threadsafe(queue.put_nowait, data)
    except Exception as exc:
        end = exc
    # The loop may already be closed during shutdown.
    with contextlib.suppress(RuntimeError):
        loop.call_soon_threadsafe(queue.put_nowait, end)


class TerminalSessionManager:
    def __init__(
        self,
        registry: SandboxRegistry,
        broadcaster: EventBroadcaster,
        *,
        max_sessions: int | None = None,
        reconnect_grace_s: float | None = None,
        buffer_max_chars: int | None = None,
        idle_timeout_s: float | None = None,
        shell: str | None = None,
    ) -> None:
        self._registry = registry
        self._broadcaster = broadcaster
        self._max_sessions = max_sessions or terminal_max_sessions()
        self._grace_s = (
            float(reconnect_grace_s)
            if reconnect_grace_s is not None
            else terminal_reconnect_grace_s()
        )
        self._buffer_max_chars = buffer_max_chars or terminal_buffer_max_chars()
        self._idle_timeout_s = (
            float(idle_timeout_s) if idle_timeout_s is not None else terminal_idle_timeout_s()
        )
        self._shell = shell or terminal_shell()

        self._sessions: dict[str, TerminalSession] = {}
        self._by_key: dict[tuple[str, str, str], str] = {}
        # One open at a time per (project, user, tab); later ones reattach.
        self._open_locks: dict[tuple[str, str, str], asyncio.Lock] = {}

    # ---- lookups

    def get(self, session_id: str) -> TerminalSession | None:
        return self._sessions.get(session_id)

    def _require(self, session_id: str) -> TerminalSession:
        s = self._sessions.get(session_id)
        if s is None:
            raise TerminalNotFound(session_id)
        return s

    def sessions_for(self, project_id: str) -> list[TerminalSession]:
        return [s for s in self._sessions.values() if s.project_id == project_id]

    def live_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.state in ("initializing", "ready"))

    # ---- open / reattach

    async def open(
        self,
        handle: SandboxHandle,
        *,
        tab_id: str,
        user_id: str,
        connection_id: str,
        cols: int | None = None,
        rows: int | None = None,
        since_seq: int | None = None,
    ) -> TerminalSession:
        """Reattach to the (project, user, tab) session or spawn a new shell."""
        default_cols, default_rows = terminal_default_size()
        cols = _clamp_dim(cols, default_cols)
        rows = _clamp_dim(rows, default_rows)
        tab = str(tab_id or "1")
        key = (handle.project_id, user_id, tab)

        lock = self._open_locks.setdefault(key, asyncio.Lock())
        async with lock:
            return await self._open_locked(
                handle, key, connection_id, cols, rows, since_seq
            )

    async def _open_locked(
        self,
        handle: SandboxHandle,
        key: tuple[str, str, str],
        connection_id: str,
        cols: int,
        rows: int,
        since_seq: int | None,
    ) -> TerminalSession:
        _project_id, user_id, tab = key
        existing_id = self._by_key.get(key)
        if existing_id is not None:
            existing = self._sessions.get(existing_id)
            if existing is not None and existing.state == "ready":
                await self._reattach(existing, connection_id, cols, rows, since_seq)
                return existing
            if existing is None or existing.state in ("closed", "errored"):
                self._forget(existing_id)

        if self.live_count() >= self._max_sessions:
            raise SessionLimitReached(
                f"terminal session limit reached ({self._max_sessions})"
            )

        s = TerminalSession(
            id=str(uuid.uuid4()),
            project_id=handle.project_id,
            sandbox_id=handle.sandbox_id,
            tab_id=tab,
            user_id=user_id,
            cols=cols,
            rows=rows,
        )
        s.subscribers.add(connection_id)
        self._sessions[s.id] = s
        self._by_key[key] = s.id
        # Hold the sandbox before spawning so its idle countdown cannot fire.
        self._registry.attach(handle.project_id, s.id)

        try:
            proc = await asyncio.to_thread(
                handle.backend.spawn_terminal,
                sandbox_id=handle.sandbox_id,
                cols=cols,
                rows=rows,
                shell=self._shell,
            )
        except Exception:
            logger.exception(
                "failed to spawn terminal for project %s tab %s", handle.project_id, tab
            )
            s.state = "errored"
            self._forget(s.id)
            raise

        s.process = proc
        s.state = "ready"
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        s.reader = threading.Thread(
            target=_read_loop,
            args=(proc, queue, loop),
            name=f"terminal-reader-{s.id[:8]}",
            daemon=True,
        )
        s.reader.start()
        s.pump = asyncio.create_task(self._pump(s, queue))
        logger.info(
            "terminal %s opened for project %s user %s tab %s (%sx%s)",
            s.id,
            s.project_id,
            user_id,
            tab,
            cols,
            rows,
        )
        await self._broadcaster.send(
            connection_id,
            MessageType.TERMINAL_READY,
            {**s.to_dict(), "reattached": False},
            session_id=s.id,
        )
        return s

    async def _reattach(
        self,
        s: TerminalSession,
        connection_id: str,
        cols: int,
        rows: int,
        since_seq: int | None,
    ) -> None:
        had_subscribers = bool(s.subscribers - {connection_id})
        if s.grace_task is not None:
            s.grace_task.cancel()
            s.grace_task = None
        s.disconnected_at = None
        s.subscribers.add(connection_id)
        s.last_activity = time.time()

        await self._broadcaster.send(
            connection_id,
            MessageType.TERMINAL_READY,
            {**s.to_dict(), "reattached": True},
            session_id=s.id,
        )
        if since_seq is not None:
            after = int(since_seq)
        elif had_subscribers:
            after = 0
        else:
            after = s.delivered_seq
        await self._replay(s, connection_id, after)
        await self.resize(s.id, cols, rows)
        logger.info("terminal %s reattached (replayed after seq %d)", s.id, after)

    async def _replay(self, s: TerminalSession, connection_id: str, after_seq: int) -> None:
        for seq, text in list(s.buffer):
            if seq <= after_seq:
                continue
            await self._broadcaster.send(
                connection_id,
                MessageType.TERMINAL_OUTPUT,
                {"session_id": s.id, "tab_id": s.tab_id, "data": text, "seq": seq, "replay": True},
                session_id=s.id,
            )
            s.delivered_seq = max(s.delivered_seq, seq)

    # ---- output

    async def _pump(self, s: TerminalSession, queue: asyncio.Queue) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            item = await queue.get()
            if isinstance(item, bytes):
                text = decoder.decode(item)
                if text:
                    await self._emit(s, text)
                continue
            tail = decoder.decode(b"", final=True)
            if tail:
                await self._emit(s, tail)
            if item is None:
                await self._on_exit(s)
            else:
                await self._on_error(s, item)
            return

    def _append(self, s: TerminalSession, text: str) -> int:
        if len(text) > self._buffer_max_chars:
            text = text[-self._buffer_max_chars :]
        seq = s.next_seq
        s.next_seq += 1
        s.buffer.append((seq, text))
        s.buffer_chars += len(text)
        while s.buffer_chars > self._buffer_max_chars and len(s.buffer) > 1:
            _old_seq, old = s.buffer.popleft()
            s.buffer_chars -= len(old)
        return seq

    async def _emit(self, s: TerminalSession, text: str) -> None:
        seq = self._append(s, text)
        s.last_activity = time.time()
        if not s.subscribers:
            return
        payload = {"session_id": s.id, "tab_id": s.tab_id, "data": text, "seq": seq}
        for cid in list(s.subscribers):
            await self._broadcaster.send(
                cid, MessageType.TERMINAL_OUTPUT, payload, session_id=s.id
            )
        s.delivered_seq = seq

    async def _on_exit(self, s: TerminalSession) -> None:
        if s.state != "ready":
            return
        proc = s.process
        if proc is not None:
            await asyncio.to_thread(proc.terminate)
            s.exit_code = proc.exit_code()
        s.state = "closed"
        logger.info("terminal %s exited (code=%s)", s.id, s.exit_code)
        await self._notify_subscribers(
            s,
            MessageType.TERMINAL_EXIT,
            {"session_id": s.id, "tab_id": s.tab_id, "exit_code": s.exit_code, "reason": "exited"},
        )
        self._forget(s.id)

    async def _on_error(self, s: TerminalSession, exc: BaseException) -> None:
        if s.state != "ready":
            return
        logger.error("terminal %s reader failed: %s", s.id, exc)
        s.state = "errored"
        if s.process is not None:
            await asyncio.to_thread(s.process.terminate)
        await self._notify_subscribers(
            s,
            MessageType.TERMINAL_ERROR,
            {"session_id": s.id, "tab_id": s.tab_id, "error": str(exc) or "terminal failed"},
        )
        self._forget(s.id)

    async def _notify_subscribers(
        self, s: TerminalSession, type: MessageType, data: dict[str, Any]
    ) -> None:
        for cid in list(s.subscribers):
            await self._broadcaster.send(cid, type, data, session_id=s.id)

    # ---- input / geometry

    async def input(self, session_id: str, data: str) -> None:
        s = self._require(session_id)
        if s.state != "ready" or s.process is None:
            raise TerminalProcessExited(session_id)
        try:
            await asyncio.to_thread(s.process.write, (data or "").encode("utf-8"))
        except OSError as exc:
            raise TerminalProcessExited(session_id) from exc
        s.last_activity = time.time()
        self._registry.touch(s.project_id)

    async def resize(self, session_id: str, cols: int, rows: int) -> TerminalSession:
        """Apply the geometry even when unchanged (forces a redraw)."""
        s = self._require(session_id)
        if s.state != "ready" or s.process is None:
            raise TerminalProcessExited(session_id)
        s.cols = _clamp_dim(cols, s.cols)
        s.rows = _clamp_dim(rows, s.rows)
        try:
            await asyncio.to_thread(s.process.resize, s.cols, s.rows)
        except OSError as exc:
            raise TerminalProcessExited(session_id) from exc
        s.last_activity = time.time()
        return s

    # ---- teardown

    async def close(self, session_id: str, *, reason: str = "closed") -> None:
        s = self._require(session_id)
        if s.state in ("closed", "errored"):
            self._forget(session_id)
            return
        s.state = "closed"
        if s.grace_task is not None and s.grace_task is not asyncio.current_task():
            s.grace_task.cancel()
        s.grace_task = None
        if s.process is not None:
            await asyncio.to_thread(s.process.terminate)
            s.exit_code = s.process.exit_code()
        logger.info("terminal %s closed (%s)", s.id, reason)
        await self._notify_subscribers(
            s,
            MessageType.TERMINAL_EXIT,
            {"session_id": s.id, "tab_id": s.tab_id, "exit_code": s.exit_code, "reason": reason},
        )
        self._forget(session_id)

    def _forget(self, session_id: str) -> None:
        s = self._sessions.pop(session_id, None)
        if s is None:
            return
        if self._by_key.get(s.key) == session_id:
            self._by_key.pop(s.key, None)
            lock = self._open_locks.get(s.key)
            if lock is not None and not lock.locked():
                self._open_locks.pop(s.key, None)
        if s.grace_task is not None and s.grace_task is not asyncio.current_task():
            s.grace_task.cancel()
        s.grace_task = None
        self._registry.release(s.project_id, s.id)

    def detach(self, connection_id: str) -> list[str]:
        """Drop a connection from its sessions; orphaned sessions start a grace timer."""
        affected: list[str] = []
        for s in list(self._sessions.values()):
            if connection_id not in s.subscribers:
                continue
            s.subscribers.discard(connection_id)
            affected.append(s.id)
            if not s.subscribers and s.state == "ready":
                s.disconnected_at = time.time()
                if s.grace_task is not None:
                    s.grace_task.cancel()
                s.grace_task = asyncio.create_task(self._grace_expiry(s.id))
        return affected

    async def _grace_expiry(self, session_id: str) -> None:
        await asyncio.sleep(self._grace_s)
        s = self._sessions.get(session_id)
        if s is None or s.subscribers:
            return
        logger.info("terminal %s not reattached within %.0fs", session_id, self._grace_s)
        await self.close(session_id, reason="disconnected")

    async def close_project(self, project_id: str) -> int:
        ids = [s.id for s in self.sessions_for(project_id)]
        for sid in ids:
            await self.close(sid, reason="sandbox_stopped")
        return len(ids)

    async def cleanup_idle(self) -> int:
        cutoff = time.time() - self._idle_timeout_s
        idle = [s.id for s in self._sessions.values() if s.last_activity < cutoff]
        for sid in idle:
            logger.info("closing idle terminal %s", sid)
            await self.close(sid, reason="idle")
        return len(idle)

    async def close_all(self) -> None:
        for sid in list(self._sessions):
            await self.close(sid, reason="shutdown")
