from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from collabhub.broadcast import EventBroadcaster
from collabhub.config import presence_grace_s, presence_typing_timeout_s
from collabhub.messages import MessageType
from collabhub.presence.locks import LockCoordinator

logger = logging.getLogger(__name__)


@dataclass
class PresenceEntry:
    room: str
    user_id: str
    online: bool = True
    last_seen: float = field(default_factory=time.time)
    cursor: dict[str, Any] | None = None
    selection: dict[str, Any] | None = None
    typing: bool = False
    info: dict[str, Any] = field(default_factory=dict)
    connections: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "online": self.online,
            "last_seen": self.last_seen,
            "cursor": self.cursor,
            "selection": self.selection,
            "typing": self.typing,
            "info": dict(self.info),
        }


class PresenceCoordinator:
    """Who is in which room, where their cursor is, and who is typing.

    Rooms are `project:<id>` and `file:<id>`. A disconnected user stays
    online for the reconnect grace period; when it expires they go offline
    and, if they are offline everywhere, their file locks are released.
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        *,
        locks: LockCoordinator | None = None,
        grace_s: float | None = None,
        typing_timeout_s: float | None = None,
    ) -> None:
        self._broadcaster = broadcaster
        self._locks = locks
        self._grace_s = float(grace_s) if grace_s is not None else presence_grace_s()
        self._typing_timeout_s = (
            float(typing_timeout_s)
            if typing_timeout_s is not None
            else presence_typing_timeout_s()
        )
        self._entries: dict[tuple[str, str], PresenceEntry] = {}
        self._offline_timers: dict[tuple[str, str], asyncio.Task] = {}
        self._typing_timers: dict[tuple[str, str], asyncio.Task] = {}

    def snapshot(self, room: str) -> list[dict[str, Any]]:
        return [
            e.to_dict()
            for (r, _u), e in sorted(self._entries.items())
            if r == room
        ]

    def get(self, room: str, user_id: str) -> PresenceEntry | None:
        return self._entries.get((room, user_id))

    def is_online_anywhere(self, user_id: str) -> bool:
        return any(e.online for (_r, u), e in self._entries.items() if u == user_id)

    def _has_entries(self, user_id: str) -> bool:
        return any(u == user_id for (_r, u) in self._entries)

    async def _release_locks_if_gone(self, user_id: str | None) -> None:
        # Entries still present (online or within their grace) keep the locks.
        if self._locks is None or not user_id or self._has_entries(user_id):
            return
        await self._locks.release_all(user_id)

    async def _publish_presence(self, room: str, *, user_id: str, event: str) -> None:
        await self._broadcaster.publish(
            room,
            MessageType.PRESENCE_UPDATE,
            {"room": room, "event": event, "user_id": user_id, "users": self.snapshot(room)},
        )

    def _cancel(self, timers: dict[tuple[str, str], asyncio.Task], key: tuple[str, str]) -> None:
        task = timers.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ---- membership

    async def join(
        self,
        room: str,
        user_id: str,
        connection_id: str,
        *,
        info: dict[str, Any] | None = None,
    ) -> PresenceEntry:
        key = (room, user_id)
        self._broadcaster.join(connection_id, room)
        self._cancel(self._offline_timers, key)
        entry = self._entries.get(key)
        if entry is None:
            entry = PresenceEntry(room=room, user_id=user_id)
            self._entries[key] = entry
        entry.online = True
        entry.last_seen = time.time()
        entry.connections.add(connection_id)
        if info:
            entry.info.update(info)
        await self._publish_presence(room, user_id=user_id, event="join")
        return entry

    async def leave(self, room: str, user_id: str, connection_id: str) -> None:
        key = (room, user_id)
        self._broadcaster.leave(connection_id, room)
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.connections.discard(connection_id)
        if entry.connections:
            return
        self._entries.pop(key, None)
        self._cancel(self._offline_timers, key)
        self._cancel(self._typing_timers, key)
        await self._publish_presence(room, user_id=user_id, event="leave")
        await self._release_locks_if_gone(user_id)

    async def disconnect(self, connection_id: str, user_id: str | None = None) -> None:
        """A transport connection dropped; start the grace period where it was the last one.

        A connection that holds no presence entries (it left every room, or never
        joined one) releases its user's locks at once when that user has no
        entries anywhere else.
        """
        if user_id:
            others = [
                cid
                for cid in self._broadcaster.user_connections(user_id)
                if cid != connection_id
            ]
            if not others:
                await self._release_locks_if_gone(user_id)
        for key, entry in list(self._entries.items()):
            if connection_id not in entry.connections:
                continue
            entry.connections.discard(connection_id)
            entry.last_seen = time.time()
            if entry.connections:
                continue
            self._cancel(self._offline_timers, key)
            self._offline_timers[key] = asyncio.create_task(self._go_offline(key))

    async def _go_offline(self, key: tuple[str, str]) -> None:
        await asyncio.sleep(self._grace_s)
        self._offline_timers.pop(key, None)
        entry = self._entries.get(key)
        if entry is None or entry.connections:
            return
        room, user_id = key
        entry.online = False
        entry.typing = False
        self._cancel(self._typing_timers, key)
        logger.info("user %s offline in %s", user_id, room)
        await self._publish_presence(room, user_id=user_id, event="offline")
        self._entries.pop(key, None)
        if self._locks is not None and not self.is_online_anywhere(user_id):
            await self._locks.release_all(user_id)

    # ---- activity

    async def set_typing(
        self, room: str, user_id: str, connection_id: str, typing: bool
    ) -> None:
        key = (room, user_id)
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.last_seen = time.time()
        self._cancel(self._typing_timers, key)
        if typing:
            self._typing_timers[key] = asyncio.create_task(self._clear_typing(key))
        if entry.typing == typing:
            return
        entry.typing = typing
        await self._broadcaster.publish(
            room,
            MessageType.TYPING_UPDATE,
            {"room": room, "user_id": user_id, "typing": typing},
            exclude=connection_id,
        )

    async def _clear_typing(self, key: tuple[str, str]) -> None:
        await asyncio.sleep(self._typing_timeout_s)
        self._typing_timers.pop(key, None)
        entry = self._entries.get(key)
        if entry is None or not entry.typing:
            return
        entry.typing = False
        room, user_id = key
        await self._broadcaster.publish(
            room,
            MessageType.TYPING_UPDATE,
            {"room": room, "user_id": user_id, "typing": False, "reason": "timeout"},
        )

    async def update_cursor(
        self,
        room: str,
        user_id: str,
        connection_id: str,
        cursor: dict[str, Any] | None,
        selection: dict[str, Any] | None = None,
    ) -> None:
        entry = self._entries.get((room, user_id))
        if entry is None:
            return
        entry.cursor = cursor
        entry.selection = selection
        entry.last_seen = time.time()
        await self._broadcaster.publish(
            room,
            MessageType.CURSOR_UPDATE,
            {"room": room, "user_id": user_id, "cursor": cursor, "selection": selection},
            exclude=connection_id,
        )

    async def relay_code_change(
        self, room: str, user_id: str, connection_id: str, change: dict[str, Any]
    ) -> int:
        """Forward a live edit to the other editors of a file room."""
        entry = self._entries.get((room, user_id))
        if entry is not None:
            entry.last_seen = time.time()
        return await self._broadcaster.publish(
            room,
            MessageType.CODE_CHANGE,
            {"room": room, "user_id": user_id, "change": change},
            exclude=connection_id,
        )

    async def close(self) -> None:
        for timers in (self._offline_timers, self._typing_timers):
            for task in timers.values():
                task.cancel()
            timers.clear()
