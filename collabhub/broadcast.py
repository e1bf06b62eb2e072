from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from collabhub.messages import Message, MessageType

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]


def project_room(project_id: str) -> str:
    return f"project:{project_id}"


def file_room(file_id: str) -> str:
    return f"file:{file_id}"


@dataclass
class Connection:
    id: str
    send: Sender
    user_id: str | None = None
    rooms: set[str] = field(default_factory=set)


class EventBroadcaster:
    """Connection registry and room fan-out.

    A failing connection is logged and skipped; it never prevents delivery to
    the other members of a room.
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}

    def register(
        self, connection_id: str, send: Sender, *, user_id: str | None = None
    ) -> Connection:
        conn = Connection(id=connection_id, send=send, user_id=user_id)
        self._connections[connection_id] = conn
        return conn

    def set_user(self, connection_id: str, user_id: str | None) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.user_id = user_id

    def unregister(self, connection_id: str) -> set[str]:
        """Forget a connection; returns the rooms it was in."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return set()
        for room in conn.rooms:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    self._rooms.pop(room, None)
        return set(conn.rooms)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def join(self, connection_id: str, room: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                self._rooms.pop(room, None)

    def members(self, room: str) -> list[str]:
        return sorted(self._rooms.get(room, ()))

    def user_connections(self, user_id: str, room: str | None = None) -> list[str]:
        ids = self._rooms.get(room, set()) if room is not None else self._connections
        return sorted(
            cid
            for cid in ids
            if (conn := self._connections.get(cid)) is not None and conn.user_id == user_id
        )

    async def _deliver(self, conn: Connection, payload: dict[str, Any]) -> bool:
        try:
            await conn.send(payload)
            return True
        except Exception as exc:
            logger.warning("send to connection %s failed: %s", conn.id, exc)
            return False

    async def send(
        self,
        connection_id: str,
        type: MessageType,
        data: dict[str, Any],
        *,
        session_id: str | None = None,
    ) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        payload = Message.new(type, data, session_id=session_id).to_dict()
        return await self._deliver(conn, payload)

    async def publish(
        self,
        room: str,
        type: MessageType,
        data: dict[str, Any],
        *,
        exclude: str | set[str] | None = None,
        session_id: str | None = None,
    ) -> int:
        """Send to every connection in `room`; returns how many succeeded."""
        skip = {exclude} if isinstance(exclude, str) else set(exclude or ())
        targets = [
            conn
            for cid in self.members(room)
            if cid not in skip and (conn := self._connections.get(cid)) is not None
        ]
        if not targets:
            return 0
        payload = Message.new(type, data, session_id=session_id).to_dict()
        results = await asyncio.gather(*(self._deliver(c, payload) for c in targets))
        return sum(1 for ok in results if ok)
