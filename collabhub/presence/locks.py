from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from collabhub.broadcast import EventBroadcaster, file_room, project_room
from collabhub.errors import AlreadyLocked, NotLockHolder
from collabhub.messages import MessageType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileLock:
    file_id: str
    holder: str
    project_id: str | None = None
    acquired_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "holder": self.holder,
            "project_id": self.project_id,
            "acquired_at": self.acquired_at,
        }


class LockCoordinator:
    """Advisory, application-visible file locks (one holder per file).

    Every check-and-set runs without an intervening await, so two acquisitions
    racing on the event loop can never both succeed.
    """

    def __init__(self, broadcaster: EventBroadcaster | None = None) -> None:
        self._broadcaster = broadcaster
        self._locks: dict[str, FileLock] = {}

    def holder(self, file_id: str) -> str | None:
        lock = self._locks.get(file_id)
        return lock.holder if lock else None

    def get(self, file_id: str) -> FileLock | None:
        return self._locks.get(file_id)

    def locks_for(self, project_id: str) -> list[FileLock]:
        return [lk for lk in self._locks.values() if lk.project_id == project_id]

    async def acquire(
        self, file_id: str, user_id: str, *, project_id: str | None = None
    ) -> FileLock:
        cur = self._locks.get(file_id)
        if cur is not None:
            if cur.holder == user_id:
                return cur
            raise AlreadyLocked(file_id, cur.holder)
        lock = FileLock(file_id=file_id, holder=user_id, project_id=project_id)
        self._locks[file_id] = lock
        logger.debug("lock on %s acquired by %s", file_id, user_id)
        await self._announce(lock, locked=True)
        return lock

    async def release(self, file_id: str, user_id: str) -> bool:
        """Release `user_id`'s lock. Releasing an unlocked file is a no-op (False)."""
        cur = self._locks.get(file_id)
        if cur is None:
            return False
        if cur.holder != user_id:
            raise NotLockHolder(file_id, user_id)
        del self._locks[file_id]
        logger.debug("lock on %s released by %s", file_id, user_id)
        await self._announce(cur, locked=False)
        return True

    async def release_all(self, user_id: str) -> list[str]:
        held = [lk for lk in self._locks.values() if lk.holder == user_id]
        for lk in held:
            self._locks.pop(lk.file_id, None)
        for lk in held:
            await self._announce(lk, locked=False, reason="holder_disconnected")
        if held:
            logger.info("released %d lock(s) held by %s", len(held), user_id)
        return [lk.file_id for lk in held]

    async def _announce(self, lock: FileLock, *, locked: bool, reason: str | None = None) -> None:
        if self._broadcaster is None:
            return
        data: dict[str, Any] = {
            "file_id": lock.file_id,
            "locked": locked,
            "holder": lock.holder if locked else None,
            "user_id": lock.holder,
        }
        if reason:
            data["reason"] = reason
        # File-room members are also in the project room.
        room = project_room(lock.project_id) if lock.project_id else file_room(lock.file_id)
        await self._broadcaster.publish(room, MessageType.LOCK_CHANGED, data)
