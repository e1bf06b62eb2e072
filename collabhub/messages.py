from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum


class MessageType(Enum):
    # client -> server
    INIT = "init"
    JOIN_PROJECT = "join_project"
    LEAVE_PROJECT = "leave_project"
    JOIN_FILE = "join_file"
    LEAVE_FILE = "leave_file"
    TYPING = "typing"
    CURSOR_UPDATE = "cursor_update"
    CODE_CHANGE = "code_change"
    LOCK_FILE = "lock_file"
    UNLOCK_FILE = "unlock_file"
    TERMINAL_INIT = "terminal_init"
    TERMINAL_INPUT = "terminal_input"
    TERMINAL_RESIZE = "terminal_resize"
    TERMINAL_CLOSE = "terminal_close"
    FORCE_SYNC = "force_sync"
    WATCHER_STATUS = "watcher_status"

    # server -> client
    SANDBOX_STATUS = "sandbox_status"
    FILE_SYSTEM_UPDATE = "file_system_update"
    SYNC_RESULT = "sync_result"
    SYNC_CONFLICT = "sync_conflict"
    PRESENCE_UPDATE = "presence_update"
    TYPING_UPDATE = "typing_update"
    LOCK_CHANGED = "lock_changed"
    TERMINAL_READY = "terminal_ready"
    TERMINAL_OUTPUT = "terminal_output"
    TERMINAL_RESIZED = "terminal_resized"
    TERMINAL_EXIT = "terminal_exit"
    TERMINAL_ERROR = "terminal_error"
    ERROR = "error"
    PING = "ping"


@dataclass
class Message:
    id: str
    timestamp: int
    type: MessageType
    data: dict
    session_id: str

    @classmethod
    def new(
        cls,
        type: MessageType,
        data: dict,
        id: str | None = None,
        session_id: str | None = None,
    ) -> Message:
        return cls(
            type=type,
            data=data,
            id=id or str(uuid.uuid4()),
            timestamp=time.time_ns() // 1_000_000,
            session_id=session_id or "",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
        }


def parse_ws_message(raw: str) -> dict:
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return msg if isinstance(msg, dict) else {}
