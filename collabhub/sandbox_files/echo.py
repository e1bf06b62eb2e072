from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Literal

EchoKind = Literal["file", "dir", "delete"]


class EchoSuppressor:
    """Remembers sandbox writes made on behalf of the editor.

    The watcher asks `consume(...)` for every change it observes; a match means
    the change is our own write coming back and must not be re-broadcast.
    A tag matches once, and only while it is younger than `window_s`.
    """

    def __init__(
        self, *, window_s: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._window_s = float(window_s)
        self._clock = clock
        self._lock = threading.Lock()
        # (path, kind, sha256 or "") -> expiry timestamps (a path may be written twice)
        self._tags: dict[tuple[str, str, str], list[float]] = {}

    def tag(self, path: str, kind: EchoKind, sha256: str | None = None) -> None:
        key = (path, kind, sha256 or "")
        with self._lock:
            self._prune_locked()
            self._tags.setdefault(key, []).append(self._clock() + self._window_s)

    def consume(self, path: str, kind: EchoKind, sha256: str | None = None) -> bool:
        key = (path, kind, sha256 or "")
        with self._lock:
            self._prune_locked()
            expiries = self._tags.get(key)
            if not expiries:
                return False
            expiries.pop(0)
            if not expiries:
                self._tags.pop(key, None)
            return True

    def pending(self) -> int:
        with self._lock:
            self._prune_locked()
            return sum(len(v) for v in self._tags.values())

    def clear(self) -> None:
        with self._lock:
            self._tags.clear()

    def _prune_locked(self) -> None:
        now = self._clock()
        for key in list(self._tags):
            alive = [t for t in self._tags[key] if t > now]
            if alive:
                self._tags[key] = alive
            else:
                del self._tags[key]
