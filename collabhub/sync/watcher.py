from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from collabhub.config import (
    WATCHER_MAX_INTERVAL_S,
    WATCHER_MIN_INTERVAL_S,
    watcher_scan_interval_s,
)
from collabhub.sandbox_files.sandbox_fs import SandboxFs
from collabhub.sandboxes.retry import RetryPolicy
from collabhub.sync.events import ChangeEvent
from collabhub.sync.snapshot import Snapshot, diff_snapshots, snapshot_from_manifest

logger = logging.getLogger(__name__)


@dataclass
class WatcherStatus:
    is_active: bool = False
    last_scan: float | None = None
    scan_count: int = 0
    error_count: int = 0
    last_change: float | None = None
    last_sync: float | None = None
    sync_count: int = 0
    avg_sync_time_s: float = 0.0
    scan_interval_s: float = 2.0
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_active": self.is_active,
            "last_scan": self.last_scan,
            "scan_count": self.scan_count,
            "error_count": self.error_count,
            "last_change": self.last_change,
            "last_sync": self.last_sync,
            "sync_count": self.sync_count,
            "avg_sync_time_s": round(self.avg_sync_time_s, 4),
            "scan_interval_s": self.scan_interval_s,
            "degraded": self.degraded,
        }


def clamp_interval(seconds: float) -> float:
    return min(WATCHER_MAX_INTERVAL_S, max(WATCHER_MIN_INTERVAL_S, float(seconds)))


class ChangeWatcher(Protocol):
    """Observes a sandbox filesystem and reports changes made from inside it.

    Polling is one strategy; a native-notification watcher can replace it as
    long as it reports the same ChangeEvents.
    """

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def scan(self, *, force: bool = False) -> list[ChangeEvent]: ...

    def set_interval(self, seconds: float) -> float: ...

    def record_sync(self, duration_s: float) -> None: ...

    def snapshot(self) -> Snapshot: ...

    def status(self) -> WatcherStatus: ...


class PollingChangeWatcher:
    """Periodic manifest diffing.

    Every tick takes a manifest of the sandbox, diffs it against the previous
    snapshot and hands the resulting events (minus echoes of our own writes)
    to `on_changes`.
    """

    def __init__(
        self,
        fs: SandboxFs,
        *,
        on_changes: Callable[[list[ChangeEvent]], Awaitable[None]],
        interval_s: float | None = None,
        retry: RetryPolicy | None = None,
        on_degraded: Callable[[str], Any] | None = None,
        on_recovered: Callable[[], Any] | None = None,
    ) -> None:
        self._fs = fs
        self._on_changes = on_changes
        self._retry = retry or RetryPolicy.from_env()
        self._on_degraded = on_degraded
        self._on_recovered = on_recovered

        self._snapshot: Snapshot = {}
        self._scan_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._consecutive_errors = 0
        self._status = WatcherStatus(
            scan_interval_s=clamp_interval(
                interval_s if interval_s is not None else watcher_scan_interval_s()
            )
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        await self.baseline()
        self._status.is_active = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "watcher started for sandbox %s (interval %.1fs)",
            self._fs.sandbox_id,
            self._status.scan_interval_s,
        )

    async def stop(self) -> None:
        self._status.is_active = False
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("watcher stopped for sandbox %s", self._fs.sandbox_id)

    async def baseline(self) -> None:
        """Take the current sandbox state as the reference, emitting nothing."""
        async with self._scan_lock:
            manifest = await self._fs.manifest()
            self._snapshot = snapshot_from_manifest(manifest)
            self._status.last_scan = time.time()

    def set_interval(self, seconds: float) -> float:
        self._status.scan_interval_s = clamp_interval(seconds)
        self._wake.set()
        return self._status.scan_interval_s

    def snapshot(self) -> Snapshot:
        return dict(self._snapshot)

    def status(self) -> WatcherStatus:
        s = self._status
        return WatcherStatus(**{k: getattr(s, k) for k in s.__dataclass_fields__})

    def record_sync(self, duration_s: float) -> None:
        s = self._status
        s.last_sync = time.time()
        s.avg_sync_time_s = (s.avg_sync_time_s * s.sync_count + duration_s) / (
            s.sync_count + 1
        )
        s.sync_count += 1

    async def scan(self, *, force: bool = False) -> list[ChangeEvent]:
        """Diff the sandbox against the last snapshot and advance it.

        Returns the non-echo events. Errors propagate only for forced scans;
        periodic scans count them and back off.
        """
        async with self._scan_lock:
            try:
                manifest = await self._fs.manifest()
            except Exception as exc:
                self._record_error(exc)
                if force:
                    raise
                return []

            new = snapshot_from_manifest(manifest)
            events = diff_snapshots(self._snapshot, new)
            self._snapshot = new
            self._record_success()

            echo = self._fs.echo
            kept = [e for e in events if not echo.consume(*e.echo_key())]
            if len(kept) != len(events):
                logger.debug(
                    "suppressed %d echo event(s) in sandbox %s",
                    len(events) - len(kept),
                    self._fs.sandbox_id,
                )
            if kept:
                self._status.last_change = time.time()
            return kept

    def _record_success(self) -> None:
        s = self._status
        s.last_scan = time.time()
        s.scan_count += 1
        recovered = s.degraded or self._consecutive_errors > 0
        self._consecutive_errors = 0
        s.error_count = 0
        s.degraded = False
        if recovered:
            logger.info("watcher scans succeeding again for sandbox %s", self._fs.sandbox_id)
            if self._on_recovered is not None:
                self._on_recovered()

    def _record_error(self, exc: Exception) -> None:
        s = self._status
        self._consecutive_errors += 1
        s.error_count = self._consecutive_errors
        logger.warning(
            "watcher scan failed for sandbox %s (%d consecutive): %s",
            self._fs.sandbox_id,
            self._consecutive_errors,
            exc,
        )
        if self._consecutive_errors >= self._retry.max_attempts and not s.degraded:
            s.degraded = True
            if self._on_degraded is not None:
                self._on_degraded(f"watcher: {exc}")

    def _next_delay(self) -> float:
        if self._consecutive_errors:
            backoff = self._retry.delay_for(self._consecutive_errors)
            return max(self._status.scan_interval_s, backoff)
        return self._status.scan_interval_s

    async def _loop(self) -> None:
        while True:
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._next_delay())
                # Interval changed; restart the wait with the new value.
                continue
            except TimeoutError:
                pass

            events = await self.scan()
            if not events:
                continue
            try:
                await self._on_changes(events)
            except Exception:
                logger.exception(
                    "change handler failed for sandbox %s", self._fs.sandbox_id
                )
