from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from collabhub.broadcast import project_room
from collabhub.engine import WorkspaceEngine
from collabhub.errors import AlreadyLocked, TerminalNotFound
from collabhub.sandboxes.retry import RetryPolicy
from collabhub.store.base import walk_entries
from collabhub.store.memory import InMemoryCanonicalStore
from fakes import FakeTerminalBackend, Recorder


async def _until(pred, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not pred():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.05)


class _DenyBob:
    def can_edit(self, user_id: str, file_id: str) -> bool:
        return user_id != "bob"

    def can_access_project(self, user_id: str, project_id: str) -> bool:
        return user_id in ("alice", "bob")


def _engine(tmp_path: Path, **kwargs) -> tuple[WorkspaceEngine, FakeTerminalBackend, Recorder]:
    backend = FakeTerminalBackend(str(tmp_path))
    engine = WorkspaceEngine(
        backend=backend,
        retry=RetryPolicy(max_attempts=2, base_delay_s=0, max_delay_s=0),
        watcher_interval_s=0.5,
        **kwargs,
    )
    rec = Recorder()
    engine.broadcaster.register("c1", rec, user_id="alice")
    engine.broadcaster.join("c1", project_room("p1"))
    return engine, backend, rec


def _root(engine: WorkspaceEngine, project_id: str = "p1") -> Path:
    handle = engine.registry.get(project_id)
    assert handle is not None
    return Path(handle.root_dir)


def test_shell_created_files_show_up_for_editors(tmp_path: Path) -> None:
    engine, _backend, rec = _engine(tmp_path)

    async def run():
        status = await engine.request_sandbox("p1", user_id="alice")
        root = _root(engine)
        (root / "Hello").mkdir()
        (root / "Hello" / "hello.py").write_text("print('hello')\n")
        await _until(
            lambda: engine.store.get_entry_by_path("p1", "/Hello/hello.py") is not None
        )
        paths = [e.path for e in walk_entries(engine.store, "p1")]
        await engine.close()
        return status, paths

    status, paths = asyncio.run(run())
    assert status.state == "ready"
    assert paths == ["/Hello", "/Hello/hello.py"]
    updates = rec.data("file_system_update")
    assert [(u["kind"], u["path"]) for u in updates] == [
        ("folder_created", "/Hello"),
        ("file_created", "/Hello/hello.py"),
    ]
    states = [d["state"] for d in rec.data("sandbox_status")]
    assert "ready" in states


def test_editor_save_reaches_sandbox_and_terminal(tmp_path: Path) -> None:
    engine, backend, rec = _engine(tmp_path)

    async def run():
        await engine.request_sandbox("p1")
        await engine.save_file("p1", "/main.py", "print(1)\n", user_id="alice")
        on_disk = (_root(engine) / "main.py").read_text()
        session = await engine.open_terminal(
            "p1", tab_id="1", user_id="alice", connection_id="c1"
        )
        await engine.send_input(session.id, "python main.py\n")
        result = await engine.force_sync("p1", user_id="alice")
        watcher = engine.get_watcher_status("p1")
        await engine.close()
        return on_disk, result, watcher

    on_disk, result, watcher = asyncio.run(run())
    assert on_disk == "print(1)\n"
    assert backend.processes[0].inputs == [b"python main.py\n"]
    assert (result.created, result.updated, result.deleted) == (0, 0, 0)
    assert watcher.is_active and watcher.sync_count == 1
    assert rec.data("terminal_ready")[0]["tab_id"] == "1"


def test_existing_project_files_are_seeded(tmp_path: Path) -> None:
    store = InMemoryCanonicalStore()
    src = store.create_entry("p1", name="src", kind="folder", parent_id=None)
    store.create_entry("p1", name="app.js", kind="file", parent_id=src.id, content="// app\n")
    engine, _backend, rec = _engine(tmp_path, store=store)

    async def run():
        await engine.request_sandbox("p1")
        listing = await engine.list_dir("p1", "/src")
        read = await engine.read_file("p1", "/src/app.js")
        # Seeded files must not come back as sandbox changes.
        await asyncio.sleep(1.2)
        await engine.close()
        return listing, read

    listing, read = asyncio.run(run())
    assert [e["name"] for e in listing] == ["app.js"]
    assert read.content == "// app\n"
    assert rec.data("file_system_update") == []


def test_access_policy_is_enforced(tmp_path: Path) -> None:
    engine, _backend, _rec = _engine(tmp_path, access=_DenyBob())

    async def run():
        await engine.request_sandbox("p1", user_id="alice")
        try:
            with pytest.raises(PermissionError):
                await engine.request_sandbox("p1", user_id="mallory")
            with pytest.raises(PermissionError):
                await engine.save_file("p1", "/x.txt", "x", user_id="bob")
            with pytest.raises(PermissionError):
                await engine.lock_file("p1", "/x.txt", "bob")
            await engine.save_file("p1", "/x.txt", "x", user_id="alice")
        finally:
            await engine.close()

    asyncio.run(run())


def test_locks_through_engine(tmp_path: Path) -> None:
    engine, _backend, rec = _engine(tmp_path)

    async def run():
        lock = await engine.lock_file("p1", "file-1", "alice")
        with pytest.raises(AlreadyLocked):
            await engine.lock_file("p1", "file-1", "bob")
        released = await engine.unlock_file("file-1", "alice")
        await engine.close()
        return lock, released

    lock, released = asyncio.run(run())
    assert lock.holder == "alice" and released is True
    assert [c["locked"] for c in rec.data("lock_changed")] == [True, False]


def test_request_without_waiting_provisions_in_background(tmp_path: Path) -> None:
    engine, _backend, _rec = _engine(tmp_path)

    async def run():
        first = await engine.request_sandbox("p1", wait=False)
        await _until(lambda: engine.sandbox_status("p1").state == "ready")
        second = await engine.request_sandbox("p1", wait=False)
        await engine.close()
        return first, second

    first, second = asyncio.run(run())
    assert first.state == "pending"
    assert second.state == "ready"


def test_failed_provisioning_reports_error(tmp_path: Path) -> None:
    engine, backend, _rec = _engine(tmp_path)

    def broken(*, project_id: str):
        raise RuntimeError("no capacity")

    backend.create_sandbox = broken

    async def run():
        status = await engine.request_sandbox("p1")
        await engine.close()
        return status

    status = asyncio.run(run())
    assert status.state == "error"
    assert status.error == "no capacity"


def test_teardown_ends_terminals_and_watcher(tmp_path: Path) -> None:
    engine, _backend, rec = _engine(tmp_path)

    async def run():
        await engine.request_sandbox("p1")
        await engine.open_terminal("p1", tab_id="1", user_id="alice", connection_id="c1")
        stopped = await engine.teardown("p1")
        watcher = engine.get_watcher_status("p1")
        status = engine.sandbox_status("p1")
        await engine.close()
        return stopped, watcher, status

    stopped, watcher, status = asyncio.run(run())
    assert stopped is True
    assert not watcher.is_active
    assert status.state == "stopped"
    assert rec.data("terminal_exit")[0]["reason"] == "sandbox_stopped"


def test_terminal_commands_check_the_caller(tmp_path: Path) -> None:
    engine, backend, _rec = _engine(tmp_path, access=_DenyBob())

    async def run():
        session = await engine.open_terminal(
            "p1", tab_id="1", user_id="alice", connection_id="c1"
        )
        try:
            with pytest.raises(PermissionError):
                await engine.send_input(session.id, "rm -rf /\n", user_id="bob")
            with pytest.raises(PermissionError):
                await engine.resize(session.id, 10, 10, user_id="mallory")
            with pytest.raises(PermissionError):
                await engine.close_terminal(session.id, user_id="bob")
            with pytest.raises(TerminalNotFound):
                await engine.send_input("nope", "ls\n", user_id="alice")
            await engine.send_input(session.id, "ls\n", user_id="alice")
            return session.state
        finally:
            await engine.close()

    assert asyncio.run(run()) == "ready"
    assert backend.processes[0].inputs == [b"ls\n"]
