from __future__ import annotations

import asyncio

import pytest

from collabhub.broadcast import EventBroadcaster, file_room, project_room
from collabhub.errors import AlreadyLocked, NotLockHolder
from collabhub.presence.coordinator import PresenceCoordinator
from collabhub.presence.locks import LockCoordinator
from fakes import Recorder


def _world(**kwargs):
    broadcaster = EventBroadcaster()
    alice, bob = Recorder(), Recorder()
    broadcaster.register("ca", alice, user_id="alice")
    broadcaster.register("cb", bob, user_id="bob")
    locks = LockCoordinator(broadcaster)
    presence = PresenceCoordinator(broadcaster, locks=locks, **kwargs)
    return broadcaster, presence, locks, alice, bob


def test_join_publishes_snapshot() -> None:
    _b, presence, _locks, alice, bob = _world(grace_s=1, typing_timeout_s=1)
    room = file_room("f1")

    async def run():
        await presence.join(room, "alice", "ca", info={"name": "Alice"})
        await presence.join(room, "bob", "cb")
        await presence.close()

    asyncio.run(run())
    last = alice.data("presence_update")[-1]
    assert last["event"] == "join" and last["user_id"] == "bob"
    assert [u["user_id"] for u in last["users"]] == ["alice", "bob"]
    assert last["users"][0]["info"] == {"name": "Alice"}
    assert len(bob.data("presence_update")) == 1


def test_cursor_update_skips_sender() -> None:
    _b, presence, _locks, alice, bob = _world(grace_s=1, typing_timeout_s=1)
    room = file_room("f1")

    async def run():
        await presence.join(room, "alice", "ca")
        await presence.join(room, "bob", "cb")
        await presence.update_cursor(room, "alice", "ca", {"line": 3, "ch": 7})
        await presence.close()

    asyncio.run(run())
    assert alice.data("cursor_update") == []
    assert bob.data("cursor_update") == [
        {"room": room, "user_id": "alice", "cursor": {"line": 3, "ch": 7}, "selection": None}
    ]
    assert presence.get(room, "alice").cursor == {"line": 3, "ch": 7}


def test_typing_clears_itself() -> None:
    _b, presence, _locks, _alice, bob = _world(grace_s=1, typing_timeout_s=0.05)
    room = file_room("f1")

    async def run():
        await presence.join(room, "alice", "ca")
        await presence.join(room, "bob", "cb")
        await presence.set_typing(room, "alice", "ca", True)
        typing_now = presence.get(room, "alice").typing
        await asyncio.sleep(0.2)
        await presence.close()
        return typing_now

    assert asyncio.run(run()) is True
    updates = bob.data("typing_update")
    assert [u["typing"] for u in updates] == [True, False]
    assert updates[-1]["reason"] == "timeout"


def test_code_change_relayed_to_others() -> None:
    _b, presence, _locks, alice, bob = _world(grace_s=1, typing_timeout_s=1)
    room = file_room("f1")

    async def run():
        await presence.join(room, "alice", "ca")
        await presence.join(room, "bob", "cb")
        sent = await presence.relay_code_change(room, "bob", "cb", {"from": 0, "insert": "x"})
        await presence.close()
        return sent

    assert asyncio.run(run()) == 1
    assert alice.data("code_change")[0]["change"] == {"from": 0, "insert": "x"}
    assert bob.data("code_change") == []


def test_leave_removes_user() -> None:
    _b, presence, _locks, alice, _bob = _world(grace_s=1, typing_timeout_s=1)
    room = project_room("p1")

    async def run():
        await presence.join(room, "alice", "ca")
        await presence.join(room, "bob", "cb")
        await presence.leave(room, "bob", "cb")
        await presence.close()

    asyncio.run(run())
    assert presence.get(room, "bob") is None
    last = alice.data("presence_update")[-1]
    assert last["event"] == "leave"
    assert [u["user_id"] for u in last["users"]] == ["alice"]


def test_lock_is_exclusive_under_concurrency() -> None:
    _b, _presence, locks, _alice, _bob = _world()

    async def run():
        return await asyncio.gather(
            *(locks.acquire("f1", user, project_id="p1") for user in ("alice", "bob", "carol")),
            return_exceptions=True,
        )

    results = asyncio.run(run())
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, AlreadyLocked)]
    assert len(winners) == 1 and len(losers) == 2
    assert all(exc.holder == winners[0].holder for exc in losers)


def test_lock_reacquire_by_holder_is_idempotent() -> None:
    _b, _presence, locks, _alice, _bob = _world()

    async def run():
        first = await locks.acquire("f1", "alice")
        second = await locks.acquire("f1", "alice")
        return first, second

    first, second = asyncio.run(run())
    assert first is second


def test_only_holder_can_release() -> None:
    _b, _presence, locks, _alice, _bob = _world()

    async def run():
        await locks.acquire("f1", "alice")
        await locks.release("f1", "bob")

    with pytest.raises(NotLockHolder):
        asyncio.run(run())
    assert locks.holder("f1") == "alice"


def test_release_of_unlocked_file_is_noop() -> None:
    _b, _presence, locks, _alice, _bob = _world()
    assert asyncio.run(locks.release("nothing", "alice")) is False


def test_lock_changes_are_broadcast_to_project() -> None:
    broadcaster, presence, locks, alice, bob = _world(grace_s=1, typing_timeout_s=1)
    room = project_room("p1")

    async def run():
        await presence.join(room, "alice", "ca")
        await presence.join(room, "bob", "cb")
        await locks.acquire("f1", "alice", project_id="p1")
        await locks.release("f1", "alice")
        await presence.close()

    asyncio.run(run())
    changes = bob.data("lock_changed")
    assert [(c["locked"], c["holder"]) for c in changes] == [(True, "alice"), (False, None)]
    assert len(alice.data("lock_changed")) == 2


def test_locks_released_when_holder_goes_offline() -> None:
    _b, presence, locks, _alice, bob = _world(grace_s=0.05, typing_timeout_s=1)
    room = project_room("p1")

    async def run():
        await presence.join(room, "alice", "ca")
        await presence.join(room, "bob", "cb")
        await locks.acquire("f1", "alice", project_id="p1")
        await presence.disconnect("ca")
        still_online = presence.get(room, "alice").online
        await asyncio.sleep(0.2)
        await presence.close()
        return still_online

    assert asyncio.run(run()) is True
    assert presence.get(room, "alice") is None
    assert [u["user_id"] for u in presence.snapshot(room)] == ["bob"]
    assert locks.holder("f1") is None
    released = bob.data("lock_changed")[-1]
    assert released["locked"] is False and released["reason"] == "holder_disconnected"


def test_reconnect_within_grace_keeps_locks() -> None:
    _b, presence, locks, _alice, _bob = _world(grace_s=0.1, typing_timeout_s=1)
    room = project_room("p1")

    async def run():
        await presence.join(room, "alice", "ca")
        await locks.acquire("f1", "alice", project_id="p1")
        await presence.disconnect("ca")
        await asyncio.sleep(0.02)
        await presence.join(room, "alice", "ca")
        await asyncio.sleep(0.2)
        await presence.close()

    asyncio.run(run())
    assert locks.holder("f1") == "alice"
    assert presence.get(room, "alice").online


def test_leaving_then_disconnecting_releases_locks() -> None:
    _b, presence, locks, _alice, bob = _world(grace_s=0.05, typing_timeout_s=1)
    room = project_room("p1")

    async def run():
        await presence.join(room, "alice", "ca")
        await presence.join(room, "bob", "cb")
        await locks.acquire("f1", "alice", project_id="p1")
        await presence.leave(room, "alice", "ca")
        await presence.disconnect("ca", "alice")
        await asyncio.sleep(0.2)
        await presence.close()

    asyncio.run(run())
    assert locks.holder("f1") is None
    assert bob.data("lock_changed")[-1]["locked"] is False


def test_leaving_a_file_room_keeps_locks_while_in_project() -> None:
    _b, presence, locks, _alice, _bob = _world(grace_s=1, typing_timeout_s=1)

    async def run():
        await presence.join(project_room("p1"), "alice", "ca")
        await presence.join(file_room("f1"), "alice", "ca")
        await locks.acquire("f1", "alice", project_id="p1")
        await presence.leave(file_room("f1"), "alice", "ca")
        await presence.close()

    asyncio.run(run())
    assert locks.holder("f1") == "alice"


def test_disconnect_without_rooms_releases_locks() -> None:
    broadcaster, presence, locks, _alice, _bob = _world(grace_s=1, typing_timeout_s=1)

    async def run():
        await locks.acquire("f1", "alice")
        await locks.acquire("f2", "bob")
        await presence.disconnect("ca", "alice")
        broadcaster.unregister("ca")
        await presence.close()

    asyncio.run(run())
    assert locks.holder("f1") is None
    assert locks.holder("f2") == "bob"


def test_disconnect_keeps_locks_while_user_has_another_connection() -> None:
    broadcaster, presence, locks, _alice, _bob = _world(grace_s=1, typing_timeout_s=1)
    broadcaster.register("ca2", Recorder(), user_id="alice")

    async def run():
        await locks.acquire("f1", "alice")
        await presence.disconnect("ca", "alice")
        await presence.close()

    asyncio.run(run())
    assert locks.holder("f1") == "alice"
