from __future__ import annotations

import asyncio

from collabhub.broadcast import EventBroadcaster, project_room
from collabhub.messages import MessageType, parse_ws_message
from fakes import Recorder


async def _broken(_payload) -> None:
    raise ConnectionResetError("socket closed")


def test_publish_skips_failing_connection() -> None:
    b = EventBroadcaster()
    good = Recorder()
    b.register("bad", _broken)
    b.register("good", good)
    room = project_room("p1")
    b.join("bad", room)
    b.join("good", room)

    delivered = asyncio.run(b.publish(room, MessageType.SYNC_RESULT, {"created": 1}))

    assert delivered == 1
    assert good.data("sync_result") == [{"created": 1}]


def test_publish_exclude() -> None:
    b = EventBroadcaster()
    one, two = Recorder(), Recorder()
    b.register("one", one)
    b.register("two", two)
    for cid in ("one", "two"):
        b.join(cid, "file:f")

    asyncio.run(b.publish("file:f", MessageType.CODE_CHANGE, {}, exclude="one"))

    assert one.messages == []
    assert len(two.messages) == 1


def test_unregister_leaves_rooms() -> None:
    b = EventBroadcaster()
    b.register("c", Recorder(), user_id="u")
    b.join("c", "project:p")
    assert b.user_connections("u", "project:p") == ["c"]
    assert b.unregister("c") == {"project:p"}
    assert b.members("project:p") == []
    assert asyncio.run(b.send("c", MessageType.PING, {})) is False


def test_message_envelope() -> None:
    b = EventBroadcaster()
    rec = Recorder()
    b.register("c", rec)
    asyncio.run(b.send("c", MessageType.TERMINAL_OUTPUT, {"data": "x"}, session_id="s1"))
    msg = rec.messages[0]
    assert msg["type"] == "terminal_output"
    assert msg["session_id"] == "s1"
    assert msg["id"] and isinstance(msg["timestamp"], int)


def test_parse_ws_message() -> None:
    assert parse_ws_message('{"type": "ping"}') == {"type": "ping"}
    assert parse_ws_message("not json") == {}
    assert parse_ws_message("[1, 2]") == {}
