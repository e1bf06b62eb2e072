from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import uuid
from collections.abc import AsyncIterator
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from collabhub.broadcast import file_room, project_room
from collabhub.config import auth_mode, cors_allow_origins, debug_enabled
from collabhub.engine import WorkspaceEngine
from collabhub.errors import (
    AlreadyLocked,
    EntryExists,
    NotLockHolder,
    PathInvalid,
    SandboxUnavailable,
    SessionLimitReached,
    SyncConflict,
    TerminalNotFound,
    TerminalProcessExited,
    WorkspaceError,
)
from collabhub.messages import Message, MessageType, parse_ws_message

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

logger = logging.getLogger(__name__)

_engine: WorkspaceEngine | None = None


def _get_engine() -> WorkspaceEngine:
    global _engine
    if _engine is None:
        _engine = WorkspaceEngine()
    return _engine


@contextlib.asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    engine = _get_engine()
    await engine.start()
    try:
        yield
    finally:
        await engine.close()


app = FastAPI(lifespan=_lifespan)

# Middleware must be registered before the app starts serving requests.
_cors_origins = cors_allow_origins()
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ---- auth


def _user_from_headers(headers: Any, query: Any) -> str:
    """Resolve the caller's user id.

    Modes:
    - none: trust the client; X-User-Id / ?user_id= when given, else "local"
    - header: an upstream proxy must set X-User-Id
    """
    user = str(headers.get("x-user-id") or "").strip()
    if auth_mode() == "header":
        if not user:
            raise PermissionError("not authenticated")
        return user
    return user or str(query.get("user_id") or "").strip() or "local"


def _user_from_request(request: Request) -> str:
    return _user_from_headers(request.headers, request.query_params)


# ---- error mapping


def _error_status(exc: BaseException) -> int:
    if isinstance(exc, PathInvalid):
        return 400
    if isinstance(exc, PermissionError):
        return 403
    if isinstance(exc, (FileNotFoundError, TerminalNotFound)):
        return 404
    if isinstance(
        exc,
        (
            SyncConflict,
            AlreadyLocked,
            NotLockHolder,
            EntryExists,
            TerminalProcessExited,
            FileExistsError,
            IsADirectoryError,
            NotADirectoryError,
        ),
    ):
        return 409
    if isinstance(exc, (SandboxUnavailable, SessionLimitReached)):
        return 503
    if isinstance(exc, (ValueError, WorkspaceError)):
        return 400
    return 500


def _error_payload(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, WorkspaceError):
        out = exc.to_dict()
        out["retryable"] = exc.retryable
        return out
    if isinstance(exc, PermissionError):
        return {"error": "forbidden", "detail": str(exc)}
    if isinstance(exc, FileNotFoundError):
        return {"error": "not_found", "detail": str(exc)}
    if isinstance(exc, (FileExistsError, IsADirectoryError, NotADirectoryError)):
        return {"error": "conflict", "detail": str(exc)}
    if isinstance(exc, ValueError):
        return {"error": "invalid_request", "detail": str(exc)}
    out: dict[str, Any] = {"error": "internal_error"}
    if debug_enabled():
        out["detail"] = str(exc)
    return out


def _error_response(exc: BaseException) -> JSONResponse:
    status = _error_status(exc)
    if status == 500:
        logger.exception("request failed", exc_info=exc)
    return JSONResponse(_error_payload(exc), status_code=status)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValueError("invalid_json") from None
    if not isinstance(body, dict):
        raise ValueError("invalid_json")
    return body


def _require_str(body: dict[str, Any], key: str) -> str:
    val = body.get(key)
    if not isinstance(val, str) or not val:
        raise ValueError(f"missing_{key}")
    return val


# ---- HTTP


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


_STATUS_CODES = {"ready": 200, "pending": 202, "error": 503, "stopped": 200}


@app.post("/api/sandbox/{project_id}")
async def api_request_sandbox(
    project_id: str, request: Request, wait: bool = True
) -> JSONResponse:
    try:
        user = _user_from_request(request)
        status = await _get_engine().request_sandbox(project_id, wait=wait, user_id=user)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(status.to_dict(), status_code=_STATUS_CODES.get(status.state, 200))


@app.get("/api/sandbox/{project_id}/status")
async def api_sandbox_status(project_id: str, request: Request) -> JSONResponse:
    try:
        _user_from_request(request)
    except PermissionError as exc:
        return _error_response(exc)
    return JSONResponse(_get_engine().sandbox_status(project_id).to_dict())


@app.delete("/api/sandbox/{project_id}")
async def api_teardown_sandbox(project_id: str, request: Request) -> JSONResponse:
    try:
        _user_from_request(request)
        stopped = await _get_engine().teardown(project_id)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse({"project_id": project_id, "stopped": stopped})


@app.post("/api/sandbox/{project_id}/sync")
async def api_force_sync(project_id: str, request: Request) -> JSONResponse:
    try:
        user = _user_from_request(request)
        result = await _get_engine().force_sync(project_id, user_id=user)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse({"project_id": project_id, **result.to_dict()})


@app.get("/api/sandbox/{project_id}/watcher")
async def api_watcher_status(project_id: str, request: Request) -> JSONResponse:
    try:
        _user_from_request(request)
    except PermissionError as exc:
        return _error_response(exc)
    return JSONResponse(_get_engine().get_watcher_status(project_id).to_dict())


@app.post("/api/sandbox/{project_id}/watcher")
async def api_watcher_interval(project_id: str, request: Request) -> JSONResponse:
    try:
        _user_from_request(request)
        body = await _json_body(request)
        try:
            seconds = float(body.get("interval_s"))
        except (TypeError, ValueError):
            raise ValueError("missing_interval_s") from None
        status = _get_engine().set_watcher_interval(project_id, seconds)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(status.to_dict())


@app.get("/api/sandbox/{project_id}/ls")
async def api_ls(project_id: str, request: Request, path: str = "/") -> JSONResponse:
    try:
        user = _user_from_request(request)
        engine = _get_engine()
        engine.check_project_access(project_id, user)
        entries = await engine.list_dir(project_id, path)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse({"path": path, "entries": entries})


@app.get("/api/sandbox/{project_id}/read")
async def api_read(project_id: str, request: Request, path: str) -> JSONResponse:
    try:
        user = _user_from_request(request)
        engine = _get_engine()
        engine.check_project_access(project_id, user)
        res = await engine.read_file(project_id, path)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(
        {
            "path": res.path,
            "content": res.content,
            "sha256": res.sha256,
            "is_binary": res.is_binary,
            "size": res.size,
        }
    )


@app.post("/api/sandbox/{project_id}/write")
async def api_write(project_id: str, request: Request) -> JSONResponse:
    try:
        user = _user_from_request(request)
        body = await _json_body(request)
        content = body.get("content")
        if not isinstance(content, str):
            raise ValueError("missing_content")
        expected = body.get("expected_sha256")
        result = await _get_engine().save_file(
            project_id,
            _require_str(body, "path"),
            content,
            user_id=user,
            expected_sha256=expected if isinstance(expected, str) and expected else None,
        )
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict())


@app.post("/api/sandbox/{project_id}/create")
async def api_create(project_id: str, request: Request) -> JSONResponse:
    try:
        user = _user_from_request(request)
        body = await _json_body(request)
        content = body.get("content")
        result = await _get_engine().create_file(
            project_id,
            _require_str(body, "path"),
            content if isinstance(content, str) else "",
            user_id=user,
        )
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict(), status_code=201)


@app.post("/api/sandbox/{project_id}/mkdir")
async def api_mkdir(project_id: str, request: Request) -> JSONResponse:
    try:
        user = _user_from_request(request)
        body = await _json_body(request)
        result = await _get_engine().create_folder(
            project_id, _require_str(body, "path"), user_id=user
        )
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict(), status_code=201 if result.created else 200)


@app.post("/api/sandbox/{project_id}/rename")
async def api_rename(project_id: str, request: Request) -> JSONResponse:
    try:
        user = _user_from_request(request)
        body = await _json_body(request)
        result = await _get_engine().rename_entry(
            project_id, _require_str(body, "src"), _require_str(body, "dst"), user_id=user
        )
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict())


@app.post("/api/sandbox/{project_id}/rm")
async def api_rm(project_id: str, request: Request) -> JSONResponse:
    try:
        user = _user_from_request(request)
        body = await _json_body(request)
        result = await _get_engine().delete_entry(
            project_id, _require_str(body, "path"), user_id=user
        )
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(result.to_dict())


# ---- WebSocket


class _WsState:
    def __init__(self, ws: WebSocket, connection_id: str, user_id: str) -> None:
        self.ws = ws
        self.connection_id = connection_id
        self.user_id = user_id
        self.session_id = ""
        self.project_id: str | None = None
        self.tasks: set[asyncio.Task] = set()

    async def send(self, type: MessageType, data: dict[str, Any]) -> None:
        await self.ws.send_json(Message.new(type, data, session_id=self.session_id).to_dict())

    def spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def require_project(self) -> str:
        if not self.project_id:
            raise ValueError("not_in_project")
        return self.project_id


def _room_for(data: dict[str, Any], st: _WsState) -> str:
    room = data.get("room")
    if isinstance(room, str) and room:
        return room
    file_id = data.get("file_id")
    if isinstance(file_id, str) and file_id:
        return file_room(file_id)
    return project_room(st.require_project())


def _opt_int(data: dict[str, Any], key: str) -> int | None:
    val = data.get(key)
    if val is None:
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


async def _join_project(engine: WorkspaceEngine, st: _WsState, project_id: str) -> None:
    engine.check_project_access(project_id, st.user_id)
    if st.project_id and st.project_id != project_id:
        await engine.presence.leave(project_room(st.project_id), st.user_id, st.connection_id)
    st.project_id = project_id
    await engine.presence.join(project_room(project_id), st.user_id, st.connection_id)
    status = await engine.request_sandbox(project_id, wait=False)
    await st.send(
        MessageType.SANDBOX_STATUS,
        {
            **status.to_dict(),
            "locks": [lk.to_dict() for lk in engine.locks.locks_for(project_id)],
        },
    )


async def _terminal_init(engine: WorkspaceEngine, st: _WsState, data: dict[str, Any]) -> None:
    try:
        await engine.open_terminal(
            st.require_project(),
            tab_id=str(data.get("tab_id") or "1"),
            user_id=st.user_id,
            connection_id=st.connection_id,
            cols=_opt_int(data, "cols"),
            rows=_opt_int(data, "rows"),
            since_seq=_opt_int(data, "since_seq"),
        )
    except Exception as exc:
        await _send_error(st, MessageType.TERMINAL_INIT.value, exc)


async def _force_sync(engine: WorkspaceEngine, st: _WsState) -> None:
    try:
        project_id = st.require_project()
        result = await engine.force_sync(project_id, user_id=st.user_id)
        await st.send(MessageType.SYNC_RESULT, {"project_id": project_id, **result.to_dict()})
    except Exception as exc:
        await _send_error(st, MessageType.FORCE_SYNC.value, exc)


async def _send_error(st: _WsState, request_type: str | None, exc: BaseException) -> None:
    if _error_status(exc) == 500:
        logger.exception("WS %s failed (connection=%s)", request_type, st.connection_id, exc_info=exc)
    payload = _error_payload(exc)
    payload["request_type"] = request_type
    try:
        await st.send(MessageType.ERROR, payload)
    except Exception as send_exc:
        logger.debug("WS error reply dropped: %s", send_exc)


async def _dispatch(
    engine: WorkspaceEngine, st: _WsState, mtype: str | None, data: dict[str, Any]
) -> None:
    cid = st.connection_id
    user = st.user_id

    if mtype == MessageType.INIT.value:
        st.session_id = str(data.get("session_id") or "")
        requested = str(data.get("user_id") or "").strip()
        if requested and auth_mode() != "header":
            st.user_id = user = requested
            engine.broadcaster.set_user(cid, user)
        await st.send(MessageType.INIT, {"connection_id": cid, "user_id": user})
        project_id = data.get("project_id")
        if isinstance(project_id, str) and project_id:
            await _join_project(engine, st, project_id)
        return

    if mtype == MessageType.JOIN_PROJECT.value:
        await _join_project(engine, st, str(data.get("project_id") or st.require_project()))
        return

    if mtype == MessageType.LEAVE_PROJECT.value:
        if st.project_id:
            await engine.presence.leave(project_room(st.project_id), user, cid)
            st.project_id = None
        return

    if mtype == MessageType.JOIN_FILE.value:
        file_id = str(data.get("file_id") or "")
        if not file_id:
            raise ValueError("missing_file_id")
        room = file_room(file_id)
        await engine.presence.join(room, user, cid, info=data.get("info") or None)
        lock = engine.locks.get(file_id)
        await st.send(
            MessageType.PRESENCE_UPDATE,
            {
                "room": room,
                "event": "snapshot",
                "user_id": user,
                "users": engine.presence.snapshot(room),
                "lock": lock.to_dict() if lock else None,
            },
        )
        return

    if mtype == MessageType.LEAVE_FILE.value:
        file_id = str(data.get("file_id") or "")
        if not file_id:
            raise ValueError("missing_file_id")
        await engine.presence.leave(file_room(file_id), user, cid)
        return

    if mtype == MessageType.TYPING.value:
        await engine.presence.set_typing(_room_for(data, st), user, cid, bool(data.get("typing")))
        return

    if mtype == MessageType.CURSOR_UPDATE.value:
        await engine.presence.update_cursor(
            _room_for(data, st), user, cid, data.get("cursor"), data.get("selection")
        )
        return

    if mtype == MessageType.CODE_CHANGE.value:
        change = data.get("change")
        if not isinstance(change, dict):
            raise ValueError("missing_change")
        await engine.presence.relay_code_change(_room_for(data, st), user, cid, change)
        return

    if mtype == MessageType.LOCK_FILE.value:
        await engine.lock_file(st.require_project(), _require_str(data, "file_id"), user)
        return

    if mtype == MessageType.UNLOCK_FILE.value:
        await engine.unlock_file(_require_str(data, "file_id"), user)
        return

    if mtype == MessageType.TERMINAL_INIT.value:
        # Provisioning can take a while; keep serving input for other tabs meanwhile.
        st.spawn(_terminal_init(engine, st, data))
        return

    if mtype == MessageType.TERMINAL_INPUT.value:
        await engine.send_input(
            _require_str(data, "session_id"), str(data.get("data") or ""), user_id=user
        )
        return

    if mtype == MessageType.TERMINAL_RESIZE.value:
        sid = _require_str(data, "session_id")
        cols, rows = _opt_int(data, "cols"), _opt_int(data, "rows")
        if cols is None or rows is None:
            raise ValueError("missing_geometry")
        session = await engine.resize(sid, cols, rows, user_id=user)
        await st.send(
            MessageType.TERMINAL_RESIZED,
            {"session_id": sid, "tab_id": session.tab_id, "cols": session.cols, "rows": session.rows},
        )
        return

    if mtype == MessageType.TERMINAL_CLOSE.value:
        await engine.close_terminal(_require_str(data, "session_id"), user_id=user)
        return

    if mtype == MessageType.FORCE_SYNC.value:
        st.spawn(_force_sync(engine, st))
        return

    if mtype == MessageType.WATCHER_STATUS.value:
        project_id = st.require_project()
        await st.send(
            MessageType.WATCHER_STATUS,
            {"project_id": project_id, **engine.get_watcher_status(project_id).to_dict()},
        )
        return

    if mtype == MessageType.PING.value:
        await st.send(MessageType.PING, {"pong": True})
        return

    raise ValueError(f"unknown_message_type: {mtype}")


async def _handle_ws(ws: WebSocket) -> None:
    try:
        user_id = _user_from_headers(ws.headers, ws.query_params)
    except PermissionError as e:
        # Pre-accept auth failures otherwise look like unexplained open/close loops.
        logger.warning("WS auth rejected: %s (client=%s)", e, getattr(ws, "client", None))
        await ws.close(code=1008)
        return

    await ws.accept()

    engine = _get_engine()
    st = _WsState(ws, str(uuid.uuid4()), user_id)
    engine.broadcaster.register(st.connection_id, ws.send_json, user_id=user_id)

    try:
        while True:
            try:
                raw = await ws.receive_text()
            except WebSocketDisconnect:
                return

            msg = parse_ws_message(raw)
            if not msg:
                continue
            mtype = msg.get("type")
            data = msg.get("data") or {}
            if not isinstance(data, dict):
                data = {}
            try:
                await _dispatch(engine, st, mtype, data)
            except WebSocketDisconnect:
                return
            except Exception as exc:
                await _send_error(st, mtype, exc)
    finally:
        for task in list(st.tasks):
            task.cancel()
        engine.terminals.detach(st.connection_id)
        await engine.presence.disconnect(st.connection_id, st.user_id)
        engine.broadcaster.unregister(st.connection_id)


@app.websocket("/")
async def websocket_root(ws: WebSocket) -> None:
    await _handle_ws(ws)


@app.websocket("/ws")
async def websocket_ws(ws: WebSocket) -> None:
    await _handle_ws(ws)


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=os.environ.get("HOST") or "0.0.0.0",
        port=int(os.environ.get("PORT") or "8000"),
        log_level="debug" if debug_enabled() else "info",
    )
