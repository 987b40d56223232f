#!/usr/bin/env python3
"""Websocket and REST front end for the task hub."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import WSMsgType, web

from errors import (
    AgentAlreadyRunningError,
    AlreadyExistsError,
    InvalidTransitionError,
    NotAGitRepositoryError,
    NotFoundError,
    ProtocolError,
    SessionNotFoundError,
    WorkspaceError,
)
from hub_config import build_argparser, settings_from_args
from logging_config import setup_logging
from session_protocol import InputMessage, ResizeMessage, decode_client_message, jdump
from task_hub_core import TaskHub, install_signal_handlers
from worktrees import generate_branch_name

log = logging.getLogger(__name__)

WS_HEARTBEAT = 15.0

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"ok": False, "error": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except (SessionNotFoundError, NotFoundError) as exc:
        return _error(str(exc), 404)
    except (AlreadyExistsError, AgentAlreadyRunningError, InvalidTransitionError) as exc:
        return _error(str(exc), 409)
    except (NotAGitRepositoryError, ProtocolError, ValueError) as exc:
        return _error(str(exc), 400)
    except WorkspaceError as exc:
        log.error("workspace operation failed for %s: %s", request.path, exc)
        return _error(str(exc), 500)


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON body: {exc.msg}") from None
    if not isinstance(payload, dict):
        raise ValueError("request body must be a JSON object")
    return payload


def _optional_int(payload: Dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be an integer") from None


# ---------- websocket ----------


async def _pump_to_socket(ws: web.WebSocketResponse, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        if event is None:
            await ws.close()
            return
        try:
            await ws.send_str(jdump(event))
        except ConnectionResetError:
            return


async def _serve_session_socket(request: web.Request, session_id: str) -> web.StreamResponse:
    hub: TaskHub = request.app["hub"]
    if hub.registry.get(session_id) is None:
        return _error(f"no session '{session_id}'", 404)

    ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT)
    await ws.prepare(request)
    queue = hub.attach(session_id)
    sender = asyncio.create_task(_pump_to_socket(ws, queue), name=f"ws-{session_id}")
    log.info("client attached to %s", session_id)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = decode_client_message(msg.data)
                except ProtocolError as exc:
                    log.debug("ignoring frame on %s: %s", session_id, exc)
                    continue
                try:
                    if isinstance(frame, InputMessage):
                        hub.send_input(session_id, frame.data)
                    elif isinstance(frame, ResizeMessage):
                        hub.resize(session_id, frame.cols, frame.rows)
                except SessionNotFoundError:
                    break
            elif msg.type == WSMsgType.ERROR:
                log.debug("websocket error on %s: %s", session_id, ws.exception())
                break
    finally:
        sender.cancel()
        hub.detach(session_id, queue)
        log.info("client detached from %s", session_id)

    return ws


async def session_socket(request: web.Request) -> web.StreamResponse:
    return await _serve_session_socket(request, request.match_info["session_id"])


async def terminal_socket(request: web.Request) -> web.StreamResponse:
    return await _serve_session_socket(request, f"task-{request.match_info['task_id']}")


# ---------- REST ----------


async def health(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    return web.json_response({"ok": True, "sessions": len(hub.registry)})


async def list_sessions(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    return web.json_response(
        {
            "sessions": [s.to_dict() for s in hub.list_sessions()],
            "active": hub.registry.active_session_id,
        }
    )


async def open_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    payload = await _json_body(request)
    context_type = str(payload.get("contextType") or "").strip()
    context_id = payload.get("contextId")
    if not context_type or context_id in (None, ""):
        return _error("missing 'contextType' or 'contextId'", 400)
    session = await hub.open_session(
        context_type,
        context_id,
        str(payload.get("contextTitle") or ""),
        repo_path=payload.get("repoPath") or None,
    )
    return web.json_response({"ok": True, "session": session.to_dict()})


async def get_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    session = hub.get_session(request.match_info["session_id"])
    return web.json_response({"ok": True, "session": session.to_dict()})


async def close_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    await hub.close_session(request.match_info["session_id"])
    return web.json_response({"ok": True})


async def start_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    payload = await _json_body(request)
    command = payload.get("command")
    if command is not None and (
        not isinstance(command, list) or not all(isinstance(part, str) for part in command)
    ):
        return _error("'command' must be a list of strings", 400)
    session = await hub.start_agent(
        request.match_info["session_id"],
        command=command,
        prompt=payload.get("prompt") or None,
        cols=_optional_int(payload, "cols"),
        rows=_optional_int(payload, "rows"),
    )
    return web.json_response({"ok": True, "session": session.to_dict()})


async def pause_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    session = await hub.pause_agent(request.match_info["session_id"])
    return web.json_response({"ok": True, "session": session.to_dict()})


async def resume_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    session = await hub.resume_agent(request.match_info["session_id"])
    return web.json_response({"ok": True, "session": session.to_dict()})


async def stop_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    session = await hub.stop_agent(request.match_info["session_id"])
    return web.json_response({"ok": True, "session": session.to_dict()})


async def focus_session(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    session = hub.switch_active(request.match_info["session_id"])
    return web.json_response({"ok": True, "active": session.session_id})


async def list_worktrees(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    return web.json_response({"worktrees": [wt.to_dict() for wt in hub.workspace.list_worktrees()]})


async def get_worktree(request: web.Request) -> web.Response:
    hub: TaskHub = request.app["hub"]
    task_id = request.match_info["task_id"]
    worktree = hub.workspace.get_worktree(task_id, request.query.get("repo") or None)
    if worktree is None:
        return _error(f"no worktree for task {task_id}", 404)
    return web.json_response({"ok": True, "worktree": worktree.to_dict()})


async def branch_name(request: web.Request) -> web.Response:
    payload = await _json_body(request)
    task_id = payload.get("taskId")
    if task_id in (None, ""):
        return _error("missing 'taskId'", 400)
    return web.json_response({"branch": generate_branch_name(task_id, str(payload.get("title") or ""))})


def build_app(hub: TaskHub) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app["hub"] = hub
    app.add_routes(
        [
            web.get("/api/health", health),
            web.get("/api/sessions", list_sessions),
            web.post("/api/sessions", open_session),
            web.get("/api/sessions/{session_id}", get_session),
            web.delete("/api/sessions/{session_id}", close_session),
            web.post("/api/sessions/{session_id}/start", start_session),
            web.post("/api/sessions/{session_id}/pause", pause_session),
            web.post("/api/sessions/{session_id}/resume", resume_session),
            web.post("/api/sessions/{session_id}/stop", stop_session),
            web.post("/api/sessions/{session_id}/focus", focus_session),
            web.get("/api/worktrees", list_worktrees),
            web.get("/api/worktrees/{task_id}", get_worktree),
            web.post("/api/branch-name", branch_name),
            web.get("/ws/sessions/{session_id}", session_socket),
            web.get("/ws/terminal/{task_id}", terminal_socket),
        ]
    )
    return app


# ---------- CLI ----------


async def async_main() -> None:
    parser = build_argparser()
    args = parser.parse_args()
    settings = settings_from_args(args)
    setup_logging(settings.log_level, log_to_file=settings.log_to_file, json_format=settings.json_logs)

    hub = TaskHub(settings)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    install_signal_handlers(loop, stop_event)

    await hub.start()

    app = build_app(hub)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.host, settings.port)
    await site.start()

    log.info("task hub listening on http://%s:%d/", settings.host, settings.port)

    await stop_event.wait()
    await hub.stop()
    await runner.cleanup()


def main() -> None:
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
