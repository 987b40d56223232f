#!/usr/bin/env python3
"""Core orchestration logic for the task hub.

The hub ties the workspace manager, the session registry and one agent
process controller per session together, and fans controller events out
to every transport attached to the session.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from agent_process import AgentProcessController
from errors import AgentAlreadyRunningError, AlreadyExistsError, NotFoundError, WorkspaceError
from hub_config import HubSettings
from models import AgentStatus, ContextType, Session, Worktree
from session_protocol import (
    FileChangeMessage,
    ServerMessage,
    StatusMessage,
    encode_server_message,
)
from sessions import SessionRegistry
from workspace_poller import FileChangeTracker, WorkspacePoller
from worktrees import WorkspaceManager

log = logging.getLogger(__name__)

TASK_PROMPT_TEMPLATE = (
    "# Task Assignment\n\n"
    "You are working on Task #{context_id}: {title}\n\n"
    "Your working directory is an isolated git worktree on branch `{branch}`.\n"
    "Commit small, testable changes on this branch only.\n\n"
    "1. Run `git status` to check repo state\n"
    "2. Read the project notes (CLAUDE.md, README) for context\n"
    "3. Implement the task and run the tests if present\n"
    "4. Report progress as `Progress: N%` lines\n"
    "5. When finished, summarise what changed and suggest next steps\n"
)

EPIC_PROMPT_TEMPLATE = (
    "# Epic Review\n\n"
    "You are reviewing Epic #{context_id}: {title}\n\n"
    "Review the epic's tasks and the repository, then report:\n"
    "- [ ] Progress against the epic's goal\n"
    "- [ ] Blockers and risks\n"
    "- [ ] Missing tasks (if any)\n"
)

PROJECT_PROMPT_TEMPLATE = (
    "# Project Overview\n\n"
    "You are assisting with Project #{context_id}: {title}\n\n"
    "1. **Summary** - Describe the project structure and stack\n"
    "2. **Status** - Summarise recent work from the git history\n"
    "3. **Next steps** - Suggest what to work on next\n"
    "4. **Questions** - Answer questions about the project structure\n"
)

PROMPT_TEMPLATES = {
    ContextType.TASK: TASK_PROMPT_TEMPLATE,
    ContextType.EPIC: EPIC_PROMPT_TEMPLATE,
    ContextType.PROJECT: PROJECT_PROMPT_TEMPLATE,
}


class SessionChannel:
    """FIFO fan-out of one session's server messages to its attached transports."""

    def __init__(self, session_id: str, queue_size: int = 1000) -> None:
        self.session_id = session_id
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self._sequence = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _stamp(self, message: ServerMessage) -> Dict[str, Any]:
        self._sequence += 1
        return encode_server_message(message, self.session_id, self._sequence)

    def publish(self, message: ServerMessage) -> None:
        dead: List[asyncio.Queue] = []
        event = self._stamp(message)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead.append(queue)
        for queue in dead:
            log.warning("subscriber of %s fell behind; disconnecting it", self.session_id)
            self._subscribers.discard(queue)
            _drain(queue)
            queue.put_nowait(None)

    def send_to(self, queue: asyncio.Queue, message: ServerMessage) -> None:
        if queue not in self._subscribers:
            return
        try:
            queue.put_nowait(self._stamp(message))
        except asyncio.QueueFull:
            self._subscribers.discard(queue)
            _drain(queue)
            queue.put_nowait(None)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def close(self) -> None:
        """Tell every attached transport to hang up."""
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                _drain(queue)
                queue.put_nowait(None)
        self._subscribers.clear()


def _drain(queue: asyncio.Queue) -> None:
    while True:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            return


class TaskHub:
    def __init__(
        self,
        settings: Optional[HubSettings] = None,
        workspace: Optional[WorkspaceManager] = None,
        registry: Optional[SessionRegistry] = None,
    ) -> None:
        self.settings = settings or HubSettings()
        self.workspace = workspace or WorkspaceManager(product_dir=self.settings.product_dir)
        self.registry = registry or SessionRegistry()
        self.registry.add_close_hook(self._on_session_closed)

        self.controllers: Dict[str, AgentProcessController] = {}
        self.channels: Dict[str, SessionChannel] = {}
        self._trackers: Dict[str, FileChangeTracker] = {}
        self._pollers: Dict[str, Tuple[WorkspacePoller, asyncio.Task]] = {}
        self._start_locks: Dict[str, asyncio.Lock] = {}
        self._reconciled: Set[Path] = set()
        self._stopping = False

    # ----- lifecycle -----

    async def start(self) -> None:
        for repo in self.settings.repositories:
            await self.reconcile_repository(repo)

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        for session_id in list(self._pollers):
            self._stop_poller(session_id)
        await asyncio.gather(
            *(controller.stop() for controller in self.controllers.values()),
            return_exceptions=True,
        )
        for channel in self.channels.values():
            channel.close()

    async def reconcile_repository(self, repo_path: Path | str) -> List[Worktree]:
        repo = Path(repo_path).expanduser().resolve()
        if repo in self._reconciled:
            return []
        try:
            adopted = await self.workspace.reconcile(repo)
        except WorkspaceError as exc:
            log.warning("cannot reconcile worktrees in %s: %s", repo, exc)
            return []
        self._reconciled.add(repo)
        return adopted

    # ----- sessions -----

    async def open_session(
        self,
        context_type: ContextType | str,
        context_id: Any,
        context_title: str,
        repo_path: Optional[str] = None,
    ) -> Session:
        session = self.registry.open_session(context_type, context_id, context_title, repo_path)
        if session.repo_path:
            await self.reconcile_repository(session.repo_path)
        self.channel(session.session_id)
        return session

    async def close_session(self, session_id: str) -> None:
        await self.registry.close_session(session_id)

    def switch_active(self, session_id: str) -> Session:
        return self.registry.switch_active(session_id)

    def list_sessions(self) -> List[Session]:
        return self.registry.list_sessions()

    def get_session(self, session_id: str) -> Session:
        return self.registry.require(session_id)

    def channel(self, session_id: str) -> SessionChannel:
        channel = self.channels.get(session_id)
        if channel is None:
            channel = SessionChannel(session_id, queue_size=self.settings.subscriber_queue_size)
            self.channels[session_id] = channel
        return channel

    def controller(self, session_id: str) -> AgentProcessController:
        self.registry.require(session_id)
        controller = self.controllers.get(session_id)
        if controller is None:
            controller = AgentProcessController(
                session_id,
                on_event=lambda message, sid=session_id: self._on_agent_event(sid, message),
                on_status=lambda status, sid=session_id, **details: self._on_agent_status(sid, status, **details),
                stop_grace_seconds=self.settings.stop_grace_seconds,
                cols=self.settings.default_cols,
                rows=self.settings.default_rows,
            )
            self.controllers[session_id] = controller
        return controller

    async def _on_session_closed(self, session: Session) -> None:
        session_id = session.session_id
        self._stop_poller(session_id)
        controller = self.controllers.pop(session_id, None)
        if controller is not None:
            await controller.stop()
        channel = self.channels.pop(session_id, None)
        if channel is not None:
            channel.close()
        self._trackers.pop(session_id, None)
        self._start_locks.pop(session_id, None)
        if session.is_task:
            await self.workspace.remove_worktree(session.context_id, session.repo_path)

    # ----- agent control -----

    async def ensure_worktree(self, session: Session) -> Worktree:
        if not session.repo_path:
            raise NotFoundError(f"session {session.session_id} has no repository path")
        existing = self.workspace.get_worktree(session.context_id, session.repo_path)
        if existing is not None:
            return existing
        branch = self.workspace.generate_branch_name(session.context_id, session.context_title)
        try:
            return await self.workspace.create_worktree(session.context_id, session.repo_path, branch)
        except AlreadyExistsError:
            existing = self.workspace.get_worktree(session.context_id, session.repo_path)
            if existing is None:
                raise
            return existing

    def build_prompt(self, session: Session, branch: Optional[str] = None) -> str:
        template = PROMPT_TEMPLATES[session.context_type]
        return template.format(
            context_id=session.context_id,
            title=session.context_title or "(untitled)",
            branch=branch or "",
        )

    def agent_env(self, session: Session) -> Dict[str, str]:
        env = {
            "SPECFLUX_CONTEXT_TYPE": session.context_type.value,
            "SPECFLUX_CONTEXT_ID": session.context_id,
            "SPECFLUX_SESSION_ID": session.session_id,
        }
        if session.is_task:
            env["SPECFLUX_TASK_ID"] = session.context_id
        return env

    async def start_agent(
        self,
        session_id: str,
        command: Optional[Sequence[str]] = None,
        prompt: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> Session:
        """Start the session's agent, creating the task worktree first when needed."""
        session = self.registry.require(session_id)
        controller = self.controller(session_id)
        lock = self._start_locks.setdefault(session_id, asyncio.Lock())
        if controller.is_live or lock.locked():
            raise AgentAlreadyRunningError(f"agent already running for {session_id}")
        async with lock:
            return await self._start_agent_locked(session, controller, command, prompt, env, cols, rows)

    async def _start_agent_locked(
        self,
        session: Session,
        controller: AgentProcessController,
        command: Optional[Sequence[str]],
        prompt: Optional[str],
        env: Optional[Dict[str, str]],
        cols: Optional[int],
        rows: Optional[int],
    ) -> Session:
        session_id = session.session_id
        worktree: Optional[Worktree] = None
        if session.is_task:
            try:
                worktree = await self.ensure_worktree(session)
            except WorkspaceError as exc:
                controller.mark_failed(str(exc))
                raise
            cwd = str(worktree.path)
        else:
            cwd = session.repo_path or os.getcwd()

        if command is None:
            args = self.settings.agent_args
            if args is None:
                args = [prompt or self.build_prompt(session, worktree.branch if worktree else None)]
            command = [self.settings.agent_command, *args]

        child_env = self.agent_env(session)
        child_env.update(env or {})
        self._trackers[session_id] = FileChangeTracker()
        await controller.start(list(command), cwd=cwd, env=child_env, cols=cols, rows=rows)
        if controller.status is AgentStatus.RUNNING and worktree is not None:
            self._start_poller(session_id, worktree.path)
        return session

    async def pause_agent(self, session_id: str) -> Session:
        await self.controller(session_id).pause()
        return self.registry.require(session_id)

    async def resume_agent(self, session_id: str) -> Session:
        await self.controller(session_id).resume()
        return self.registry.require(session_id)

    async def stop_agent(self, session_id: str) -> Session:
        session = self.registry.require(session_id)
        controller = self.controllers.get(session_id)
        if controller is not None:
            await controller.stop()
        return session

    def send_input(self, session_id: str, data: str) -> bool:
        controller = self.controllers.get(session_id)
        if controller is None:
            return False
        return controller.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        self.controller(session_id).resize(cols, rows)

    # ----- transports -----

    def attach(self, session_id: str) -> asyncio.Queue:
        """Subscribe a transport; it receives a fresh status and then live events."""
        session = self.registry.require(session_id)
        channel = self.channel(session_id)
        queue = channel.subscribe()
        self.registry.update_status(session_id, connected=True)
        status = session.agent_status
        channel.send_to(
            queue,
            StatusMessage(running=status is AgentStatus.RUNNING, status=status.value, error=session.error),
        )
        return queue

    def detach(self, session_id: str, queue: asyncio.Queue) -> None:
        channel = self.channels.get(session_id)
        if channel is None:
            return
        channel.unsubscribe(queue)
        if channel.subscriber_count == 0:
            self.registry.update_status(session_id, connected=False)

    # ----- controller observers -----

    def _on_agent_event(self, session_id: str, message: ServerMessage) -> None:
        if isinstance(message, FileChangeMessage):
            tracker = self._trackers.setdefault(session_id, FileChangeTracker())
            if not tracker.should_report(message.action, message.file_path):
                return
        channel = self.channels.get(session_id)
        if channel is not None:
            channel.publish(message)

    def _on_agent_status(
        self,
        session_id: str,
        status: AgentStatus,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        self.registry.update_status(session_id, agent_status=status, exit_code=exit_code, error=error)
        if not status.is_live:
            self._stop_poller(session_id)

    # ----- workspace polling -----

    def _start_poller(self, session_id: str, path: Path) -> None:
        if self.settings.file_poll_interval <= 0 or session_id in self._pollers:
            return
        poller = WorkspacePoller(path, poll_interval=self.settings.file_poll_interval)
        task = asyncio.create_task(self._pump_file_changes(session_id, poller), name=f"poll-{session_id}")
        self._pollers[session_id] = (poller, task)

    def _stop_poller(self, session_id: str) -> None:
        entry = self._pollers.pop(session_id, None)
        if entry is None:
            return
        poller, task = entry
        poller.stop()
        task.cancel()

    async def _pump_file_changes(self, session_id: str, poller: WorkspacePoller) -> None:
        try:
            async for action, path in poller.events():
                self._on_agent_event(session_id, FileChangeMessage(action=action, file_path=path))
        except asyncio.CancelledError:
            return


def install_signal_handlers(loop: asyncio.AbstractEventLoop, set_event: asyncio.Event) -> None:
    def _handler(*_: Any) -> None:
        set_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            pass
