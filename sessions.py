"""Session registry: one entry per (context type, context id)."""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from errors import SessionNotFoundError
from models import AgentStatus, ContextType, Session, make_session_id

log = logging.getLogger(__name__)

CloseHook = Callable[[Session], Awaitable[None]]


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._close_hooks: List[CloseHook] = []
        self.active_session_id: Optional[str] = None

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def add_close_hook(self, hook: CloseHook) -> None:
        self._close_hooks.append(hook)

    def open_session(
        self,
        context_type: ContextType | str,
        context_id: object,
        context_title: str,
        repo_path: Optional[str] = None,
    ) -> Session:
        """Return the session for the context, creating it in ``idle`` the first time."""
        ctype = ContextType.parse(context_type)
        session_id = make_session_id(ctype, context_id)
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing
        session = Session(
            session_id=session_id,
            context_type=ctype,
            context_id=str(context_id),
            context_title=context_title or "",
            repo_path=str(repo_path) if repo_path else None,
        )
        self._sessions[session_id] = session
        log.info("opened session %s", session_id)
        return session

    async def close_session(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        if self.active_session_id == session_id:
            self.active_session_id = None
        log.info("closing session %s", session_id)
        for hook in list(self._close_hooks):
            await hook(session)
        return session

    def switch_active(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"no session '{session_id}'")
        self.active_session_id = session_id
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"no session '{session_id}'")
        return session

    def list_sessions(self) -> List[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.created_at)

    def update_status(
        self,
        session_id: str,
        agent_status: Optional[AgentStatus | str] = None,
        connected: Optional[bool] = None,
        **extra: object,
    ) -> Optional[Session]:
        """Apply a partial update; the last writer wins. Unknown ids are ignored."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if agent_status is not None:
            session.agent_status = AgentStatus(agent_status)
        if connected is not None:
            session.connected = bool(connected)
        for key in ("exit_code", "error", "context_title", "repo_path"):
            if key in extra:
                setattr(session, key, extra[key])
        session.updated_at = time.time()
        return session
