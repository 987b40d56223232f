"""Data records shared by the workspace manager, registry and hub."""
from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class ContextType(str, Enum):
    TASK = "task"
    EPIC = "epic"
    PROJECT = "project"

    @classmethod
    def parse(cls, value: "ContextType | str") -> "ContextType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown context type: {value!r}") from None


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_live(self) -> bool:
        return self in (AgentStatus.RUNNING, AgentStatus.PAUSED)


def make_session_id(context_type: ContextType | str, context_id: Any) -> str:
    """Session ids are ``{contextType}-{contextId}``, stable across reopenings."""
    return f"{ContextType.parse(context_type).value}-{context_id}"


@dataclass
class Worktree:
    task_id: str
    repo_root: Path
    path: Path
    branch: str
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "repoRoot": str(self.repo_root),
            "path": str(self.path),
            "branch": self.branch,
            "createdAt": self.created_at,
        }


@dataclass
class Session:
    session_id: str
    context_type: ContextType
    context_id: str
    context_title: str
    agent_status: AgentStatus = AgentStatus.IDLE
    connected: bool = False
    repo_path: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_task(self) -> bool:
        return self.context_type is ContextType.TASK

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "sessionId": data["session_id"],
            "contextType": self.context_type.value,
            "contextId": data["context_id"],
            "contextTitle": data["context_title"],
            "agentStatus": self.agent_status.value,
            "connected": data["connected"],
            "repoPath": data["repo_path"],
            "exitCode": data["exit_code"],
            "error": data["error"],
            "createdAt": data["created_at"],
            "updatedAt": data["updated_at"],
        }
