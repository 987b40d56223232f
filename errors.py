"""Exception hierarchy shared by the task hub."""
from __future__ import annotations

__all__ = [
    "HubError",
    "WorkspaceError",
    "NotFoundError",
    "NotAGitRepositoryError",
    "AlreadyExistsError",
    "GitError",
    "SessionNotFoundError",
    "AgentProcessError",
    "AgentAlreadyRunningError",
    "InvalidTransitionError",
    "ProtocolError",
]


class HubError(RuntimeError):
    """Base class for every error raised by the hub."""


class WorkspaceError(HubError):
    """Raised when a task worktree cannot be created or removed."""


class NotFoundError(WorkspaceError):
    """The repository root does not exist."""


class NotAGitRepositoryError(WorkspaceError):
    """The repository root has no ``.git`` entry."""


class AlreadyExistsError(WorkspaceError):
    """A worktree is already tracked for the task."""


class GitError(WorkspaceError):
    """A git command exited non-zero or git is missing."""

    def __init__(self, message: str, args: list[str] | None = None, returncode: int | None = None) -> None:
        super().__init__(message)
        self.git_args = list(args or [])
        self.returncode = returncode


class SessionNotFoundError(HubError):
    """No session is registered under the given id."""


class AgentProcessError(HubError):
    pass


class AgentAlreadyRunningError(AgentProcessError):
    """Start was requested while a process is still live for the session."""


class InvalidTransitionError(AgentProcessError):
    """The requested action is not allowed from the current agent status."""

    def __init__(self, current: str, action: str) -> None:
        super().__init__(f"cannot {action} agent while {current}")
        self.current = current
        self.action = action


class ProtocolError(HubError):
    """A client frame could not be decoded."""
