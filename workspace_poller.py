from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple

import git_utils
from errors import GitError

log = logging.getLogger(__name__)


def diff_snapshots(before: Dict[str, str], after: Dict[str, str]) -> list[Tuple[str, str]]:
    """Compare two ``git status`` snapshots and return ``(action, path)`` pairs.

    A path that appears or changes its state is reported with its new state.
    A path that drops out of the status was either committed or reverted,
    which is reported as ``modified`` unless the file is gone.
    """
    changes: list[Tuple[str, str]] = []
    for path, state in after.items():
        if before.get(path) != state:
            changes.append((state, path))
    for path, state in before.items():
        if path not in after and state != "deleted":
            changes.append(("modified", path))
    return changes


class WorkspacePoller:
    """
    Light periodic poll of a worktree's ``git status``.
    Yields (action, file_path) pairs whenever the snapshot changes.
    """

    def __init__(self, worktree_path: Path | str, poll_interval: float = 2.0) -> None:
        self.worktree_path = Path(worktree_path)
        self.poll_interval = poll_interval
        self._stop = asyncio.Event()
        self._snapshot: Optional[Dict[str, str]] = None

    def stop(self) -> None:
        self._stop.set()

    async def snapshot(self) -> Dict[str, str]:
        return await git_utils.status_porcelain(self.worktree_path)

    async def events(self) -> AsyncIterator[tuple[str, str]]:
        while not self._stop.is_set():
            try:
                current = await self.snapshot()
            except GitError as exc:
                log.debug("status poll failed for %s: %s", self.worktree_path, exc)
                current = None
            if current is not None:
                if self._snapshot is not None:
                    for action, path in diff_snapshots(self._snapshot, current):
                        yield action, path
                self._snapshot = current
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue


class FileChangeTracker:
    """Suppress duplicate reports of the same (path, action) coming from several sources."""

    def __init__(self) -> None:
        self._last: Dict[str, str] = {}

    def should_report(self, action: str, path: str) -> bool:
        key = path[2:] if path.startswith("./") else path
        if self._last.get(key) == action:
            return False
        self._last[key] = action
        return True

    def reset(self) -> None:
        self._last.clear()
