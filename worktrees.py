"""Per-task git worktree manager.

Each task gets exactly one linked worktree under
``{repo_root}/.specflux/worktrees/{task_id}`` on its own branch, so several
agents can work against one repository without sharing a checkout.  The
in-memory map is authoritative between restarts; ``reconcile`` rebuilds it
from ``git worktree list`` after a cold start.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import git_utils
from errors import AlreadyExistsError, GitError, NotAGitRepositoryError, NotFoundError
from models import Worktree

log = logging.getLogger(__name__)

DEFAULT_PRODUCT_DIR = ".specflux"
MAX_BRANCH_LENGTH = 60

_INVALID_SLUG_CHARS = re.compile(r"[^a-z0-9\- ]+")
_WHITESPACE = re.compile(r"\s+")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def slugify_title(title: str) -> str:
    text = _INVALID_SLUG_CHARS.sub("", (title or "").lower())
    text = _WHITESPACE.sub("-", text.strip())
    text = _HYPHEN_RUNS.sub("-", text)
    return text.strip("-")


def generate_branch_name(task_id: Any, title: str, max_length: int = MAX_BRANCH_LENGTH) -> str:
    """Build ``task/{task_id}-{slug}``, truncated to ``max_length`` without losing the prefix."""
    prefix = f"task/{task_id}-"
    room = max(0, max_length - len(prefix))
    slug = slugify_title(title)[:room].rstrip("-")
    return prefix + slug


class WorkspaceManager:
    def __init__(self, product_dir: str = DEFAULT_PRODUCT_DIR) -> None:
        self.product_dir = product_dir
        self._worktrees: Dict[str, Worktree] = {}
        # task id -> (lock, holders plus waiters); dropped when the count hits zero
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    # ----- queries -----

    def get_worktree_base_dir(self, repo_root: Path | str) -> Path:
        return Path(repo_root) / self.product_dir / "worktrees"

    def worktree_path(self, task_id: Any, repo_root: Path | str) -> Path:
        return self.get_worktree_base_dir(repo_root) / str(task_id)

    def generate_branch_name(self, task_id: Any, title: str) -> str:
        return generate_branch_name(task_id, title)

    def has_worktree(self, task_id: Any) -> bool:
        return str(task_id) in self._worktrees

    def get_worktree(self, task_id: Any, repo_root: Path | str | None = None) -> Optional[Worktree]:
        wt = self._worktrees.get(str(task_id))
        if wt is None:
            return None
        if repo_root is not None and _resolve(repo_root) != _resolve(wt.repo_root):
            return None
        return wt

    def list_worktrees(self) -> List[Worktree]:
        return sorted(self._worktrees.values(), key=lambda wt: wt.created_at)

    @asynccontextmanager
    async def _task_lock(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    # ----- mutations -----

    async def create_worktree(self, task_id: Any, repo_root: Path | str, branch: str) -> Worktree:
        key = str(task_id)
        repo = Path(repo_root).expanduser().resolve()
        if not repo.exists():
            raise NotFoundError(f"repository path does not exist: {repo}")
        if not (repo / ".git").exists():
            raise NotAGitRepositoryError(f"not a git repository: {repo}")

        async with self._task_lock(key):
            if key in self._worktrees:
                raise AlreadyExistsError(f"worktree already exists for task {key}")

            path = self.worktree_path(key, repo)
            if path.exists():
                if (path / ".git").is_file():
                    branch_on_disk = await git_utils.current_branch(path)
                    wt = Worktree(task_id=key, repo_root=repo, path=path, branch=branch_on_disk or branch)
                    self._worktrees[key] = wt
                    log.info("adopted existing worktree for task %s at %s", key, path)
                    return wt
                log.warning("removing invalid leftover directory %s", path)
                shutil.rmtree(path, ignore_errors=True)
                await git_utils.prune_worktrees(repo)

            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                await git_utils.add_worktree(repo, path, branch)
            except GitError:
                if path.exists():
                    shutil.rmtree(path, ignore_errors=True)
                raise

            wt = Worktree(task_id=key, repo_root=repo, path=path, branch=branch)
            self._worktrees[key] = wt
            log.info("created worktree for task %s at %s on %s", key, path, branch)
            return wt

    async def remove_worktree(self, task_id: Any, repo_root: Path | str | None = None) -> None:
        """Detach and delete the task's worktree; untracked tasks are a no-op."""
        key = str(task_id)
        if key not in self._worktrees and key not in self._locks:
            return
        async with self._task_lock(key):
            wt = self._worktrees.get(key)
            if wt is None:
                return
            repo = wt.repo_root if repo_root is None else Path(repo_root).resolve()
            try:
                await git_utils.remove_worktree(repo, wt.path, force=True)
            except GitError as exc:
                log.warning("git worktree remove failed for task %s (%s); deleting directory", key, exc)
                if wt.path.exists():
                    shutil.rmtree(wt.path, ignore_errors=True)
                try:
                    await git_utils.prune_worktrees(repo)
                except GitError as prune_exc:
                    log.warning("git worktree prune failed for %s: %s", repo, prune_exc)
            self._worktrees.pop(key, None)
            log.info("removed worktree for task %s", key)

    async def delete_branch(self, repo_root: Path | str, branch: str, force: bool = False) -> None:
        await git_utils.delete_branch(Path(repo_root), branch, force=force)
        log.info("deleted branch %s in %s", branch, repo_root)

    async def reconcile(self, repo_root: Path | str) -> List[Worktree]:
        """Adopt worktrees found under the base dir that the map does not know about."""
        repo = Path(repo_root).expanduser().resolve()
        if not (repo / ".git").exists():
            raise NotAGitRepositoryError(f"not a git repository: {repo}")
        await git_utils.prune_worktrees(repo)
        base = _resolve(self.get_worktree_base_dir(repo))
        adopted: List[Worktree] = []
        for entry in await git_utils.list_worktrees(repo):
            path = _resolve(entry.path)
            if path.parent != base:
                continue
            key = path.name
            async with self._task_lock(key):
                if key in self._worktrees:
                    continue
                wt = Worktree(task_id=key, repo_root=repo, path=path, branch=entry.branch or "")
                self._worktrees[key] = wt
                adopted.append(wt)
        if adopted:
            log.info("reconciled %d worktree(s) in %s", len(adopted), repo)
        return adopted

    async def prune_orphans(self, repo_root: Path | str) -> List[Path]:
        """Delete directories under the base dir that no tracked worktree owns."""
        repo = Path(repo_root).expanduser().resolve()
        base = self.get_worktree_base_dir(repo)
        if not base.is_dir():
            return []
        owned = {_resolve(wt.path) for wt in self._worktrees.values()}
        removed: List[Path] = []
        for child in sorted(base.iterdir()):
            if not child.is_dir() or _resolve(child) in owned:
                continue
            try:
                await git_utils.remove_worktree(repo, child, force=True)
            except GitError:
                shutil.rmtree(child, ignore_errors=True)
            removed.append(child)
        if removed:
            await git_utils.prune_worktrees(repo)
            log.info("pruned %d orphaned worktree dir(s) in %s", len(removed), repo)
        return removed


def _resolve(path: Path | str) -> Path:
    try:
        return Path(path).resolve()
    except (OSError, RuntimeError):
        return Path(path)
