"""Async git helpers used by the workspace manager and file poller."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from errors import GitError

log = logging.getLogger(__name__)

GIT_BIN = "git"


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass
class WorktreeEntry:
    path: Path
    head: Optional[str] = None
    branch: Optional[str] = None
    locked: bool = False
    prunable: bool = False
    bare: bool = False


async def run_git(args: Sequence[str], cwd: Path | str | None = None, check: bool = True) -> GitResult:
    """Run ``git`` without blocking the loop; raise GitError on failure when ``check``."""
    cmd = [GIT_BIN, *[str(a) for a in args]]
    log.debug("git %s (cwd=%s)", " ".join(cmd[1:]), cwd)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise GitError("git not found on PATH", list(args)) from None
    out, err = await proc.communicate()
    result = GitResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=out.decode(errors="replace"),
        stderr=err.decode(errors="replace"),
    )
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or f"git {' '.join(cmd[1:])} failed"
        raise GitError(message, list(args), result.returncode)
    return result


def parse_porcelain_list(text: str) -> List[WorktreeEntry]:
    """Parse ``git worktree list --porcelain``."""
    results: List[WorktreeEntry] = []
    block: Dict[str, List[str]] = {}
    for line in text.splitlines():
        if not line.strip():
            if block:
                results.append(_block_to_entry(block))
                block = {}
            continue
        key, *rest = line.split(" ", 1)
        block.setdefault(key, []).append(rest[0] if rest else "")
    if block:
        results.append(_block_to_entry(block))
    return results


def _block_to_entry(block: Dict[str, List[str]]) -> WorktreeEntry:
    branch = None
    if "branch" in block:
        ref = block["branch"][0]
        if ref and ref != "(detached)":
            branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
    return WorktreeEntry(
        path=Path(block.get("worktree", [""])[0]),
        head=block.get("HEAD", [None])[0] or None,
        branch=branch,
        locked="locked" in block,
        prunable="prunable" in block,
        bare="bare" in block,
    )


async def list_worktrees(repo_root: Path) -> List[WorktreeEntry]:
    cp = await run_git(["-C", str(repo_root), "worktree", "list", "--porcelain"])
    return parse_porcelain_list(cp.stdout)


async def branch_exists(repo_root: Path, branch: str) -> bool:
    cp = await run_git(
        ["-C", str(repo_root), "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
        check=False,
    )
    return cp.returncode == 0


async def add_worktree(repo_root: Path, new_path: Path, branch: str, base_ref: Optional[str] = None) -> None:
    """Add a worktree at ``new_path`` on ``branch``, creating the branch when missing."""
    args = ["-C", str(repo_root), "worktree", "add"]
    if await branch_exists(repo_root, branch):
        args += [str(new_path), branch]
    else:
        args += ["-b", branch, str(new_path)]
        if base_ref:
            args.append(base_ref)
    await run_git(args)


async def remove_worktree(repo_root: Path, wt_path: Path, force: bool = False) -> None:
    args = ["-C", str(repo_root), "worktree", "remove"]
    if force:
        args.append("--force")
    args.append(str(wt_path))
    await run_git(args)


async def prune_worktrees(repo_root: Path) -> None:
    await run_git(["-C", str(repo_root), "worktree", "prune"])


async def current_branch(worktree_path: Path) -> Optional[str]:
    cp = await run_git(["-C", str(worktree_path), "branch", "--show-current"], check=False)
    name = cp.stdout.strip()
    return name if cp.returncode == 0 and name else None


async def delete_branch(repo_root: Path, branch: str, force: bool = False) -> None:
    await run_git(["-C", str(repo_root), "branch", "-D" if force else "-d", branch])


def parse_status_porcelain(text: str) -> Dict[str, str]:
    """Map paths from ``git status --porcelain`` to created/modified/deleted."""
    changes: Dict[str, str] = {}
    for line in text.splitlines():
        if len(line) < 4:
            continue
        code = line[:2]
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip().strip('"')
        if not path:
            continue
        if code == "??" or "A" in code:
            changes[path] = "created"
        elif "D" in code:
            changes[path] = "deleted"
        else:
            changes[path] = "modified"
    return changes


async def status_porcelain(worktree_path: Path) -> Dict[str, str]:
    cp = await run_git(["-C", str(worktree_path), "status", "--porcelain", "--untracked-files=all"])
    return parse_status_porcelain(cp.stdout)
