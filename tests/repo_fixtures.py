"""Throwaway git repositories for the test suite."""
import shutil
import subprocess
import tempfile
from pathlib import Path


def make_git_repo() -> Path:
    """Create a repository with one commit containing README.md and src/app.py."""
    root = Path(tempfile.mkdtemp(prefix="hub-repo-")).resolve()
    subprocess.run(["git", "init", "-q", "-b", "main"], cwd=root, check=True)
    subprocess.run(["git", "config", "user.name", "Test User"], cwd=root, check=True)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=root, check=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=root, check=True)
    (root / "README.md").write_text("# Test Repository\n")
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("print('hi')\n")
    subprocess.run(["git", "add", "README.md", "src/app.py"], cwd=root, check=True)
    subprocess.run(["git", "commit", "-q", "-m", "Initial commit"], cwd=root, check=True)
    return root


def git_branches(root: Path) -> list[str]:
    cp = subprocess.run(
        ["git", "branch", "--format=%(refname:short)"],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return [line.strip() for line in cp.stdout.splitlines() if line.strip()]


def remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
