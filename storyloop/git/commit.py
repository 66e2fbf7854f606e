"""Git commit operations."""

from pathlib import Path

from storyloop.git.runner import GitResult, run_git


def stage_all(worktree: Path) -> GitResult:
    """Stage all changes (new, modified, deleted)."""
    return run_git(["add", "-A"], worktree)


def commit(worktree: Path, message: str) -> GitResult:
    """Commit staged changes with message."""
    return run_git(["commit", "-m", message], worktree)
