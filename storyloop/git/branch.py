"""Git branch operations."""

from pathlib import Path

from storyloop.git.runner import GitResult, run_git


def get_current_branch(worktree: Path) -> str | None:
    """Get the current branch name, or None if detached HEAD."""
    result = run_git(["branch", "--show-current"], worktree)
    if result.success:
        return result.stdout.strip() or None
    return None


def branch_exists(repo: Path, branch: str) -> bool:
    """Check if a local branch exists."""
    result = run_git(["show-ref", "--verify", f"refs/heads/{branch}"], repo)
    return result.success


def ref_exists(repo: Path, ref: str) -> bool:
    """Check if any ref (e.g. "origin/dev") resolves to a commit."""
    result = run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], repo)
    return result.success


def create_branch(repo: Path, branch: str, start_point: str) -> GitResult:
    """Create branch at start_point and check it out."""
    return run_git(["checkout", "-b", branch, start_point], repo)
