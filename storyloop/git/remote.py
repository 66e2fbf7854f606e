"""Git remote operations."""

from pathlib import Path

from storyloop.git.runner import NETWORK_TIMEOUT, GitResult, run_git


def has_remote(repo: Path, remote: str = "origin") -> bool:
    """Check if the named remote is configured."""
    result = run_git(["remote"], repo)
    return remote in result.stdout.split()


def fetch(repo: Path, remote: str = "origin", branch: str | None = None) -> GitResult:
    """Fetch from remote."""
    args = ["fetch", remote]
    if branch:
        args.append(branch)
    return run_git(args, repo, timeout=NETWORK_TIMEOUT)


def push_set_upstream(worktree: Path, remote: str, branch: str) -> GitResult:
    """Push and set upstream tracking."""
    return run_git(["push", "-u", remote, branch], worktree, timeout=NETWORK_TIMEOUT)


def checkout_branch(repo: Path, branch: str) -> GitResult:
    """Checkout an existing branch."""
    return run_git(["checkout", branch], repo)
