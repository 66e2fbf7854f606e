"""Git diff operations."""

from pathlib import Path

from storyloop.git.runner import run_git


def get_diff_names(worktree: Path, ref_range: str) -> list[str]:
    """Names of files changed in a ref range (e.g. "origin/dev...HEAD").

    Returns [] on git failure.
    """
    result = run_git(["diff", "--name-only", ref_range], worktree)
    if not result.success:
        return []
    return [f.strip() for f in result.stdout.splitlines() if f.strip()]
