"""
GitHub integration helpers for the review stage.

Wraps the gh CLI. Every helper returns a status tuple instead of raising.
"""

import json
import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30


def _run_gh(args: list[str], repo_path: Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["gh"] + args,
        capture_output=True,
        text=True,
        cwd=str(repo_path),
        timeout=GH_TIMEOUT_SECONDS,
    )


def _view_pr(repo_path: Path, branch: str, fields: str) -> dict | None:
    """JSON view of the PR for branch, or None when there is none."""
    try:
        result = _run_gh(["pr", "view", branch, "--json", fields], repo_path)
    except (subprocess.TimeoutExpired, subprocess.SubprocessError, FileNotFoundError) as e:
        logger.warning(f"[GH] pr view {branch} failed: {e}")
        return None

    if result.returncode != 0:
        return None
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        logger.warning(f"[GH] Invalid JSON from gh pr view {branch}")
        return None


def find_pr_url(repo_path: Path, branch: str) -> str | None:
    """URL of the PR already open for branch, if any."""
    data = _view_pr(repo_path, branch, "url,state")
    if not data or data.get("state", "").upper() == "CLOSED":
        return None
    return data.get("url") or None


def create_pr(
    repo_path: Path,
    branch: str,
    base_branch: str,
    title: str,
    body: str,
) -> tuple[bool, str]:
    """
    Open a PR for branch, or return the one that already exists.

    The branch must already be pushed.

    Returns: (success, url_or_error)
    """
    existing = find_pr_url(repo_path, branch)
    if existing:
        logger.info(f"[GH] PR already exists for {branch}: {existing}")
        return True, existing

    try:
        result = _run_gh(
            ["pr", "create",
             "--base", base_branch,
             "--head", branch,
             "--title", title,
             "--body", body],
            repo_path,
        )
    except subprocess.TimeoutExpired:
        return False, "GitHub operation timed out"
    except (subprocess.SubprocessError, FileNotFoundError) as e:
        return False, f"GitHub operation failed: {e}"

    if result.returncode != 0:
        return False, f"Failed to create PR: {result.stderr.strip()}"

    return True, result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""


def merge_pr(repo_path: Path, branch: str) -> tuple[bool, str]:
    """
    Squash-merge the PR for branch and delete the branch.

    Returns: (success, message)
    """
    try:
        result = _run_gh(["pr", "merge", branch, "--squash", "--delete-branch"], repo_path)
    except subprocess.TimeoutExpired:
        return False, "Merge operation timed out"
    except (subprocess.SubprocessError, FileNotFoundError) as e:
        return False, f"Merge operation failed: {e}"

    if result.returncode != 0:
        return False, f"Failed to merge PR: {result.stderr.strip()}"

    return True, result.stdout.strip()


def get_merge_commit(repo_path: Path, branch: str) -> str | None:
    """SHA of the merge commit of the PR for branch, if merged."""
    data = _view_pr(repo_path, branch, "mergeCommit")
    if not data:
        return None
    merge_commit = data.get("mergeCommit") or {}
    return merge_commit.get("oid") or None


def check_gh_available() -> tuple[bool, str]:
    """Check gh CLI is installed and authenticated.

    Returns: (ok, error_message)
    """
    try:
        result = subprocess.run(
            ["gh", "auth", "status"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except FileNotFoundError:
        return False, "GitHub CLI (gh) not found\n  Install: https://cli.github.com/"
    except subprocess.TimeoutExpired:
        return False, "GitHub CLI timed out"

    if result.returncode != 0:
        return False, "GitHub CLI not authenticated\n  Run: gh auth login"
    return True, ""
