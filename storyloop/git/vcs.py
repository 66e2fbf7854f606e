"""Version control collaborator.

VersionControl is the narrow command interface the orchestrator drives.
GitVcs implements it with the git helpers in this package and the gh CLI
helpers in storyloop.lib.github. Operations report failure through
VcsResult rather than raising.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from storyloop import git
from storyloop.lib import github

logger = logging.getLogger(__name__)


@dataclass
class VcsResult:
    success: bool
    output: str = ""  # Review URL for create_review, merge commit for merge_review
    error: str | None = None


def _from_git(result: git.GitResult) -> VcsResult:
    if result.success:
        return VcsResult(True, result.stdout.strip())
    return VcsResult(False, result.stdout.strip(), result.error)


class VersionControl(ABC):

    @abstractmethod
    def create_branch(self, name: str, base: str) -> VcsResult:
        """Create name from the tip of base and check it out."""

    @abstractmethod
    def checkout_branch(self, name: str) -> VcsResult:
        pass

    @abstractmethod
    def stage_all(self) -> VcsResult:
        pass

    @abstractmethod
    def commit(self, message: str) -> VcsResult:
        pass

    @abstractmethod
    def push(self, branch: str) -> VcsResult:
        pass

    @abstractmethod
    def has_uncommitted_changes(self) -> bool:
        pass

    @abstractmethod
    def changed_files(self, base: str) -> list[str]:
        """Uncommitted files plus files the current branch changed against base."""

    @abstractmethod
    def create_review(self, title: str, body: str, base: str, branch: str) -> VcsResult:
        """Open a review for branch. Returns the existing one's URL if already open."""

    @abstractmethod
    def merge_review(self, branch: str) -> VcsResult:
        pass


class GitVcs(VersionControl):
    """git + gh implementation over a working copy."""

    def __init__(self, repo_path: Path, remote: str = "origin"):
        self.repo_path = Path(repo_path)
        self.remote = remote

    def _base_ref(self, base: str) -> str:
        remote_ref = f"{self.remote}/{base}"
        if git.ref_exists(self.repo_path, remote_ref):
            return remote_ref
        return base

    def create_branch(self, name: str, base: str) -> VcsResult:
        if git.has_remote(self.repo_path, self.remote):
            fetched = git.fetch(self.repo_path, self.remote, base)
            if not fetched.success:
                logger.warning(f"[VCS] Fetch of {base} failed, branching from local refs: {fetched.error}")
        return _from_git(git.create_branch(self.repo_path, name, self._base_ref(base)))

    def checkout_branch(self, name: str) -> VcsResult:
        return _from_git(git.checkout_branch(self.repo_path, name))

    def stage_all(self) -> VcsResult:
        return _from_git(git.stage_all(self.repo_path))

    def commit(self, message: str) -> VcsResult:
        return _from_git(git.commit(self.repo_path, message))

    def push(self, branch: str) -> VcsResult:
        return _from_git(git.push_set_upstream(self.repo_path, self.remote, branch))

    def has_uncommitted_changes(self) -> bool:
        return git.has_uncommitted_changes(self.repo_path)

    def changed_files(self, base: str) -> list[str]:
        files = git.get_changed_files(self.repo_path)
        committed = git.get_diff_names(self.repo_path, f"{self._base_ref(base)}...HEAD")
        return list(dict.fromkeys(files + committed))

    def create_review(self, title: str, body: str, base: str, branch: str) -> VcsResult:
        ok, url_or_error = github.create_pr(self.repo_path, branch, base, title, body)
        if not ok:
            return VcsResult(False, error=url_or_error)
        return VcsResult(True, url_or_error)

    def merge_review(self, branch: str) -> VcsResult:
        ok, message = github.merge_pr(self.repo_path, branch)
        if not ok:
            return VcsResult(False, error=message)
        return VcsResult(True, github.get_merge_commit(self.repo_path, branch) or "")
