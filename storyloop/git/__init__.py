"""Git operations for storyloop.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: stage_all(), commit(), fetch(), push_set_upstream()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: has_uncommitted_changes(), branch_exists()
- Functions returning parsed values (str, list): Return empty/None on failure.
  Examples: get_changed_files() -> [], get_current_branch() -> None
"""

from storyloop.git.runner import (
    GitResult,
    run_git,
)
from storyloop.git.status import (
    has_uncommitted_changes,
    get_changed_files,
)
from storyloop.git.diff import (
    get_diff_names,
)
from storyloop.git.branch import (
    get_current_branch,
    branch_exists,
    ref_exists,
    create_branch,
)
from storyloop.git.commit import (
    stage_all,
    commit,
)
from storyloop.git.remote import (
    has_remote,
    fetch,
    push_set_upstream,
    checkout_branch,
)

__all__ = [
    # runner
    "GitResult",
    "run_git",
    # status
    "has_uncommitted_changes",
    "get_changed_files",
    # diff
    "get_diff_names",
    # branch
    "get_current_branch",
    "branch_exists",
    "ref_exists",
    "create_branch",
    # commit
    "stage_all",
    "commit",
    # remote
    "has_remote",
    "fetch",
    "push_set_upstream",
    "checkout_branch",
]
