"""Git status operations."""

from pathlib import Path

from storyloop.git.runner import run_git


def has_uncommitted_changes(worktree: Path) -> bool:
    """Check for staged, unstaged or untracked changes."""
    result = run_git(["status", "--porcelain"], worktree)
    return bool(result.stdout.strip())


def get_changed_files(worktree: Path) -> list[str]:
    """Get uncommitted files (staged + unstaged + untracked).

    Uses -z so names with spaces survive. Returns [] on git failure.
    """
    result = run_git(["status", "--porcelain", "-z"], worktree)
    if not result.success or not result.stdout:
        return []

    files = []
    # -z format: "XY name\0", renames and copies add "\0old" after the new name
    entries = result.stdout.split('\0')
    i = 0
    while i < len(entries):
        entry = entries[i]
        if len(entry) < 4:
            i += 1
            continue

        status, filename = entry[:2], entry[3:]
        files.append(filename)
        i += 2 if status[0] in ('R', 'C') else 1

    return files
