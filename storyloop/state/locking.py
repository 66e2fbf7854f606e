"""
Lock management for storyloop.

Steps must be serialized per state directory; the CLI takes this flock
around every step and loop.
"""

import fcntl
import os
import signal
import sys
import threading
import time
from contextlib import contextmanager
from pathlib import Path


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    start = time.time()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.time() - start > timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(0.2)

    # Release on SIGTERM too; the default handler would skip the finally
    in_main = threading.current_thread() is threading.main_thread()
    if in_main:
        original_sigterm = signal.signal(signal.SIGTERM, lambda *_: sys.exit(1))

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        if in_main:
            signal.signal(signal.SIGTERM, original_sigterm)
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            fd.close()


@contextmanager
def step_lock(state_dir: Path, timeout: float = 0):
    """
    Acquire the single-flight step lock for a state directory.

    With the default timeout of 0 a concurrent step fails immediately
    with LockTimeout instead of queueing behind the running one.
    """
    lock_file = Path(state_dir) / "locks" / "step.lock"
    with _acquire_lock(lock_file, timeout, "step lock"):
        yield
