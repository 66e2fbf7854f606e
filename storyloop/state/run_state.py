"""Run-state helpers.

Field updates the orchestrator makes on the singleton run state. Status
changes go through a RunStatusMachine so the current_item invariant and
the status move land in one write.
"""

import logging
from datetime import datetime

from storyloop.lib.types import RunStatus
from storyloop.state.store import StateStore

logger = logging.getLogger(__name__)


def start_item(machine, item_id: str) -> None:
    """Make item_id the current item: running, attempt 1, no branch yet."""
    machine.move_to(
        RunStatus.RUNNING,
        current_item=item_id,
        branch=None,
        review_url=None,
        attempts=1,
        started_at=datetime.now().isoformat(),
        last_error=None,
        failure_count=0,
    )
    logger.info(f"[RUN] Started {item_id}")


def complete_item(machine, item_id: str) -> None:
    """Finish the current item after merge."""
    machine.move_to(
        RunStatus.IDLE,
        current_item=None,
        branch=None,
        review_url=None,
        attempts=0,
        last_completed=item_id,
        last_error=None,
        failure_count=0,
    )
    logger.info(f"[RUN] Completed {item_id}")


def abandon_item(machine, item_id: str) -> None:
    """Drop the current item without completing it (skip)."""
    machine.move_to(
        RunStatus.IDLE,
        current_item=None,
        branch=None,
        review_url=None,
        attempts=0,
        last_error=None,
        failure_count=0,
    )
    logger.info(f"[RUN] Abandoned {item_id}")


def record_failure(store: StateStore, error: str) -> int:
    """Record an error. Returns the consecutive identical-error count."""
    state = store.get_run_state()
    count = state.failure_count + 1 if state.last_error == error else 1
    store.update_run_state(last_error=error, failure_count=count)
    if count > 1:
        logger.warning(f"[RUN] Same error {count} times in a row: {error}")
    return count


def clear_failure(store: StateStore) -> None:
    store.update_run_state(last_error=None, failure_count=0)


def increment_attempt(store: StateStore) -> int:
    state = store.get_run_state()
    attempts = state.attempts + 1
    store.update_run_state(attempts=attempts)
    return attempts
