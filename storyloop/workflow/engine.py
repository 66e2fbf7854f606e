"""Workflow engine for the execution loop.

run_loop repeats Orchestrator.run_step until something needs the caller.
Wrapped with Prefect @flow for observability; the step logic itself stays
plain Python in orchestrator.py.
"""

import logging

from prefect import flow, get_run_logger
from prefect.exceptions import MissingContextError

from storyloop.lib.config import RunnerConfig
from storyloop.selection.scoring import scored_candidates, select_next
from storyloop.state.store import StateStore
from storyloop.workflow.orchestrator import (
    GATE_STATUS,
    ExecutionStatus,
    Orchestrator,
    StepEvent,
    StepResult,
)

logger = logging.getLogger(__name__)

GATE_STATUSES = set(GATE_STATUS.values())


def _flow_logger():
    try:
        return get_run_logger()
    except MissingContextError:
        return logger


@flow(name="storyloop_run_loop", validate_parameters=False)
def run_loop(
    orchestrator: Orchestrator,
    config: RunnerConfig,
    gate_response: dict | None = None,
) -> StepResult:
    """Run steps until a gate, blocked, complete or a stuck error.

    An error stops the loop when its event is marked fatal or once the same
    error repeated max_identical_failures times; otherwise the step is
    retried. With one_shot the loop returns after the
    first merge.

    Returns: the last StepResult
    """
    flow_logger = _flow_logger()
    store = orchestrator.store
    result = StepResult(ExecutionStatus.IDLE)
    message = ""

    for iteration in range(1, config.max_iterations + 1):
        result = orchestrator.run_step(gate_response)
        gate_response = None
        message = result.event.message if result.event else ""
        flow_logger.info(f"[LOOP] Iteration {iteration}: {result.status.value} {result.item_id or ''} {message}")

        if result.status in GATE_STATUSES or result.status in (ExecutionStatus.BLOCKED, ExecutionStatus.COMPLETE):
            return result

        if result.status is ExecutionStatus.ERROR:
            if result.event and result.event.data.get("fatal"):
                flow_logger.warning(f"[LOOP] Stopping after fatal error: {message}")
                return result
            failures = store.get_run_state().failure_count
            if failures >= config.max_identical_failures:
                flow_logger.warning(f"[LOOP] Stopping after error ({failures} identical): {message}")
                return result
            continue

        if result.status is ExecutionStatus.IDLE and config.one_shot:
            return result

        if orchestrator.cancel is not None and orchestrator.cancel.is_set():
            flow_logger.info("[LOOP] Cancelled")
            return result

    flow_logger.warning(f"[LOOP] Reached max iterations ({config.max_iterations})")
    result.event = StepEvent("log", f"Stopped after {config.max_iterations} iterations", {"previous": message})
    return result


def execution_status(store: StateStore) -> dict:
    """Run state, backlog progress and the ranked candidates."""
    state = store.get_run_state()
    items = store.list_items()

    total = len(items)
    merged = sum(1 for i in items if i.merged)
    passed = sum(1 for i in items if i.passed and not i.merged)
    skipped = sum(1 for i in items if i.skipped)
    next_item = select_next(items, state.last_completed) if state.current_item is None else None

    return {
        "state": state.to_dict(),
        "progress": {
            "total": total,
            "merged": merged,
            "passed": passed,
            "skipped": skipped,
            "percentage": round(merged / total * 100) if total else 0,
        },
        "next_item": next_item.id if next_item else None,
        "candidates": scored_candidates(items, state.last_completed),
    }
