"""Run-status state machine using transitions library.

Guards the run-state status field:

    idle -> running            (start)
    running -> waiting_gate    (await_gate)
    waiting_gate|blocked -> running (resume)
    running|waiting_gate -> blocked (block)
    running|waiting_gate|blocked -> idle (finish)

Usage:
    from storyloop.workflow.fsm import RunStatusMachine

    machine = RunStatusMachine(store)
    machine.move_to(RunStatus.RUNNING, current_item="1.1.1", attempts=1)
"""

import logging
from typing import Callable

from transitions import Machine

from storyloop.lib.types import RunStatus
from storyloop.state.store import StateStore

logger = logging.getLogger(__name__)


STATES = [status.value for status in RunStatus]

TRANSITIONS = [
    {"trigger": "start", "source": "idle", "dest": "running"},
    {"trigger": "await_gate", "source": "running", "dest": "waiting_gate"},
    {"trigger": "resume", "source": ["waiting_gate", "blocked"], "dest": "running"},
    {"trigger": "block", "source": ["running", "waiting_gate"], "dest": "blocked"},
    {"trigger": "finish", "source": ["running", "waiting_gate", "blocked"], "dest": "idle"},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            lookup.setdefault((source, t["dest"]), t["trigger"])
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class InvalidTransition(Exception):
    """Raised when attempting an invalid status transition."""

    def __init__(self, from_status: str, to_status: RunStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status} -> {to_status.value}")


class RunStatusMachine:
    """State machine for the run-state status.

    Loads the initial status from the store and persists every change back,
    together with any run-state fields passed to the trigger.
    """

    def __init__(self, store: StateStore, on_transition: Callable[[str, str, str], None] | None = None):
        self.store = store
        self.on_transition = on_transition

        initial = store.get_run_state().status.value
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def status(self) -> RunStatus:
        return RunStatus(self.state)

    def on_state_change(self, event) -> None:
        """Persist the new status and log the transition."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name
        fields = event.kwargs.get("fields") or {}

        logger.info(f"[FSM] {from_state} -> {to_state} ({trigger})")
        self.store.update_run_state(status=RunStatus(to_state), **fields)

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def move_to(self, target: RunStatus, **fields) -> None:
        """Move to target status, writing fields in the same update.

        A move to the current status only writes the fields.

        Raises:
            InvalidTransition: If no trigger leads from the current status to target
        """
        if target.value == self.state:
            if fields:
                self.store.update_run_state(**fields)
            return

        trigger = TRIGGER_FOR.get((self.state, target.value))
        if trigger is None or not self.can(trigger):
            raise InvalidTransition(self.state, target)
        self.trigger(trigger, fields=fields)
