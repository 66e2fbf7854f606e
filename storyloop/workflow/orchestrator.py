"""
Execution orchestrator.

Drives one work item at a time from selection to merge. Each call to
run_step() re-enters the stage pipeline and skips every stage that already
has a checkpoint:

    external deps gate -> validation gate -> branch -> agent -> review -> merge

A step ends at a gate (the caller must answer), on blocked or error (the
caller decides whether to retry), or when an item merges. Stage failures
come back as StepResults; only store contract violations raise.

Callers must serialize run_step() calls (see storyloop.state.locking).
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from storyloop.agents.claude import CodingAgent
from storyloop.git.vcs import VersionControl
from storyloop.lib.config import RunnerConfig
from storyloop.lib.constants import AUTO_CLARIFICATION, VAGUE_TERMS
from storyloop.lib.types import (
    AgentPayload,
    BranchPayload,
    CheckpointStage,
    ExecutionRecord,
    ExternalDepsPayload,
    ReviewPayload,
    RunStatus,
    SignalKind,
    ValidationPayload,
    WorkItem,
)
from storyloop.selection.scoring import select_next
from storyloop.state import run_state
from storyloop.state.signals import wait_for_signal
from storyloop.state.store import StateStore
from storyloop.workflow import brief
from storyloop.workflow.fsm import RunStatusMachine
from storyloop.workflow.gates import (
    GateKind,
    GateRequest,
    GateResponseError,
    parse_gate_response,
)

logger = logging.getLogger(__name__)


class ExecutionStatus(Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    EXTERNAL_DEPS_GATE = "external_deps_gate"
    VALIDATION_GATE = "validation_gate"
    BRANCH_CREATING = "branch_creating"
    AGENT_RUNNING = "agent_running"
    REVIEW_GATE = "review_gate"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    ERROR = "error"


GATE_STATUS = {
    GateKind.EXTERNAL_DEPS: ExecutionStatus.EXTERNAL_DEPS_GATE,
    GateKind.VALIDATION: ExecutionStatus.VALIDATION_GATE,
    GateKind.PR_REVIEW: ExecutionStatus.REVIEW_GATE,
}


@dataclass
class StepEvent:
    kind: str  # "log", "gate", "error", "complete"
    message: str
    data: dict = field(default_factory=dict)  # "fatal": True when retrying cannot help
    at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class StepResult:
    status: ExecutionStatus
    item_id: Optional[str] = None
    gate_request: Optional[GateRequest] = None
    event: Optional[StepEvent] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "item_id": self.item_id,
            "gate_request": self.gate_request.model_dump(mode="json") if self.gate_request else None,
            "event": {
                "kind": self.event.kind,
                "message": self.event.message,
                "data": self.event.data,
                "at": self.event.at,
            } if self.event else None,
        }


# Stage control flow. These never leave run_step().

@dataclass
class StageError(Exception):
    """A stage failed; the item stays current and the stage reruns next step."""
    stage: ExecutionStatus
    message: str

    def __str__(self):
        return f"[{self.stage.value}] {self.message}"


@dataclass
class StageBlocked(Exception):
    """The agent reported it cannot proceed."""
    stage: ExecutionStatus
    reason: str


@dataclass
class StageGate(Exception):
    """Caller input needed."""
    request: GateRequest
    error: Optional[str] = None  # Set when the response given did not fit


@dataclass
class ItemSkipped(Exception):
    reason: str


@dataclass
class _Step:
    """Per-call context."""
    item: WorkItem
    machine: RunStatusMachine
    response: object = None

    def take_response(self, request: GateRequest):
        """Consume the caller's answer to this gate, or pause at it."""
        if self.response is None:
            raise StageGate(request)
        raw, self.response = self.response, None
        try:
            return parse_gate_response(request.kind, raw)
        except GateResponseError as e:
            raise StageGate(request, error=str(e))


def validate_item(item: WorkItem) -> list[str]:
    """Heuristic readiness check. Returns clarification questions, [] if fine."""
    text = " ".join([item.title, item.description] + list(item.acceptance)).lower()
    found = [term for term in VAGUE_TERMS if term in text]

    questions = []
    if found:
        questions.append(
            f"The item contains vague terms: {', '.join(found)}. "
            "Can you clarify what exactly is expected?"
        )
    if not item.acceptance:
        questions.append("No acceptance criteria defined. What should be verified when the item is complete?")
    if not item.description and not item.intent:
        questions.append("No description or intent provided. Can you clarify the context and goals?")
    return questions


def branch_name_for(item_id: str) -> str:
    """feat/story-<id>, with STORY- dropped and characters git rejects replaced."""
    normalized = re.sub(r'^STORY-', '', item_id)
    normalized = re.sub(r'[^A-Za-z0-9._-]', '-', normalized)
    return f"feat/story-{normalized}"


class Orchestrator:
    """Stage-gated, checkpoint-resumable driver for the current item."""

    def __init__(
        self,
        store: StateStore,
        agent: CodingAgent,
        vcs: VersionControl,
        config: RunnerConfig,
        cancel: threading.Event | None = None,
    ):
        self.store = store
        self.agent = agent
        self.vcs = vcs
        self.config = config
        self.cancel = cancel

    # Entry point

    def run_step(self, gate_response=None) -> StepResult:
        """Advance the current item as far as possible.

        Args:
            gate_response: Answer to the pending gate (dict or response model).
                Ignored when no gate is pending.
        """
        state = self.store.get_run_state()
        machine = RunStatusMachine(self.store)

        if gate_response is not None and state.status is not RunStatus.WAITING_GATE:
            logger.warning(f"[STEP] No gate pending (status {state.status.value}), response ignored")
            gate_response = None

        if state.current_item is None:
            if machine.status is not RunStatus.IDLE:
                logger.warning(f"[STEP] Status {machine.status.value} with no current item, resetting")
                machine.move_to(RunStatus.IDLE)
            selected = self._select(machine, state.last_completed)
            if isinstance(selected, StepResult):
                return selected
            item = selected
        else:
            item = self.store.get_item(state.current_item)
            if item is None:
                return self._result(
                    ExecutionStatus.ERROR, state.current_item,
                    StepEvent("error", f"Item {state.current_item} not found", {"fatal": True}),
                )
            if item.merged:
                # Merge landed but the step ended before run state caught up
                return self._finish(machine, item, "already merged")
            if machine.status is not RunStatus.RUNNING:
                machine.move_to(RunStatus.RUNNING)

        step = _Step(item=item, machine=machine, response=gate_response)
        try:
            self._external_deps_stage(step)
            self._validation_stage(step)
            self._branch_stage(step)
            self._agent_stage(step)
            return self._review_stage(step)

        except StageGate as gate:
            machine.move_to(RunStatus.WAITING_GATE)
            status = GATE_STATUS[gate.request.kind]
            if gate.error:
                event = StepEvent("error", gate.error, {"stage": status.value})
            else:
                event = StepEvent("gate", f"Waiting for {gate.request.kind.value} response")
            logger.info(f"[STEP] {item.id}: {status.value}")
            return self._result(status, item.id, event, gate.request)

        except StageBlocked as blocked:
            run_state.record_failure(self.store, blocked.reason)
            machine.move_to(RunStatus.BLOCKED)
            logger.warning(f"[STEP] {item.id} blocked: {blocked.reason}")
            return self._result(
                ExecutionStatus.BLOCKED, item.id,
                StepEvent("log", f"Item blocked: {blocked.reason}", {"stage": blocked.stage.value}),
            )

        except StageError as e:
            count = run_state.record_failure(self.store, e.message)
            logger.error(f"[STEP] {item.id} {e}")
            return self._result(
                ExecutionStatus.ERROR, item.id,
                StepEvent("error", e.message, {"stage": e.stage.value, "failure_count": count}),
            )

        except ItemSkipped as skipped:
            return self._result(
                ExecutionStatus.SELECTING, None,
                StepEvent("log", f"Skipped {item.id}: {skipped.reason}"),
            )

    def _result(self, status, item_id, event=None, gate_request=None) -> StepResult:
        return StepResult(status=status, item_id=item_id, gate_request=gate_request, event=event)

    # Selection

    def _select(self, machine: RunStatusMachine, last_completed: Optional[str]):
        """Pick and start the next item. Returns the WorkItem or a terminal StepResult."""
        items = self.store.list_items()

        if self.config.single_item_id:
            item = next((i for i in items if i.id == self.config.single_item_id), None)
            if item is None:
                return self._result(
                    ExecutionStatus.ERROR, self.config.single_item_id,
                    StepEvent("error", f"Item {self.config.single_item_id} not found", {"fatal": True}),
                )
            if item.retired:
                return self._result(
                    ExecutionStatus.COMPLETE, item.id,
                    StepEvent("complete", f"Item {item.id} already {'merged' if item.merged else 'skipped'}"),
                )
        else:
            item = select_next(items, last_completed)
            if item is None:
                if all(i.retired for i in items):
                    return self._result(ExecutionStatus.COMPLETE, None, StepEvent("complete", "All items complete"))
                return self._result(
                    ExecutionStatus.BLOCKED, None,
                    StepEvent("log", "No runnable items (dependencies not met)"),
                )

        run_state.start_item(machine, item.id)
        logger.info(f"[STEP] Selected {item.id}: {item.title}")
        return item

    def _skip(self, step: _Step, reason: str):
        item = step.item
        self.store.update_item(item.id, skipped=True, skip_reason=reason)
        self.store.clear_checkpoints(item.id)
        run_state.abandon_item(step.machine, item.id)
        raise ItemSkipped(reason)

    def _attempt(self) -> int:
        return self.store.get_run_state().attempts

    # Stages

    def _external_deps_stage(self, step: _Step) -> None:
        item = step.item
        if not item.external_deps:
            return
        if self.store.get_checkpoint(item.id, CheckpointStage.EXTERNAL_DEPS_COMPLETE):
            return

        request = GateRequest(kind=GateKind.EXTERNAL_DEPS, item_id=item.id, deps=item.external_deps)
        response = step.take_response(request)
        if response.action == "skip":
            self._skip(step, "External dependencies not ready")

        self.store.update_item(item.id, external_deps_report=response.report)
        self.store.save_checkpoint(
            item.id, CheckpointStage.EXTERNAL_DEPS_COMPLETE,
            ExternalDepsPayload(report=response.report), self._attempt(),
        )
        logger.info(f"[STEP] {item.id}: external dependencies reported")

    def _validation_stage(self, step: _Step) -> None:
        item = step.item
        if self.store.get_checkpoint(item.id, CheckpointStage.VALIDATION_COMPLETE):
            return

        questions = validate_item(item)
        if not questions:
            clarification = None
        elif self.config.auto_mode:
            logger.info(f"[STEP] {item.id}: {len(questions)} validation issue(s), proceeding on assumptions")
            clarification = AUTO_CLARIFICATION
        else:
            request = GateRequest(kind=GateKind.VALIDATION, item_id=item.id, questions=questions)
            response = step.take_response(request)
            if response.action == "skip":
                self._skip(step, "Skipped at validation")
            clarification = AUTO_CLARIFICATION if response.action == "auto" else response.clarification

        self.store.save_checkpoint(
            item.id, CheckpointStage.VALIDATION_COMPLETE,
            ValidationPayload(clarification=clarification), self._attempt(),
        )

    def _branch_stage(self, step: _Step) -> None:
        item = step.item
        checkpoint = self.store.get_checkpoint(item.id, CheckpointStage.BRANCH_CREATED)
        if checkpoint and checkpoint.payload.branch and self.store.get_run_state().branch:
            return

        branch = branch_name_for(item.id)
        created = self.vcs.create_branch(branch, self.config.base_branch)
        if not created.success:
            logger.info(f"[STEP] Create {branch} failed ({created.error}), trying checkout")
            checked_out = self.vcs.checkout_branch(branch)
            if not checked_out.success:
                raise StageError(
                    ExecutionStatus.BRANCH_CREATING,
                    f"Failed to create/checkout branch {branch}: {created.error}",
                )

        self.store.update_run_state(branch=branch)
        self.store.update_item(item.id, working_branch=branch)
        self.store.save_checkpoint(
            item.id, CheckpointStage.BRANCH_CREATED, BranchPayload(branch=branch), self._attempt(),
        )
        logger.info(f"[STEP] {item.id}: on branch {branch}")

    def _agent_stage(self, step: _Step) -> None:
        item = step.item
        if self.store.get_checkpoint(item.id, CheckpointStage.AGENT_COMPLETE):
            return

        state = self.store.get_run_state()
        self.store.clear_signal(item.id)
        self.store.save_checkpoint(item.id, CheckpointStage.AGENT_STARTED, attempt=state.attempts)

        validation = self.store.get_checkpoint(item.id, CheckpointStage.VALIDATION_COMPLETE)
        external = self.store.get_checkpoint(item.id, CheckpointStage.EXTERNAL_DEPS_COMPLETE)
        text = brief.build_brief(
            item,
            state.branch,
            state.attempts,
            clarification=validation.payload.clarification if validation else None,
            feedback=validation.payload.feedback if validation else None,
            external_deps_report=external.payload.report if external else None,
            previous_failure=state.last_error,
        )

        result = self.agent.run(text, self.config.repo_path, self.config.agent_timeout, self.cancel)
        self.store.record_execution(ExecutionRecord(
            item_id=item.id,
            attempt=state.attempts,
            success=result.success,
            duration_seconds=round(result.duration_seconds, 3),
            at=datetime.now().isoformat(),
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            error=result.error,
        ))
        if not result.success:
            raise StageError(ExecutionStatus.AGENT_RUNNING, result.error or "Agent execution failed")

        signal = wait_for_signal(
            self.store, item.id,
            timeout=self.config.signal_timeout,
            interval=self.config.signal_poll_interval,
            cancel=self.cancel,
        )
        if signal is None:
            raise StageError(ExecutionStatus.AGENT_RUNNING, "Agent exited without signaling completion")
        if signal.kind is SignalKind.BLOCKED:
            raise StageBlocked(ExecutionStatus.AGENT_RUNNING, signal.message or "Item blocked")

        self.store.save_checkpoint(
            item.id, CheckpointStage.AGENT_COMPLETE,
            AgentPayload(message=signal.message), state.attempts,
        )
        run_state.clear_failure(self.store)
        logger.info(f"[STEP] {item.id}: agent signaled complete")

    def _review_stage(self, step: _Step) -> StepResult:
        item = step.item
        branch = self.store.get_run_state().branch
        base = self.config.base_branch

        checkpoint = self.store.get_checkpoint(item.id, CheckpointStage.PR_CREATED)
        if checkpoint is None:
            if not self.vcs.changed_files(base):
                raise StageError(ExecutionStatus.REVIEW_GATE, "No changes to commit")

            if self.vcs.has_uncommitted_changes():
                staged = self.vcs.stage_all()
                if not staged.success:
                    raise StageError(ExecutionStatus.REVIEW_GATE, f"Failed to stage changes: {staged.error}")
                committed = self.vcs.commit(brief.commit_message(item))
                if not committed.success:
                    raise StageError(ExecutionStatus.REVIEW_GATE, f"Failed to commit: {committed.error}")

            pushed = self.vcs.push(branch)
            if not pushed.success:
                raise StageError(ExecutionStatus.REVIEW_GATE, f"Failed to push {branch}: {pushed.error}")

            review = self.vcs.create_review(
                brief.review_title(item), brief.review_body(item), base, branch,
            )
            if not review.success:
                raise StageError(ExecutionStatus.REVIEW_GATE, f"Failed to open review: {review.error}")

            self.store.update_run_state(review_url=review.output)
            self.store.update_item(item.id, review_url=review.output)
            checkpoint = self.store.save_checkpoint(
                item.id, CheckpointStage.PR_CREATED,
                ReviewPayload(review_url=review.output), self._attempt(),
            )
            logger.info(f"[STEP] {item.id}: review opened {review.output}")

        review_url = checkpoint.payload.review_url
        request = GateRequest(kind=GateKind.PR_REVIEW, item_id=item.id, review_url=review_url)
        if self.config.auto_mode:
            return self._merge(step, branch, request)

        response = step.take_response(request)
        if response.action == "merge":
            return self._merge(step, branch, request)
        return self._request_changes(step, response.feedback)

    def _merge(self, step: _Step, branch: str, request: GateRequest) -> StepResult:
        item = step.item
        merged = self.vcs.merge_review(branch)
        if not merged.success:
            message = f"Merge failed: {merged.error}"
            count = run_state.record_failure(self.store, message)
            if not self.config.auto_mode:
                step.machine.move_to(RunStatus.WAITING_GATE)
            logger.error(f"[STEP] {item.id}: {message}")
            return self._result(
                ExecutionStatus.ERROR, item.id,
                StepEvent("error", message, {"stage": ExecutionStatus.REVIEW_GATE.value, "failure_count": count}),
                None if self.config.auto_mode else request,
            )

        self.store.update_item(item.id, merged=True, passed=True, merge_commit=merged.output or None)
        return self._finish(step.machine, item, "merged", request.review_url)

    def _finish(self, machine: RunStatusMachine, item: WorkItem, how: str, review_url: str | None = None) -> StepResult:
        self.store.clear_checkpoints(item.id)
        self.store.clear_signal(item.id)
        run_state.complete_item(machine, item.id)
        return self._result(
            ExecutionStatus.IDLE, item.id,
            StepEvent("complete", f"Item {item.id} {how}", {"review_url": review_url} if review_url else {}),
        )

    def _request_changes(self, step: _Step, feedback: str) -> StepResult:
        item = step.item
        attempts = run_state.increment_attempt(self.store)

        validation = self.store.get_checkpoint(item.id, CheckpointStage.VALIDATION_COMPLETE)
        clarification = validation.payload.clarification if validation else None

        self.store.clear_checkpoints(
            item.id,
            keep=(CheckpointStage.EXTERNAL_DEPS_COMPLETE, CheckpointStage.BRANCH_CREATED),
        )
        self.store.save_checkpoint(
            item.id, CheckpointStage.VALIDATION_COMPLETE,
            ValidationPayload(clarification=clarification, feedback=feedback), attempts,
        )
        self.store.update_item(item.id, passed=False)
        self.store.clear_signal(item.id)
        logger.info(f"[STEP] {item.id}: changes requested, attempt {attempts}")
        return self._result(
            ExecutionStatus.AGENT_RUNNING, item.id,
            StepEvent("log", "Re-running agent with review feedback", {"attempt": attempts}),
        )
