"""Tests for storyloop.workflow.orchestrator module.

The agent and version-control collaborators are counting fakes; the store
is a real JsonStateStore in tmp_path.
"""

import pytest

from storyloop.agents.claude import AgentResult, CodingAgent
from storyloop.git.vcs import VcsResult, VersionControl
from storyloop.lib.config import RunnerConfig
from storyloop.lib.constants import AUTO_CLARIFICATION
from storyloop.lib.types import CheckpointStage, RunStatus, SignalKind, WorkItem
from storyloop.state.store import JsonStateStore
from storyloop.workflow.gates import GateKind
from storyloop.workflow.orchestrator import (
    ExecutionStatus,
    Orchestrator,
    branch_name_for,
    validate_item,
)

REVIEW_URL = "https://github.com/acme/app/pull/12"


class FakeAgent(CodingAgent):
    """Records briefs and reports through the store like the real agent would."""

    def __init__(self, store, signal=SignalKind.COMPLETE, message=None, success=True):
        self.store = store
        self.signal = signal
        self.message = message
        self.success = success
        self.briefs = []

    def run(self, brief, cwd, timeout, cancel=None):
        self.briefs.append(brief)
        item_id = self.store.get_run_state().current_item
        if self.signal is not None:
            self.store.record_signal(item_id, self.signal, self.message)
        return AgentResult(
            success=self.success,
            exit_code=0 if self.success else 1,
            duration_seconds=0.1,
            input_tokens=100,
            output_tokens=50,
            error=None if self.success else "agent crashed",
        )


class FakeVcs(VersionControl):
    def __init__(self):
        self.changed = ["src/login.py"]
        self.uncommitted = True
        self.create_ok = True
        self.checkout_ok = True
        self.merge_ok = True
        self.branches = []
        self.checkouts = []
        self.commits = []
        self.pushes = []
        self.reviews = []
        self.merges = []

    def create_branch(self, name, base):
        self.branches.append((name, base))
        return VcsResult(self.create_ok, error=None if self.create_ok else "branch exists")

    def checkout_branch(self, name):
        self.checkouts.append(name)
        return VcsResult(self.checkout_ok, error=None if self.checkout_ok else "no such branch")

    def stage_all(self):
        return VcsResult(True)

    def commit(self, message):
        self.commits.append(message)
        self.uncommitted = False
        return VcsResult(True)

    def push(self, branch):
        self.pushes.append(branch)
        return VcsResult(True)

    def has_uncommitted_changes(self):
        return self.uncommitted

    def changed_files(self, base):
        return list(self.changed)

    def create_review(self, title, body, base, branch):
        self.reviews.append((title, base, branch))
        return VcsResult(True, REVIEW_URL)

    def merge_review(self, branch):
        self.merges.append(branch)
        if not self.merge_ok:
            return VcsResult(False, error="Failed to merge PR: not mergeable")
        return VcsResult(True, "abc123")


def make_item(number: str, **kwargs) -> WorkItem:
    phase, epic, num = (int(p) for p in number.split("."))
    defaults = dict(
        title=f"Build feature {number}",
        intent="Users can sign in",
        description="Email and password form on the landing page.",
        acceptance=["Form submits credentials", "Errors are shown inline"],
    )
    defaults.update(kwargs)
    return WorkItem(id=number, phase=phase, epic=epic, number=num, **defaults)


@pytest.fixture
def store(tmp_path):
    store = JsonStateStore(tmp_path / "state")
    store.write_items([make_item("1.1.1"), make_item("1.1.2", depends_on=["1.1.1"])])
    return store


@pytest.fixture
def config(tmp_path):
    return RunnerConfig(
        repo_path=tmp_path / "repo",
        state_dir=tmp_path / "state",
        base_branch="dev",
        signal_timeout=0,
        signal_poll_interval=0.01,
    )


@pytest.fixture
def vcs():
    return FakeVcs()


@pytest.fixture
def agent(store):
    return FakeAgent(store)


@pytest.fixture
def orchestrator(store, agent, vcs, config):
    return Orchestrator(store, agent, vcs, config)


class TestValidateItem:

    def test_well_specified_item(self):
        assert validate_item(make_item("1.1.1")) == []

    def test_vague_terms(self):
        item = make_item("1.1.1", description="Handle errors properly")
        questions = validate_item(item)
        assert len(questions) == 1
        assert "properly" in questions[0]
        assert "handle" in questions[0]

    def test_missing_acceptance_and_context(self):
        item = make_item("1.1.1", acceptance=[], description="", intent="")
        questions = validate_item(item)
        assert len(questions) == 2
        assert any("acceptance criteria" in q for q in questions)
        assert any("description or intent" in q for q in questions)


class TestBranchName:

    def test_plain_id(self):
        assert branch_name_for("1.2.3") == "feat/story-1.2.3"

    def test_version_separator_replaced(self):
        assert branch_name_for("v0.1:1.2.3") == "feat/story-v0.1-1.2.3"

    def test_story_prefix_dropped(self):
        assert branch_name_for("STORY-1.2.3") == "feat/story-1.2.3"


class TestHappyPath:

    def test_runs_to_review_gate(self, orchestrator, store, agent, vcs):
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.REVIEW_GATE
        assert result.item_id == "1.1.1"
        assert result.gate_request.kind is GateKind.PR_REVIEW
        assert result.gate_request.review_url == REVIEW_URL
        assert vcs.branches == [("feat/story-1.1.1", "dev")]
        assert vcs.commits == ["feat(1.1.1): Build feature 1.1.1"]
        assert vcs.pushes == ["feat/story-1.1.1"]
        assert vcs.reviews == [("[1.1.1] Build feature 1.1.1", "dev", "feat/story-1.1.1")]
        assert len(agent.briefs) == 1

        state = store.get_run_state()
        assert state.status is RunStatus.WAITING_GATE
        assert state.current_item == "1.1.1"
        assert state.branch == "feat/story-1.1.1"
        assert state.review_url == REVIEW_URL
        item = store.get_item("1.1.1")
        assert item.passed is True
        assert item.working_branch == "feat/story-1.1.1"
        assert len(store.list_executions("1.1.1")) == 1

    def test_merge_completes_item(self, orchestrator, store, vcs):
        orchestrator.run_step()
        result = orchestrator.run_step({"action": "merge"})

        assert result.status is ExecutionStatus.IDLE
        assert result.event.kind == "complete"
        assert vcs.merges == ["feat/story-1.1.1"]
        item = store.get_item("1.1.1")
        assert item.merged is True
        assert item.merge_commit == "abc123"
        state = store.get_run_state()
        assert state.status is RunStatus.IDLE
        assert state.current_item is None
        assert state.last_completed == "1.1.1"
        assert store.list_checkpoints("1.1.1") == []
        assert store.get_signal("1.1.1") is None

    def test_next_step_picks_dependent(self, orchestrator, store):
        orchestrator.run_step()
        orchestrator.run_step({"action": "merge"})
        result = orchestrator.run_step()
        assert result.item_id == "1.1.2"
        assert result.status is ExecutionStatus.REVIEW_GATE

    def test_complete_when_everything_merged(self, orchestrator, store):
        for item_id in ("1.1.1", "1.1.2"):
            store.update_item(item_id, merged=True, passed=True)
        result = orchestrator.run_step()
        assert result.status is ExecutionStatus.COMPLETE
        assert result.item_id is None


class TestIdempotentResume:

    def test_step_without_response_stays_at_gate(self, orchestrator, store, agent, vcs):
        first = orchestrator.run_step()
        second = orchestrator.run_step()

        assert first.status is second.status is ExecutionStatus.REVIEW_GATE
        assert len(agent.briefs) == 1
        assert len(vcs.branches) == 1
        assert len(vcs.commits) == 1
        assert len(vcs.reviews) == 1
        assert store.get_run_state().status is RunStatus.WAITING_GATE

    def test_response_ignored_without_pending_gate(self, orchestrator, store, vcs):
        result = orchestrator.run_step({"action": "merge"})
        assert result.status is ExecutionStatus.REVIEW_GATE
        assert vcs.merges == []
        assert store.get_item("1.1.1").merged is False


class TestExternalDependencyAndValidationGates:

    @pytest.fixture
    def store(self, tmp_path):
        store = JsonStateStore(tmp_path / "state")
        store.write_items([make_item(
            "1.1.1",
            description="Handle login errors properly",
            external_deps=[{"name": "OAuth app", "description": "Client id from the provider"}],
        )])
        return store

    def test_external_deps_gate_first(self, orchestrator, store, agent):
        result = orchestrator.run_step()
        assert result.status is ExecutionStatus.EXTERNAL_DEPS_GATE
        assert result.gate_request.deps[0]["name"] == "OAuth app"
        assert agent.briefs == []
        assert store.get_run_state().status is RunStatus.WAITING_GATE

    def test_submit_then_validation_gate(self, orchestrator, store):
        orchestrator.run_step()
        result = orchestrator.run_step({"action": "submit", "report": "Client id in vault"})

        assert result.status is ExecutionStatus.VALIDATION_GATE
        assert any("properly" in q for q in result.gate_request.questions)
        assert store.get_item("1.1.1").external_deps_report == "Client id in vault"
        assert store.get_checkpoint("1.1.1", CheckpointStage.EXTERNAL_DEPS_COMPLETE) is not None

    def test_clarify_reaches_agent(self, orchestrator, store, agent):
        orchestrator.run_step()
        orchestrator.run_step({"action": "submit", "report": "Client id in vault"})
        result = orchestrator.run_step({"action": "clarify", "clarification": "Show a toast on failure"})

        assert result.status is ExecutionStatus.REVIEW_GATE
        brief = agent.briefs[0]
        assert "Client id in vault" in brief
        assert "Show a toast on failure" in brief

    def test_auto_response_uses_assumptions(self, orchestrator, agent):
        orchestrator.run_step()
        orchestrator.run_step({"action": "submit", "report": "ok"})
        orchestrator.run_step({"action": "auto"})
        assert AUTO_CLARIFICATION in agent.briefs[0]

    def test_invalid_response_reissues_gate(self, orchestrator, store):
        orchestrator.run_step()
        result = orchestrator.run_step({"action": "submit"})

        assert result.status is ExecutionStatus.EXTERNAL_DEPS_GATE
        assert result.event.kind == "error"
        assert "submit requires a report" in result.event.message
        assert store.get_checkpoint("1.1.1", CheckpointStage.EXTERNAL_DEPS_COMPLETE) is None

    def test_skip_at_external_deps(self, orchestrator, store):
        orchestrator.run_step()
        result = orchestrator.run_step({"action": "skip"})

        assert result.status is ExecutionStatus.SELECTING
        item = store.get_item("1.1.1")
        assert item.skipped is True
        assert item.skip_reason == "External dependencies not ready"
        state = store.get_run_state()
        assert state.status is RunStatus.IDLE
        assert state.current_item is None

    def test_skip_at_validation(self, orchestrator, store):
        orchestrator.run_step()
        orchestrator.run_step({"action": "submit", "report": "ok"})
        result = orchestrator.run_step({"action": "skip"})

        assert result.status is ExecutionStatus.SELECTING
        assert store.get_item("1.1.1").skip_reason == "Skipped at validation"
        assert store.list_checkpoints("1.1.1") == []
        assert orchestrator.run_step().status is ExecutionStatus.COMPLETE

    def test_auto_mode_skips_validation_gate(self, orchestrator, store, config, agent):
        config.auto_mode = True
        orchestrator.run_step()
        result = orchestrator.run_step({"action": "submit", "report": "ok"})
        # Auto mode merges without a review gate
        assert result.status is ExecutionStatus.IDLE
        assert AUTO_CLARIFICATION in agent.briefs[0]
        assert store.get_item("1.1.1").merged is True


class TestAgentOutcomes:

    def test_no_signal_is_error(self, orchestrator, store, agent, vcs):
        agent.signal = None
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.ERROR
        assert result.event.message == "Agent exited without signaling completion"
        assert result.event.data["stage"] == "agent_running"
        assert store.get_checkpoint("1.1.1", CheckpointStage.AGENT_STARTED) is not None
        assert store.get_checkpoint("1.1.1", CheckpointStage.AGENT_COMPLETE) is None
        assert vcs.pushes == []
        assert store.get_run_state().failure_count == 1

    def test_rerun_after_missing_signal_calls_agent_again(self, orchestrator, store, agent):
        agent.signal = None
        orchestrator.run_step()
        second = orchestrator.run_step()

        assert second.status is ExecutionStatus.ERROR
        assert len(agent.briefs) == 2
        assert second.event.data["failure_count"] == 2
        assert "Agent exited without signaling completion" in agent.briefs[1]

    def test_recovers_after_missing_signal(self, orchestrator, store, agent):
        agent.signal = None
        orchestrator.run_step()
        agent.signal = SignalKind.COMPLETE
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.REVIEW_GATE
        state = store.get_run_state()
        assert state.failure_count == 0
        assert state.last_error is None

    def test_agent_failure_is_error(self, orchestrator, store, agent):
        agent.success = False
        agent.signal = None
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.ERROR
        assert result.event.message == "agent crashed"
        assert store.list_executions("1.1.1")[0].success is False

    def test_blocked_signal(self, orchestrator, store, agent):
        agent.signal = SignalKind.BLOCKED
        agent.message = "Needs API credentials"
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.BLOCKED
        assert "Needs API credentials" in result.event.message
        state = store.get_run_state()
        assert state.status is RunStatus.BLOCKED
        assert state.current_item == "1.1.1"
        assert state.last_error == "Needs API credentials"

    def test_blocked_item_resumes(self, orchestrator, store, agent):
        agent.signal = SignalKind.BLOCKED
        orchestrator.run_step()
        agent.signal = SignalKind.COMPLETE
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.REVIEW_GATE
        assert len(agent.briefs) == 2


class TestReviewStage:

    def test_zero_changes_is_error(self, orchestrator, store, vcs):
        vcs.changed = []
        vcs.uncommitted = False
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.ERROR
        assert result.event.message == "No changes to commit"
        assert vcs.commits == []
        assert vcs.pushes == []
        assert vcs.reviews == []
        assert store.get_checkpoint("1.1.1", CheckpointStage.PR_CREATED) is None

    def test_already_committed_changes_not_recommitted(self, orchestrator, vcs):
        vcs.uncommitted = False
        result = orchestrator.run_step()
        assert result.status is ExecutionStatus.REVIEW_GATE
        assert vcs.commits == []
        assert vcs.pushes == ["feat/story-1.1.1"]

    def test_auto_mode_merges_in_one_step(self, orchestrator, store, config, vcs):
        config.auto_mode = True
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.IDLE
        assert result.event.data["review_url"] == REVIEW_URL
        assert vcs.merges == ["feat/story-1.1.1"]
        assert store.get_item("1.1.1").merged is True

    def test_merge_failure_stays_at_review_gate(self, orchestrator, store, vcs):
        vcs.merge_ok = False
        orchestrator.run_step()
        result = orchestrator.run_step({"action": "merge"})

        assert result.status is ExecutionStatus.ERROR
        assert "not mergeable" in result.event.message
        assert result.gate_request.kind is GateKind.PR_REVIEW
        assert store.get_run_state().status is RunStatus.WAITING_GATE
        assert store.get_item("1.1.1").merged is False

        vcs.merge_ok = True
        retry = orchestrator.run_step({"action": "merge"})
        assert retry.status is ExecutionStatus.IDLE
        assert store.get_item("1.1.1").merged is True

    def test_feedback_reruns_agent(self, orchestrator, store, agent, vcs):
        orchestrator.run_step()
        result = orchestrator.run_step({"action": "feedback", "feedback": "Rename the submit button"})

        assert result.status is ExecutionStatus.AGENT_RUNNING
        state = store.get_run_state()
        assert state.attempts == 2
        assert store.get_item("1.1.1").passed is False
        stages = {c.stage for c in store.list_checkpoints("1.1.1")}
        assert stages == {CheckpointStage.VALIDATION_COMPLETE, CheckpointStage.BRANCH_CREATED}

        vcs.uncommitted = True
        again = orchestrator.run_step()
        assert again.status is ExecutionStatus.REVIEW_GATE
        assert len(agent.briefs) == 2
        assert "Rename the submit button" in agent.briefs[1]
        assert "attempt 2" in agent.briefs[1]
        assert len(vcs.branches) == 1


class TestSelectionEdges:

    def test_blocked_when_dependencies_unmet(self, tmp_path, vcs, config):
        store = JsonStateStore(tmp_path / "state")
        store.write_items([make_item("1.1.1", depends_on=["9.9.9"])])
        result = Orchestrator(store, FakeAgent(store), vcs, config).run_step()

        assert result.status is ExecutionStatus.BLOCKED
        assert result.item_id is None
        assert store.get_run_state().current_item is None

    def test_single_item(self, orchestrator, store, config):
        store.update_item("1.1.1", merged=True, passed=True)
        store.write_items(store.list_items() + [make_item("2.1.1")])
        config.single_item_id = "2.1.1"
        assert orchestrator.run_step().item_id == "2.1.1"

    def test_single_item_unknown(self, orchestrator, config):
        config.single_item_id = "7.7.7"
        result = orchestrator.run_step()
        assert result.status is ExecutionStatus.ERROR
        assert "7.7.7" in result.event.message
        assert result.event.data["fatal"] is True

    def test_single_item_already_merged(self, orchestrator, store, config):
        store.update_item("1.1.1", merged=True, passed=True)
        config.single_item_id = "1.1.1"
        assert orchestrator.run_step().status is ExecutionStatus.COMPLETE

    def test_status_without_item_is_reset(self, orchestrator, store):
        store.update_run_state(status=RunStatus.BLOCKED)
        result = orchestrator.run_step()
        assert result.item_id == "1.1.1"

    def test_already_merged_current_item_finishes(self, orchestrator, store, agent):
        store.update_run_state(status=RunStatus.RUNNING, current_item="1.1.1")
        store.update_item("1.1.1", merged=True, passed=True)
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.IDLE
        assert "already merged" in result.event.message
        assert agent.briefs == []
        assert store.get_run_state().last_completed == "1.1.1"

    def test_unknown_current_item(self, orchestrator, store):
        store.update_run_state(status=RunStatus.RUNNING, current_item="8.8.8")
        assert orchestrator.run_step().status is ExecutionStatus.ERROR


class TestBranchStage:

    def test_falls_back_to_checkout(self, orchestrator, vcs):
        vcs.create_ok = False
        result = orchestrator.run_step()
        assert result.status is ExecutionStatus.REVIEW_GATE
        assert vcs.checkouts == ["feat/story-1.1.1"]

    def test_error_when_branch_unusable(self, orchestrator, store, agent, vcs):
        vcs.create_ok = False
        vcs.checkout_ok = False
        result = orchestrator.run_step()

        assert result.status is ExecutionStatus.ERROR
        assert result.event.data["stage"] == "branch_creating"
        assert "feat/story-1.1.1" in result.event.message
        assert agent.briefs == []
        assert store.get_checkpoint("1.1.1", CheckpointStage.BRANCH_CREATED) is None


class TestStepResult:

    def test_to_dict(self, orchestrator):
        data = orchestrator.run_step().to_dict()
        assert data["status"] == "review_gate"
        assert data["item_id"] == "1.1.1"
        assert data["gate_request"]["kind"] == "pr_review"
        assert data["event"]["kind"] == "gate"
