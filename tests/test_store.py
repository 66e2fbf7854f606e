"""Tests for storyloop.state.store module."""

import json

import pytest

from storyloop.lib.types import (
    BranchPayload,
    CheckpointStage,
    ExecutionRecord,
    RunStatus,
    SignalKind,
    ValidationPayload,
    WorkItem,
)
from storyloop.lib.validate import ValidationError
from storyloop.state.store import JsonStateStore, StoreError


def make_item(number: str, version: str | None = None, **kwargs) -> WorkItem:
    phase, epic, num = (int(p) for p in number.split("."))
    item_id = f"{version}:{number}" if version else number
    return WorkItem(id=item_id, title=f"Item {item_id}", phase=phase, epic=epic, number=num,
                    version=version, **kwargs)


@pytest.fixture
def store(tmp_path):
    store = JsonStateStore(tmp_path / "state")
    store.write_items([
        make_item("1.1.1", "v0.1"),
        make_item("1.1.2", "v0.1", depends_on=["1.1.1"]),
        make_item("1.1.1", "v0.2"),
    ])
    return store


class TestItems:

    def test_empty_state_dir(self, tmp_path):
        store = JsonStateStore(tmp_path / "missing")
        assert store.list_items() == []
        assert store.get_item("1.1.1") is None

    def test_list_and_filter_by_version(self, store):
        assert len(store.list_items()) == 3
        assert [i.id for i in store.list_items("v0.2")] == ["v0.2:1.1.1"]

    def test_get_item(self, store):
        item = store.get_item("v0.1:1.1.2")
        assert item.depends_on == ["1.1.1"]
        assert item.item_number == "1.1.2"

    def test_update_item_persists(self, store):
        store.update_item("v0.1:1.1.1", passed=True, working_branch="feat/story-v0.1-1.1.1")
        item = JsonStateStore(store.state_dir).get_item("v0.1:1.1.1")
        assert item.passed is True
        assert item.working_branch == "feat/story-v0.1-1.1.1"

    def test_fractional_priority(self, store):
        store.update_item("v0.1:1.1.1", priority=2.5)
        assert JsonStateStore(store.state_dir).get_item("v0.1:1.1.1").priority == 2.5

    def test_update_unknown_item(self, store):
        with pytest.raises(StoreError, match="Item not found"):
            store.update_item("9.9.9", passed=True)

    def test_update_unknown_field(self, store):
        with pytest.raises(StoreError, match="Cannot update field 'colour'"):
            store.update_item("v0.1:1.1.1", colour="red")

    def test_id_is_immutable(self, store):
        with pytest.raises(StoreError):
            store.update_item("v0.1:1.1.1", id="other")

    def test_project_name_kept(self, tmp_path):
        store = JsonStateStore(tmp_path)
        store.write_items([make_item("1.1.1")], project="demo")
        data = json.loads((tmp_path / "backlog.json").read_text())
        assert data["project"] == "demo"


class TestFileHandling:

    def test_corrupt_file_raises_store_error(self, store):
        (store.state_dir / "run_state.json").write_text("{not json")
        with pytest.raises(StoreError, match="Cannot read"):
            store.get_run_state()

    def test_schema_violation_on_read(self, store):
        (store.state_dir / "backlog.json").write_text(json.dumps({"items": [{"id": "x"}]}))
        with pytest.raises(StoreError, match="Invalid"):
            store.list_items()

    def test_refuses_invalid_write(self, store):
        with pytest.raises(ValidationError, match="Refusing to write"):
            store.update_run_state(attempts=-1)
        assert store.get_run_state().attempts == 0

    def test_no_temp_files_left(self, store):
        store.update_run_state(attempts=2)
        assert not list(store.state_dir.glob("*.tmp"))


class TestRunState:

    def test_default_is_idle(self, store):
        state = store.get_run_state()
        assert state.status is RunStatus.IDLE
        assert state.current_item is None
        assert state.attempts == 0

    def test_update_accepts_status_string(self, store):
        state = store.update_run_state(status="running", current_item="v0.1:1.1.1")
        assert state.status is RunStatus.RUNNING
        assert store.get_run_state().current_item == "v0.1:1.1.1"

    def test_update_stamps_last_updated(self, store):
        assert store.update_run_state(attempts=1).last_updated is not None

    def test_unknown_field(self, store):
        with pytest.raises(StoreError):
            store.update_run_state(colour="red")

    def test_written_with_version(self, store):
        store.update_run_state(attempts=1)
        data = json.loads((store.state_dir / "run_state.json").read_text())
        assert data["version"] == 1
        assert data["status"] == "idle"

    def test_reset_keeps_last_completed(self, store):
        store.update_run_state(
            status=RunStatus.RUNNING, current_item="v0.1:1.1.2",
            last_completed="v0.1:1.1.1", attempts=3, last_error="boom", failure_count=2,
        )
        state = store.reset_run_state()
        assert state.status is RunStatus.IDLE
        assert state.current_item is None
        assert state.attempts == 0
        assert state.last_error is None
        assert state.last_completed == "v0.1:1.1.1"


class TestCheckpoints:

    def test_missing(self, store):
        assert store.get_checkpoint("v0.1:1.1.1", CheckpointStage.BRANCH_CREATED) is None

    def test_save_and_get_typed_payload(self, store):
        store.save_checkpoint("v0.1:1.1.1", CheckpointStage.BRANCH_CREATED, BranchPayload(branch="feat/x"), 1)
        checkpoint = store.get_checkpoint("v0.1:1.1.1", CheckpointStage.BRANCH_CREATED)
        assert checkpoint.payload == BranchPayload(branch="feat/x")
        assert checkpoint.attempt == 1

    def test_default_payload(self, store):
        checkpoint = store.save_checkpoint("v0.1:1.1.1", CheckpointStage.VALIDATION_COMPLETE)
        assert checkpoint.payload == ValidationPayload()

    def test_save_is_upsert(self, store):
        store.save_checkpoint("v0.1:1.1.1", CheckpointStage.BRANCH_CREATED, BranchPayload(branch="a"))
        store.save_checkpoint("v0.1:1.1.1", CheckpointStage.BRANCH_CREATED, BranchPayload(branch="b"))
        rows = json.loads((store.state_dir / "checkpoints.json").read_text())
        assert len(rows) == 1
        assert rows[0]["data"] == {"branch": "b"}

    def test_list_in_stage_order(self, store):
        store.save_checkpoint("v0.1:1.1.1", CheckpointStage.AGENT_STARTED)
        store.save_checkpoint("v0.1:1.1.1", CheckpointStage.VALIDATION_COMPLETE)
        stages = [c.stage for c in store.list_checkpoints("v0.1:1.1.1")]
        assert stages == [CheckpointStage.VALIDATION_COMPLETE, CheckpointStage.AGENT_STARTED]

    def test_clear_only_that_item(self, store):
        store.save_checkpoint("v0.1:1.1.1", CheckpointStage.VALIDATION_COMPLETE)
        store.save_checkpoint("v0.1:1.1.2", CheckpointStage.VALIDATION_COMPLETE)
        store.clear_checkpoints("v0.1:1.1.1")
        assert store.list_checkpoints("v0.1:1.1.1") == []
        assert len(store.list_checkpoints("v0.1:1.1.2")) == 1

    def test_clear_with_keep(self, store):
        for stage in CheckpointStage:
            store.save_checkpoint("v0.1:1.1.1", stage)
        store.clear_checkpoints("v0.1:1.1.1", keep=(CheckpointStage.BRANCH_CREATED,))
        assert [c.stage for c in store.list_checkpoints("v0.1:1.1.1")] == [CheckpointStage.BRANCH_CREATED]


class TestSignals:

    def test_complete_marks_passed(self, store):
        signal = store.record_signal("v0.1:1.1.1", "complete")
        assert signal.kind is SignalKind.COMPLETE
        assert store.get_item("v0.1:1.1.1").passed is True
        assert store.get_signal("v0.1:1.1.1").kind is SignalKind.COMPLETE

    def test_blocked_keeps_message(self, store):
        store.record_signal("v0.1:1.1.1", SignalKind.BLOCKED, "needs API key")
        signal = store.get_signal("v0.1:1.1.1")
        assert signal.kind is SignalKind.BLOCKED
        assert signal.message == "needs API key"
        assert store.get_item("v0.1:1.1.1").passed is False

    def test_latest_signal_wins(self, store):
        store.record_signal("v0.1:1.1.1", SignalKind.PROGRESS, "halfway")
        store.record_signal("v0.1:1.1.1", SignalKind.COMPLETE)
        assert store.get_signal("v0.1:1.1.1").kind is SignalKind.COMPLETE

    def test_unknown_item(self, store):
        with pytest.raises(StoreError):
            store.record_signal("9.9.9", SignalKind.COMPLETE)

    def test_invalid_kind(self, store):
        with pytest.raises(ValueError):
            store.record_signal("v0.1:1.1.1", "finished")

    def test_clear(self, store):
        store.record_signal("v0.1:1.1.1", SignalKind.COMPLETE)
        store.clear_signal("v0.1:1.1.1")
        assert store.get_signal("v0.1:1.1.1") is None
        store.clear_signal("v0.1:1.1.1")


class TestExecutions:

    def test_record_and_filter(self, store):
        for item_id in ("v0.1:1.1.1", "v0.1:1.1.2", "v0.1:1.1.1"):
            store.record_execution(ExecutionRecord(
                item_id=item_id, attempt=1, success=True, duration_seconds=1.5,
                at="2026-01-01T00:00:00", input_tokens=10, output_tokens=20,
            ))
        assert len(store.list_executions()) == 3
        records = store.list_executions("v0.1:1.1.1")
        assert len(records) == 2
        assert records[0].output_tokens == 20
