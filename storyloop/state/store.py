"""
Run-state store.

StateStore is the persistence contract the orchestrator depends on.
JsonStateStore implements it over a state directory:

    backlog.json      {"items": [...]}   work items
    run_state.json    singleton RunState
    checkpoints.json  [Checkpoint]       keyed by (item_id, stage)
    signals.json      {item_id: Signal}  latest agent signal per item
    executions.json   [ExecutionRecord]  agent usage log

Every write is schema-validated and atomic (temp file + os.replace). An
unreadable or invalid file raises StoreError.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from storyloop.lib.types import (
    Checkpoint,
    CheckpointStage,
    ExecutionRecord,
    PAYLOAD_TYPES,
    RunState,
    RunStatus,
    Signal,
    SignalKind,
    WorkItem,
)
from storyloop.lib.validate import ValidationError, validate, validate_before_write

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """State could not be read or written."""
    pass


def _now() -> str:
    return datetime.now().isoformat()


class StateStore(ABC):
    """Persistence contract for items, run state, checkpoints and signals."""

    # Work items

    @abstractmethod
    def list_items(self, version: Optional[str] = None) -> list[WorkItem]:
        """All items, or only those in version when given."""

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[WorkItem]:
        pass

    @abstractmethod
    def update_item(self, item_id: str, **fields) -> WorkItem:
        """Set fields on one item. Raises StoreError for unknown ids or fields."""

    # Run state

    @abstractmethod
    def get_run_state(self) -> RunState:
        pass

    @abstractmethod
    def update_run_state(self, **fields) -> RunState:
        pass

    @abstractmethod
    def reset_run_state(self) -> RunState:
        """Back to idle. last_completed is preserved."""

    # Checkpoints

    @abstractmethod
    def get_checkpoint(self, item_id: str, stage: CheckpointStage) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    def save_checkpoint(self, item_id: str, stage: CheckpointStage, payload=None, attempt: int = 0) -> Checkpoint:
        """Upsert the (item_id, stage) checkpoint. Safe to repeat."""

    @abstractmethod
    def clear_checkpoints(self, item_id: str, keep: Iterable[CheckpointStage] = ()) -> None:
        pass

    def list_checkpoints(self, item_id: str) -> list[Checkpoint]:
        found = []
        for stage in CheckpointStage:
            checkpoint = self.get_checkpoint(item_id, stage)
            if checkpoint is not None:
                found.append(checkpoint)
        return found

    # Signals

    @abstractmethod
    def record_signal(self, item_id: str, kind, message: Optional[str] = None) -> Signal:
        """Record an agent signal. A complete signal also marks the item passed."""

    @abstractmethod
    def get_signal(self, item_id: str) -> Optional[Signal]:
        pass

    @abstractmethod
    def clear_signal(self, item_id: str) -> None:
        pass

    # Executions

    @abstractmethod
    def record_execution(self, record: ExecutionRecord) -> None:
        pass

    @abstractmethod
    def list_executions(self, item_id: Optional[str] = None) -> list[ExecutionRecord]:
        pass


class JsonStateStore(StateStore):
    """StateStore over JSON files in a state directory."""

    BACKLOG_FILE = "backlog.json"
    RUN_STATE_FILE = "run_state.json"
    CHECKPOINTS_FILE = "checkpoints.json"
    SIGNALS_FILE = "signals.json"
    EXECUTIONS_FILE = "executions.json"

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    # File plumbing

    def _read(self, filename: str, schema_name: str, default):
        path = self.state_dir / filename
        if not path.exists():
            return default
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read {path}: {e}") from e
        try:
            validate(data, schema_name)
        except ValidationError as e:
            raise StoreError(f"Invalid {path}: {e}") from e
        return data

    def _write(self, filename: str, schema_name: str, data) -> None:
        path = self.state_dir / filename
        validate_before_write(data, schema_name, path)
        tmp_path = path.with_suffix(".tmp")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError(f"Cannot write {path}: {e}") from e

    # Work items

    def _load_backlog(self) -> dict:
        return self._read(self.BACKLOG_FILE, "backlog", {"items": []})

    def write_items(self, items: list[WorkItem], project: Optional[str] = None) -> None:
        """Replace the backlog. Used by import and tests."""
        data = {"items": [item.to_dict() for item in items]}
        if project:
            data["project"] = project
        self._write(self.BACKLOG_FILE, "backlog", data)

    def list_items(self, version: Optional[str] = None) -> list[WorkItem]:
        items = [WorkItem.from_dict(d) for d in self._load_backlog()["items"]]
        if version is not None:
            items = [item for item in items if item.version == version]
        return items

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        for data in self._load_backlog()["items"]:
            if data["id"] == item_id:
                return WorkItem.from_dict(data)
        return None

    def update_item(self, item_id: str, **fields) -> WorkItem:
        backlog = self._load_backlog()
        for index, data in enumerate(backlog["items"]):
            if data["id"] != item_id:
                continue
            item = WorkItem.from_dict(data)
            for name, value in fields.items():
                if name == "id" or not hasattr(item, name):
                    raise StoreError(f"Cannot update field '{name}' on {item_id}")
                setattr(item, name, value)
            backlog["items"][index] = item.to_dict()
            self._write(self.BACKLOG_FILE, "backlog", backlog)
            logger.debug(f"[STATE] Item {item_id} updated: {sorted(fields)}")
            return item
        raise StoreError(f"Item not found: {item_id}")

    # Run state

    def get_run_state(self) -> RunState:
        data = self._read(self.RUN_STATE_FILE, "run_state", None)
        if data is None:
            return RunState()
        return RunState.from_dict(data)

    def _save_run_state(self, state: RunState) -> RunState:
        state.last_updated = _now()
        self._write(self.RUN_STATE_FILE, "run_state", state.to_dict())
        return state

    def update_run_state(self, **fields) -> RunState:
        state = self.get_run_state()
        for name, value in fields.items():
            if not hasattr(state, name):
                raise StoreError(f"Unknown run state field '{name}'")
            if name == "status" and not isinstance(value, RunStatus):
                value = RunStatus(value)
            setattr(state, name, value)
        return self._save_run_state(state)

    def reset_run_state(self) -> RunState:
        previous = self.get_run_state()
        return self._save_run_state(RunState(last_completed=previous.last_completed))

    # Checkpoints

    def _load_checkpoints(self) -> list[dict]:
        return self._read(self.CHECKPOINTS_FILE, "checkpoints", [])

    def get_checkpoint(self, item_id: str, stage: CheckpointStage) -> Optional[Checkpoint]:
        for data in self._load_checkpoints():
            if data["item_id"] == item_id and data["stage"] == stage.value:
                return Checkpoint.from_dict(data)
        return None

    def save_checkpoint(self, item_id: str, stage: CheckpointStage, payload=None, attempt: int = 0) -> Checkpoint:
        if payload is None:
            payload = PAYLOAD_TYPES[stage]()
        checkpoint = Checkpoint(item_id=item_id, stage=stage, attempt=attempt, at=_now(), payload=payload)

        rows = [
            row for row in self._load_checkpoints()
            if not (row["item_id"] == item_id and row["stage"] == stage.value)
        ]
        rows.append(checkpoint.to_dict())
        self._write(self.CHECKPOINTS_FILE, "checkpoints", rows)
        logger.debug(f"[STATE] Checkpoint {stage.value} saved for {item_id}")
        return checkpoint

    def clear_checkpoints(self, item_id: str, keep: Iterable[CheckpointStage] = ()) -> None:
        kept = {stage.value for stage in keep}
        rows = [
            row for row in self._load_checkpoints()
            if row["item_id"] != item_id or row["stage"] in kept
        ]
        self._write(self.CHECKPOINTS_FILE, "checkpoints", rows)
        logger.debug(f"[STATE] Checkpoints cleared for {item_id} (kept {sorted(kept)})")

    # Signals

    def _load_signals(self) -> dict:
        return self._read(self.SIGNALS_FILE, "signals", {})

    def record_signal(self, item_id: str, kind, message: Optional[str] = None) -> Signal:
        if not isinstance(kind, SignalKind):
            kind = SignalKind(kind)
        if self.get_item(item_id) is None:
            raise StoreError(f"Item not found: {item_id}")

        signal = Signal(item_id=item_id, kind=kind, at=_now(), message=message)
        signals = self._load_signals()
        signals[item_id] = signal.to_dict()
        self._write(self.SIGNALS_FILE, "signals", signals)

        if kind is SignalKind.COMPLETE:
            self.update_item(item_id, passed=True)
        logger.info(f"[SIGNAL] {item_id}: {kind.value}" + (f" ({message})" if message else ""))
        return signal

    def get_signal(self, item_id: str) -> Optional[Signal]:
        data = self._load_signals().get(item_id)
        return Signal.from_dict(data) if data else None

    def clear_signal(self, item_id: str) -> None:
        signals = self._load_signals()
        if signals.pop(item_id, None) is not None:
            self._write(self.SIGNALS_FILE, "signals", signals)

    # Executions

    def record_execution(self, record: ExecutionRecord) -> None:
        rows = self._read(self.EXECUTIONS_FILE, "executions", [])
        rows.append(record.to_dict())
        self._write(self.EXECUTIONS_FILE, "executions", rows)

    def list_executions(self, item_id: Optional[str] = None) -> list[ExecutionRecord]:
        rows = self._read(self.EXECUTIONS_FILE, "executions", [])
        records = [ExecutionRecord.from_dict(row) for row in rows]
        if item_id is not None:
            records = [r for r in records if r.item_id == item_id]
        return records
