"""
Shared data types for storyloop.

Records that cross the state store boundary live here to avoid circular
imports between the store, the scorer and the orchestrator.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Optional


@dataclass
class WorkItem:
    """A single unit of backlog work.

    The id is "<phase>.<epic>.<number>", prefixed with "<version>:" when the
    item belongs to a version ("v0.1:1.2.3"). depends_on holds unresolved
    reference strings; see storyloop.graph.references for the grammar.
    """
    id: str
    title: str
    phase: int
    epic: int
    number: int
    version: Optional[str] = None
    intent: str = ""
    description: str = ""
    acceptance: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    priority: Optional[float] = None
    passed: bool = False
    merged: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None
    external_deps: list[dict] = field(default_factory=list)  # [{"name": ..., "description": ...}]
    external_deps_report: Optional[str] = None
    working_branch: Optional[str] = None
    review_url: Optional[str] = None
    merge_commit: Optional[str] = None

    @property
    def item_number(self) -> str:
        """The id without its version prefix ("v0.1:1.2.3" -> "1.2.3")."""
        return self.id.split(":", 1)[-1]

    @property
    def retired(self) -> bool:
        return self.merged or self.skipped

    @classmethod
    def from_dict(cls, data: dict) -> "WorkItem":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


class RunStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING_GATE = "waiting_gate"
    BLOCKED = "blocked"


@dataclass
class RunState:
    """Singleton execution record.

    current_item is set exactly while status is running, waiting_gate or
    blocked. last_completed survives across items for scoring continuity.
    """
    current_item: Optional[str] = None
    status: RunStatus = RunStatus.IDLE
    branch: Optional[str] = None
    review_url: Optional[str] = None
    attempts: int = 0
    last_completed: Optional[str] = None
    last_error: Optional[str] = None
    failure_count: int = 0
    started_at: Optional[str] = None
    last_updated: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "RunState":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = RunStatus(values.get("status", "idle"))
        return cls(**values)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["version"] = 1
        return data


class CheckpointStage(Enum):
    """Stage checkpoints in the order an item clears them."""
    EXTERNAL_DEPS_COMPLETE = "external_deps_complete"
    VALIDATION_COMPLETE = "validation_complete"
    BRANCH_CREATED = "branch_created"
    AGENT_STARTED = "claude_started"
    AGENT_COMPLETE = "claude_complete"
    PR_CREATED = "pr_created"


@dataclass
class ExternalDepsPayload:
    report: str = ""


@dataclass
class ValidationPayload:
    clarification: Optional[str] = None
    feedback: Optional[str] = None  # Review feedback carried into the next brief


@dataclass
class BranchPayload:
    branch: str = ""


@dataclass
class AgentPayload:
    message: Optional[str] = None


@dataclass
class ReviewPayload:
    review_url: str = ""


PAYLOAD_TYPES = {
    CheckpointStage.EXTERNAL_DEPS_COMPLETE: ExternalDepsPayload,
    CheckpointStage.VALIDATION_COMPLETE: ValidationPayload,
    CheckpointStage.BRANCH_CREATED: BranchPayload,
    CheckpointStage.AGENT_STARTED: AgentPayload,
    CheckpointStage.AGENT_COMPLETE: AgentPayload,
    CheckpointStage.PR_CREATED: ReviewPayload,
}


def payload_from_data(stage: CheckpointStage, data: dict | None):
    """Build the typed payload for a stage, ignoring unknown keys."""
    payload_type = PAYLOAD_TYPES[stage]
    known = {f.name for f in fields(payload_type)}
    return payload_type(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class Checkpoint:
    """Durable marker that an item cleared a stage."""
    item_id: str
    stage: CheckpointStage
    attempt: int
    at: str
    payload: object = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "stage": self.stage.value,
            "attempt": self.attempt,
            "at": self.at,
            "data": asdict(self.payload) if self.payload is not None else {},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        stage = CheckpointStage(data["stage"])
        return cls(
            item_id=data["item_id"],
            stage=stage,
            attempt=data.get("attempt", 0),
            at=data.get("at", ""),
            payload=payload_from_data(stage, data.get("data")),
        )


class SignalKind(Enum):
    COMPLETE = "complete"
    BLOCKED = "blocked"
    PROGRESS = "progress"


@dataclass
class Signal:
    """Out-of-band report from the coding agent."""
    item_id: str
    kind: SignalKind
    at: str
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "kind": self.kind.value,
            "message": self.message,
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Signal":
        return cls(
            item_id=data["item_id"],
            kind=SignalKind(data["kind"]),
            at=data.get("at", ""),
            message=data.get("message"),
        )


@dataclass
class ExecutionRecord:
    """Usage metrics for one agent invocation."""
    item_id: str
    attempt: int
    success: bool
    duration_seconds: float
    at: str
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
