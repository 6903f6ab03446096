"""
Execution State

One run of one pinned playbook version against one customer:
- Status state machine with an explicit transition table
- Per-node outcomes for audit and debugging
- Execution context that node outputs are merged into
- Structured last error once the run has failed
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from playbook_engine.exceptions import EngineInvariantViolation


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Lifecycle states of an execution."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class TriggerKind(str, Enum):
    """What caused an execution to be created."""
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"
    EVENT = "event"


class TriggerInfo(BaseModel):
    """Triggering cause recorded on the execution."""
    kind: TriggerKind
    actor_id: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)


class NodeOutcomeStatus(str, Enum):
    """Execution status of a node within one run."""
    RUNNING = "running"
    WAITING = "waiting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class NodeOutcome(BaseModel):
    """Audit record of one node within one run."""
    node_id: str
    node_type: str
    status: NodeOutcomeStatus = NodeOutcomeStatus.RUNNING
    attempts: int = 0
    branch: Optional[str] = None
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    wait_until: Optional[datetime] = None


class ExecutionError(BaseModel):
    """Structured last error of a failed execution."""
    kind: str
    message: str
    node_id: Optional[str] = None
    attempts: int = 0


class Execution(BaseModel):
    """
    Execution record.

    Created by the dispatcher in PENDING, mutated only by the engine, and
    retained forever; terminal states are final.
    """
    id: str
    playbook_id: str
    playbook_version: int
    organization_id: str
    customer_id: str

    status: ExecutionStatus = ExecutionStatus.PENDING
    current_node_id: Optional[str] = None
    node_outcomes: Dict[str, NodeOutcome] = Field(default_factory=dict)
    path: List[str] = Field(default_factory=list)  # node ids in visit order
    context: Dict[str, Any] = Field(default_factory=dict)

    trigger: TriggerInfo
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    # Set while parked on a wait node
    wait_until: Optional[datetime] = None

    last_error: Optional[ExecutionError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_waiting(self) -> bool:
        return self.wait_until is not None

    def can_transition(self, target: ExecutionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition(self, target: ExecutionStatus, at: Optional[datetime] = None, attempted: Optional[str] = None) -> None:
        """
        Move to `target`.

        Raises:
            EngineInvariantViolation: If the transition is not allowed
        """
        if not self.can_transition(target):
            allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[self.status])
            raise EngineInvariantViolation(
                f"Illegal transition {self.status.value} -> {target.value} "
                f"for execution {self.id}",
                current_state=self.status.value,
                attempted=attempted or target.value,
                allowed_states=allowed,
            )

        now = at or utcnow()
        if target == ExecutionStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if target.is_terminal:
            self.completed_at = now
            self.wait_until = None

        self.status = target
        self.updated_at = now

    def enter_node(self, node_id: str, node_type: str, at: datetime) -> NodeOutcome:
        """Make `node_id` current and open a fresh outcome record for it."""
        self.current_node_id = node_id
        self.path.append(node_id)
        outcome = NodeOutcome(node_id=node_id, node_type=node_type, started_at=at)
        self.node_outcomes[node_id] = outcome
        self.updated_at = at
        return outcome

    def current_outcome(self) -> Optional[NodeOutcome]:
        if self.current_node_id is None:
            return None
        return self.node_outcomes.get(self.current_node_id)

    def fail(self, error: ExecutionError, at: Optional[datetime] = None) -> None:
        """Record the last error and move to FAILED."""
        self.transition(ExecutionStatus.FAILED, at=at)
        self.last_error = error

    def summary(self) -> Dict[str, Any]:
        """Compact representation for event payloads."""
        return {
            "execution_id": self.id,
            "playbook_id": self.playbook_id,
            "playbook_version": self.playbook_version,
            "organization_id": self.organization_id,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "current_node_id": self.current_node_id,
            "waiting": self.is_waiting,
            "last_error": self.last_error.model_dump() if self.last_error else None,
        }
