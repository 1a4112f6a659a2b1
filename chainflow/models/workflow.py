"""Execution state, stream events and API schemas for workflow runs."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from ..errors import CancellationError, InvalidStateError, StepExecutionError


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every record."""
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    """Workflow execution states."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[WorkflowStatus, frozenset] = {
    WorkflowStatus.RUNNING: frozenset(
        {
            WorkflowStatus.SUSPENDED,
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        }
    ),
    WorkflowStatus.SUSPENDED: frozenset({WorkflowStatus.RUNNING, WorkflowStatus.CANCELLED}),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}


class StreamEventType(str, Enum):
    """Event types emitted by the engine itself."""

    WORKFLOW_START = "workflow-start"
    STEP_START = "step-start"
    STEP_COMPLETE = "step-complete"
    WORKFLOW_SUSPENDED = "workflow-suspended"
    WORKFLOW_RESUMED = "workflow-resumed"
    WORKFLOW_COMPLETE = "workflow-complete"
    WORKFLOW_ERROR = "workflow-error"
    WORKFLOW_CANCELLED = "workflow-cancelled"


class RetryPolicy(BaseModel):
    """Retry configuration for failed steps."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    initial_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=300.0, ge=0.0)


class Usage(BaseModel):
    """Token consumption accumulated from agent steps."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "Usage") -> None:
        """Sum another usage record into this one."""
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens


class Suspension(BaseModel):
    """Where and why an execution paused.

    ``step_id`` is the top-level step the run re-enters on resume;
    ``origin_step_id`` is the (possibly nested) step that asked to suspend.
    ``child`` carries the suspended sub-workflow execution, if any.
    """

    step_id: str
    origin_step_id: str
    reason: Optional[str] = None
    resume_schema: Optional[Dict[str, Any]] = None
    suspended_at: datetime = Field(default_factory=utcnow)
    child: Optional["Execution"] = None


class StateTransition(BaseModel):
    """State machine transition record."""

    from_state: WorkflowStatus
    to_state: WorkflowStatus
    timestamp: datetime = Field(default_factory=utcnow)
    trigger: str = Field(..., description="What triggered the transition")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Execution(BaseModel):
    """Runtime state of one workflow run; also the persisted record."""

    execution_id: str
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.RUNNING
    current_step_index: int = 0
    input: Any = None
    data: Any = None
    step_results: Dict[str, Any] = Field(default_factory=dict)
    usage: Usage = Field(default_factory=Usage)
    suspension: Optional[Suspension] = None

    # Timing
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Failure details
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    cancel_reason: Optional[str] = None

    # Caller metadata
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    # Audit trail
    history: List[StateTransition] = Field(default_factory=list)

    _engine: Any = PrivateAttr(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(
        self, new_status: WorkflowStatus, trigger: Optional[str] = None, **metadata: Any
    ) -> StateTransition:
        """Move to ``new_status`` and record the transition.

        Raises:
            InvalidStateError: if the transition is not allowed
        """
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Execution {self.execution_id} cannot move from "
                f"{self.status.value} to {new_status.value}"
            )

        transition = StateTransition(
            from_state=self.status,
            to_state=new_status,
            trigger=trigger or f"State change: {self.status.value} -> {new_status.value}",
            metadata={"current_step_index": self.current_step_index, **metadata},
        )
        self.status = new_status
        self.updated_at = transition.timestamp
        if new_status in TERMINAL_STATUSES:
            self.completed_at = transition.timestamp
        self.history.append(transition)
        return transition

    def bind(self, engine: Any) -> "Execution":
        """Attach the engine that owns this execution so ``resume`` works."""
        self._engine = engine
        return self

    async def resume(self, resume_data: Any = None) -> "Execution":
        """Resume this suspended execution through its engine."""
        if self._engine is None:
            raise InvalidStateError(
                f"Execution {self.execution_id} is not bound to an engine"
            )
        return await self._engine.resume(self.execution_id, resume_data)

    @property
    def result(self) -> Any:
        """Final data of a completed run.

        Raises:
            CancellationError: the execution was cancelled
            StepExecutionError: the execution failed
            InvalidStateError: the execution has not finished yet
        """
        if self.status == WorkflowStatus.COMPLETED:
            return self.data
        if self.status == WorkflowStatus.CANCELLED:
            raise CancellationError(self.execution_id, self.cancel_reason)
        if self.status == WorkflowStatus.FAILED:
            raise StepExecutionError(
                self.failed_step_id or "workflow", self.workflow_id, message=self.error
            )
        raise InvalidStateError(
            f"Execution {self.execution_id} is {self.status.value}; no result yet"
        )


Suspension.model_rebuild()


class StreamEvent(BaseModel):
    """One event published on an execution's stream."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str
    from_: str = Field(alias="from")
    execution_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Any = None

    def to_wire(self) -> Dict[str, Any]:
        """JSON-safe dict with ``from`` as the key name."""
        return self.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class StepData:
    """Recorded output of a step that has already executed."""

    step_id: str
    output: Any


class RunRequest(BaseModel):
    """API request for starting a workflow run."""

    input: Any = None
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ResumeRequest(BaseModel):
    """API request for resuming a suspended execution."""

    resume_data: Any = None


class CancelRequest(BaseModel):
    """API request for cancelling an execution."""

    reason: Optional[str] = Field(None, max_length=1000)
