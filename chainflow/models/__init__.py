"""Data models package."""

from .definition import WorkflowDefinition, WorkflowHooks
from .steps import (
    Agent,
    All,
    Branch,
    ForEach,
    Loop,
    LoopType,
    Race,
    Sleep,
    Step,
    StepType,
    SubWorkflow,
    Tap,
    Then,
    When,
    and_agent,
    and_all,
    and_branch,
    and_do_until,
    and_do_while,
    and_for_each,
    and_race,
    and_sleep,
    and_tap,
    and_then,
    and_when,
    and_workflow,
)
from .workflow import (
    CancelRequest,
    Execution,
    ResumeRequest,
    RetryPolicy,
    RunRequest,
    StateTransition,
    StepData,
    StreamEvent,
    StreamEventType,
    Suspension,
    Usage,
    WorkflowStatus,
)

__all__ = [
    "WorkflowStatus",
    "StreamEventType",
    "RetryPolicy",
    "Usage",
    "Suspension",
    "StateTransition",
    "Execution",
    "StreamEvent",
    "StepData",
    "RunRequest",
    "ResumeRequest",
    "CancelRequest",
    "WorkflowDefinition",
    "WorkflowHooks",
    "Step",
    "StepType",
    "LoopType",
    "Then",
    "Tap",
    "Agent",
    "When",
    "All",
    "Race",
    "SubWorkflow",
    "Sleep",
    "ForEach",
    "Branch",
    "Loop",
    "and_then",
    "and_tap",
    "and_agent",
    "and_when",
    "and_all",
    "and_race",
    "and_workflow",
    "and_sleep",
    "and_for_each",
    "and_branch",
    "and_do_while",
    "and_do_until",
]
