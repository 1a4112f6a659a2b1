"""chainflow: sequential step-chain workflow engine with suspend/resume and streaming."""

from .errors import (
    CancellationError,
    ExecutionNotFoundError,
    InvalidStateError,
    ResumeValidationError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
    WorkflowError,
    WorkflowNotFoundError,
)
from .main import create_app
from .models import (
    Execution,
    RetryPolicy,
    StreamEvent,
    Usage,
    WorkflowDefinition,
    WorkflowHooks,
    WorkflowStatus,
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
from .workflows import (
    RunOptions,
    StepContext,
    SuspendController,
    Workflow,
    WorkflowEngine,
    WorkflowStream,
    create_workflow,
)

__all__ = [
    "create_app",
    "create_workflow",
    "Workflow",
    "WorkflowEngine",
    "WorkflowStream",
    "WorkflowDefinition",
    "WorkflowHooks",
    "WorkflowStatus",
    "Execution",
    "RetryPolicy",
    "StreamEvent",
    "Usage",
    "RunOptions",
    "StepContext",
    "SuspendController",
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
    "WorkflowError",
    "ValidationError",
    "ResumeValidationError",
    "StepExecutionError",
    "StepTimeoutError",
    "CancellationError",
    "InvalidStateError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
]
