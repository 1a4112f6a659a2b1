"""Exception taxonomy for workflow execution."""

from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for every error raised by the workflow engine."""


class ValidationError(WorkflowError):
    """Input or result data does not conform to the declared schema."""

    def __init__(self, message: str, errors: Optional[Any] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ResumeValidationError(ValidationError):
    """Resume data does not conform to the suspended step's resume schema.

    The execution stays ``suspended`` when this is raised.
    """


class StepExecutionError(WorkflowError):
    """A step's body raised; wraps the cause with step and workflow ids."""

    def __init__(
        self,
        step_id: str,
        workflow_id: str,
        cause: Optional[BaseException] = None,
        message: Optional[str] = None,
    ) -> None:
        self.step_id = step_id
        self.workflow_id = workflow_id
        self.cause = cause
        detail = message or (str(cause) if cause else "step failed")
        super().__init__(f"Step '{step_id}' in workflow '{workflow_id}' failed: {detail}")


class StepTimeoutError(StepExecutionError):
    """A step exceeded its ``timeout_seconds``."""


class CancellationError(WorkflowError):
    """Raised when the result of a cancelled execution is inspected."""

    def __init__(self, execution_id: str, reason: Optional[str] = None) -> None:
        self.execution_id = execution_id
        self.reason = reason
        super().__init__(
            f"Execution {execution_id} was cancelled"
            + (f": {reason}" if reason else "")
        )


class InvalidStateError(WorkflowError):
    """An operation is not legal for the execution's current status."""


class WorkflowNotFoundError(WorkflowError):
    """No workflow definition is registered under the requested id."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFoundError(WorkflowError):
    """No execution record exists for the requested id."""

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")
