"""Workflow definition and lifecycle hooks."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Tuple

from .steps import Step, assign_positional_ids, find_step
from .workflow import Execution

Hook = Callable[[Execution], Awaitable[None]]


@dataclass(frozen=True)
class WorkflowHooks:
    """Optional async callbacks invoked at execution lifecycle points.

    Hook failures are logged and never change the run's outcome.
    """

    on_start: Optional[Hook] = None
    on_step_start: Optional[Hook] = None
    on_step_end: Optional[Hook] = None
    on_suspend: Optional[Hook] = None
    on_error: Optional[Hook] = None
    on_end: Optional[Hook] = None


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable description of a workflow: schemas plus an ordered step chain."""

    id: str
    name: str
    steps: Tuple[Step, ...]
    input_schema: Optional[Any] = None
    result_schema: Optional[Any] = None
    description: Optional[str] = None
    hooks: WorkflowHooks = field(default_factory=WorkflowHooks)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", assign_positional_ids(self.steps))
        if not self.steps:
            raise ValueError(f"Workflow '{self.id}' requires at least one step")

        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}' in workflow '{self.id}'")
            seen.add(step.id)

    @property
    def step_ids(self) -> Sequence[str]:
        return [step.id for step in self.steps]

    def index_of(self, step_id: str) -> int:
        """Position of a top-level step; raises ``KeyError`` when absent."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        raise KeyError(step_id)

    def find_step(self, step_id: str) -> Optional[Step]:
        return find_step(self.steps, step_id)
