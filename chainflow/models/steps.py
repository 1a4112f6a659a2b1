"""Step variants that make up a workflow chain.

Steps are immutable descriptions; the behaviour lives in
:mod:`chainflow.workflows.step_executors`. Every callable a step holds
receives a :class:`~chainflow.workflows.context.StepContext` and may be a
plain function or a coroutine function.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    ClassVar,
    Dict,
    Iterator,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from .workflow import RetryPolicy

if TYPE_CHECKING:
    from ..agents.base import Agent as AgentCapability
    from .definition import WorkflowDefinition


StepFunc = Callable[..., Any]


class StepType(str, Enum):
    """Tag identifying a step variant."""

    THEN = "then"
    TAP = "tap"
    AGENT = "agent"
    WHEN = "conditional-when"
    ALL = "parallel-all"
    RACE = "parallel-race"
    SUB_WORKFLOW = "workflow"
    SLEEP = "sleep"
    FOR_EACH = "foreach"
    BRANCH = "branch"
    LOOP = "loop"


class LoopType(str, Enum):
    """Exit rule of a :class:`Loop` step."""

    DO_WHILE = "do_while"
    DO_UNTIL = "do_until"


@dataclass(frozen=True, kw_only=True)
class BaseStep:
    """Fields shared by every step variant."""

    id: str
    name: Optional[str] = None
    resume_schema: Optional[Any] = None
    # Builder-made id; replaced by a positional one inside a definition
    generated_id: bool = field(default=False, compare=False, repr=False)

    type: ClassVar[StepType]

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError("Step id cannot be empty")

    @property
    def label(self) -> str:
        return self.name or self.id

    def children(self) -> Sequence["Step"]:
        """Statically known nested steps."""
        return ()


@dataclass(frozen=True, kw_only=True)
class Then(BaseStep):
    """Transform the pipeline value."""

    execute: StepFunc
    retry_policy: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = None

    type: ClassVar[StepType] = StepType.THEN


@dataclass(frozen=True, kw_only=True)
class Tap(BaseStep):
    """Observe the pipeline value; the return value is discarded."""

    execute: StepFunc

    type: ClassVar[StepType] = StepType.TAP


@dataclass(frozen=True, kw_only=True)
class Agent(BaseStep):
    """Delegate to an agent and use its structured output as the new value."""

    prompt: Union[str, StepFunc]
    agent: "AgentCapability"
    schema: Optional[Any] = None
    options: Dict[str, Any] = field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = None
    timeout_seconds: Optional[float] = None

    type: ClassVar[StepType] = StepType.AGENT


@dataclass(frozen=True, kw_only=True)
class When(BaseStep):
    """Run ``step`` only when ``condition`` holds; otherwise pass data through."""

    condition: StepFunc
    step: "Step"

    type: ClassVar[StepType] = StepType.WHEN

    def children(self) -> Sequence["Step"]:
        return (self.step,)


@dataclass(frozen=True, kw_only=True)
class All(BaseStep):
    """Run steps concurrently and collect their results positionally.

    ``steps`` may be a sequence or a function of the context returning one;
    the function is evaluated once when the step is dispatched.
    """

    steps: Union[Sequence["Step"], StepFunc]

    type: ClassVar[StepType] = StepType.ALL

    def children(self) -> Sequence["Step"]:
        return () if callable(self.steps) else tuple(self.steps)


@dataclass(frozen=True, kw_only=True)
class Race(BaseStep):
    """Run steps concurrently; the first one to settle decides the outcome."""

    steps: Sequence["Step"]

    type: ClassVar[StepType] = StepType.RACE

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.steps:
            raise ValueError(f"Race step '{self.id}' requires at least one step")

    def children(self) -> Sequence["Step"]:
        return tuple(self.steps)


@dataclass(frozen=True, kw_only=True)
class SubWorkflow(BaseStep):
    """Run another workflow definition as a single step."""

    workflow: "WorkflowDefinition"
    input_mapper: Optional[StepFunc] = None

    type: ClassVar[StepType] = StepType.SUB_WORKFLOW


@dataclass(frozen=True, kw_only=True)
class Sleep(BaseStep):
    """Pause for a duration (or until a moment) and pass data through."""

    duration_seconds: float = 0.0
    until: Optional[datetime] = None

    type: ClassVar[StepType] = StepType.SLEEP

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.duration_seconds < 0:
            raise ValueError("duration_seconds cannot be negative")


@dataclass(frozen=True, kw_only=True)
class ForEach(BaseStep):
    """Map ``step`` over each item of a list concurrently.

    Items come from ``items(ctx)`` when given, else from the pipeline value.
    """

    step: "Step"
    items: Optional[StepFunc] = None

    type: ClassVar[StepType] = StepType.FOR_EACH

    def children(self) -> Sequence["Step"]:
        return (self.step,)


@dataclass(frozen=True, kw_only=True)
class Branch(BaseStep):
    """Run every branch whose condition holds; ``None`` for the others."""

    branches: Sequence[Tuple[StepFunc, "Step"]]

    type: ClassVar[StepType] = StepType.BRANCH

    def children(self) -> Sequence["Step"]:
        return tuple(step for _, step in self.branches)


@dataclass(frozen=True, kw_only=True)
class Loop(BaseStep):
    """Run ``steps`` in order, repeating while/until ``condition`` holds."""

    steps: Sequence["Step"]
    condition: StepFunc
    loop_type: LoopType = LoopType.DO_WHILE
    max_iterations: Optional[int] = None

    type: ClassVar[StepType] = StepType.LOOP

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.steps:
            raise ValueError(f"Loop step '{self.id}' requires at least one step")

    def children(self) -> Sequence["Step"]:
        return tuple(self.steps)


Step = Union[Then, Tap, Agent, When, All, Race, SubWorkflow, Sleep, ForEach, Branch, Loop]


def walk_steps(steps: Sequence[Step]) -> Iterator[Step]:
    """Depth-first walk over steps and their statically known children."""
    for step in steps:
        yield step
        yield from walk_steps(step.children())


def find_step(steps: Sequence[Step], step_id: str) -> Optional[Step]:
    """Find a step by id, searching nested steps too."""
    for step in walk_steps(steps):
        if step.id == step_id:
            return step
    return None


def assign_positional_ids(steps: Sequence[Step]) -> Tuple[Step, ...]:
    """Replace builder-made ids with ids derived from each step's position.

    Positional ids are stable across processes, so a persisted execution
    can be matched against a definition rebuilt after a restart. Steps
    produced at run time by a dynamic ``All`` keep their builder ids.
    """
    return tuple(_with_positional_ids(step, str(index)) for index, step in enumerate(steps))


def _with_positional_ids(step: Step, path: str) -> Step:
    changes: Dict[str, Any] = {}
    if step.generated_id:
        prefix = step.id.rsplit("-", 1)[0]
        changes["id"] = f"{prefix}-{path}"

    if isinstance(step, (When, ForEach)):
        changes["step"] = _with_positional_ids(step.step, f"{path}.0")
    elif isinstance(step, (Race, Loop)) or (isinstance(step, All) and not callable(step.steps)):
        changes["steps"] = tuple(
            _with_positional_ids(child, f"{path}.{index}")
            for index, child in enumerate(step.steps)
        )
    elif isinstance(step, Branch):
        changes["branches"] = tuple(
            (condition, _with_positional_ids(child, f"{path}.{index}"))
            for index, (condition, child) in enumerate(step.branches)
        )
    return replace(step, **changes) if changes else step


def _step_id(prefix: str, step_id: Optional[str]) -> Dict[str, Any]:
    if step_id:
        return {"id": step_id}
    return {"id": f"{prefix}-{uuid.uuid4().hex[:8]}", "generated_id": True}


def and_then(execute: StepFunc, *, id: Optional[str] = None, **kwargs: Any) -> Then:
    return Then(**_step_id("then", id), execute=execute, **kwargs)


def and_tap(execute: StepFunc, *, id: Optional[str] = None, **kwargs: Any) -> Tap:
    return Tap(**_step_id("tap", id), execute=execute, **kwargs)


def and_agent(
    prompt: Union[str, StepFunc],
    agent: "AgentCapability",
    schema: Optional[Any] = None,
    *,
    id: Optional[str] = None,
    **kwargs: Any,
) -> Agent:
    return Agent(**_step_id("agent", id), prompt=prompt, agent=agent, schema=schema, **kwargs)


def and_when(condition: StepFunc, step: Step, *, id: Optional[str] = None, **kwargs: Any) -> When:
    return When(**_step_id("when", id), condition=condition, step=step, **kwargs)


def and_all(
    steps: Union[Sequence[Step], StepFunc], *, id: Optional[str] = None, **kwargs: Any
) -> All:
    return All(**_step_id("all", id), steps=steps, **kwargs)


def and_race(steps: Sequence[Step], *, id: Optional[str] = None, **kwargs: Any) -> Race:
    return Race(**_step_id("race", id), steps=tuple(steps), **kwargs)


def and_workflow(
    workflow: "WorkflowDefinition",
    input_mapper: Optional[StepFunc] = None,
    *,
    id: Optional[str] = None,
    **kwargs: Any,
) -> SubWorkflow:
    return SubWorkflow(
        **_step_id("workflow", id), workflow=workflow, input_mapper=input_mapper, **kwargs
    )


def and_sleep(
    duration_seconds: float = 0.0,
    *,
    until: Optional[datetime] = None,
    id: Optional[str] = None,
    **kwargs: Any,
) -> Sleep:
    return Sleep(
        **_step_id("sleep", id), duration_seconds=duration_seconds, until=until, **kwargs
    )


def and_for_each(
    step: Step, *, items: Optional[StepFunc] = None, id: Optional[str] = None, **kwargs: Any
) -> ForEach:
    return ForEach(**_step_id("foreach", id), step=step, items=items, **kwargs)


def and_branch(
    branches: Sequence[Tuple[StepFunc, Step]], *, id: Optional[str] = None, **kwargs: Any
) -> Branch:
    return Branch(**_step_id("branch", id), branches=tuple(branches), **kwargs)


def and_do_while(
    steps: Union[Step, Sequence[Step]],
    condition: StepFunc,
    *,
    id: Optional[str] = None,
    **kwargs: Any,
) -> Loop:
    return Loop(
        **_step_id("loop", id),
        steps=_as_tuple(steps),
        condition=condition,
        loop_type=LoopType.DO_WHILE,
        **kwargs,
    )


def and_do_until(
    steps: Union[Step, Sequence[Step]],
    condition: StepFunc,
    *,
    id: Optional[str] = None,
    **kwargs: Any,
) -> Loop:
    return Loop(
        **_step_id("loop", id),
        steps=_as_tuple(steps),
        condition=condition,
        loop_type=LoopType.DO_UNTIL,
        **kwargs,
    )


def _as_tuple(steps: Union[Step, Sequence[Step]]) -> Tuple[Step, ...]:
    if isinstance(steps, BaseStep):
        return (steps,)
    return tuple(steps)
