"""Per-variant step execution and failure policy."""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..agents.base import AgentResult
from ..errors import StepExecutionError, StepTimeoutError, WorkflowError
from ..models.definition import WorkflowDefinition
from ..models.steps import (
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
)
from ..models.workflow import Execution, RetryPolicy, Usage, WorkflowStatus, utcnow
from .context import RunOptions, StepContext, SuspendRequest
from .stream import StreamController
from .suspend import SuspendController

if TYPE_CHECKING:
    from .executor import ChainExecutor


class OutcomeKind(str, Enum):
    """Control-flow result of one step."""

    VALUE = "value"
    SUSPEND = "suspend"
    ERROR = "error"
    CANCEL = "cancel"


@dataclass(frozen=True)
class StepOutcome:
    """Tagged result every step executor returns.

    ``skipped`` marks a value that passed through untouched (a ``When``
    whose condition was false) and must not be recorded as a step result.
    """

    kind: OutcomeKind
    value: Any = None
    error: Optional[WorkflowError] = None
    origin_step_id: Optional[str] = None
    reason: Optional[str] = None
    child: Optional[Execution] = None
    skipped: bool = False

    @classmethod
    def of(cls, value: Any, skipped: bool = False) -> "StepOutcome":
        return cls(kind=OutcomeKind.VALUE, value=value, skipped=skipped)

    @classmethod
    def suspend(
        cls,
        origin_step_id: str,
        reason: Optional[str] = None,
        child: Optional[Execution] = None,
    ) -> "StepOutcome":
        return cls(
            kind=OutcomeKind.SUSPEND, origin_step_id=origin_step_id, reason=reason, child=child
        )

    @classmethod
    def failure(cls, error: WorkflowError) -> "StepOutcome":
        return cls(kind=OutcomeKind.ERROR, error=error)

    @classmethod
    def cancel(cls, reason: Optional[str] = None) -> "StepOutcome":
        return cls(kind=OutcomeKind.CANCEL, reason=reason)


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, else return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


def _settled(outcome: StepOutcome) -> StepOutcome:
    if isinstance(outcome.value, SuspendRequest):
        request = outcome.value
        return StepOutcome.suspend(request.step_id, request.reason)
    return outcome


def combine_outcomes(outcomes: Sequence[Optional[StepOutcome]]) -> StepOutcome:
    """Fold concurrent branch outcomes into one.

    The first error by position wins, then cancellation, then the first
    suspension; otherwise the positional list of values (``None`` for
    branches that did not run).
    """
    ran = [outcome for outcome in outcomes if outcome is not None]
    for kind in (OutcomeKind.ERROR, OutcomeKind.CANCEL, OutcomeKind.SUSPEND):
        for outcome in ran:
            if outcome.kind == kind:
                return outcome
    return StepOutcome.of([outcome.value if outcome else None for outcome in outcomes])


class StepRunner:
    """Dispatches steps of one execution to their variant executors."""

    def __init__(
        self,
        executor: "ChainExecutor",
        definition: WorkflowDefinition,
        execution: Execution,
        options: RunOptions,
        controller: SuspendController,
        stream: StreamController,
        usage: Optional[Usage] = None,
    ) -> None:
        self.executor = executor
        self.definition = definition
        self.execution = execution
        self.options = options
        self.controller = controller
        self.stream = stream
        # Where agent and sub-workflow usage is added; a fork keeps its own
        self.usage = usage if usage is not None else execution.usage
        # Suspended sub-workflow executions waiting to be resumed, by step id
        self.resume_children: Dict[str, Execution] = {}
        self._abandoned: Set[asyncio.Task] = set()
        self._handlers: Dict[StepType, Callable[[Any, StepContext], Awaitable[StepOutcome]]] = {
            StepType.THEN: self._execute_then,
            StepType.TAP: self._execute_tap,
            StepType.AGENT: self._execute_agent,
            StepType.WHEN: self._execute_when,
            StepType.ALL: self._execute_all,
            StepType.RACE: self._execute_race,
            StepType.SUB_WORKFLOW: self._execute_sub_workflow,
            StepType.SLEEP: self._execute_sleep,
            StepType.FOR_EACH: self._execute_for_each,
            StepType.BRANCH: self._execute_branch,
            StepType.LOOP: self._execute_loop,
        }

    def fork(self) -> "StepRunner":
        """Runner sharing this one's state except for a separate usage tally."""
        runner = StepRunner(
            self.executor,
            self.definition,
            self.execution,
            self.options,
            self.controller,
            self.stream,
            usage=Usage(),
        )
        runner.resume_children = self.resume_children
        runner._abandoned = self._abandoned
        return runner

    async def execute(self, step: Step, ctx: StepContext) -> StepOutcome:
        """Run ``step`` and convert whatever it does into a :class:`StepOutcome`."""
        handler = self._handlers.get(step.type)
        if handler is None:
            return StepOutcome.failure(
                StepExecutionError(
                    step.id, self.definition.id, message=f"Unsupported step type: {step.type}"
                )
            )

        logger.debug(f"Executing step: {step.label} (ID: {step.id}, type: {step.type.value})")
        try:
            return _settled(await handler(step, ctx))
        except StepExecutionError as e:
            return StepOutcome.failure(e)
        except Exception as e:
            logger.error(f"Step execution failed: {step.id} - {e}")
            return StepOutcome.failure(StepExecutionError(step.id, self.definition.id, cause=e))

    # -- policies ----------------------------------------------------------

    async def _call_with_policy(
        self,
        step: Step,
        func: Callable[[], Any],
        retry_policy: Optional[RetryPolicy],
        timeout_seconds: Optional[float],
    ) -> Any:
        """Call ``func`` honouring the step's timeout and retry policy."""
        timeout = timeout_seconds
        if timeout is None:
            timeout = self.executor.default_timeout

        async def invoke_once() -> Any:
            if timeout is None:
                return await maybe_await(func())
            try:
                return await asyncio.wait_for(maybe_await(func()), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise StepTimeoutError(
                    step.id, self.definition.id, cause=e, message=f"Step timeout after {timeout}s"
                ) from e

        if retry_policy is None or retry_policy.max_attempts <= 1:
            return await invoke_once()

        def log_retry(retry_state: Any) -> None:
            logger.info(
                f"Retrying step {step.id} "
                f"(attempt {retry_state.attempt_number}/{retry_policy.max_attempts})"
            )

        result = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(retry_policy.max_attempts),
            wait=wait_exponential(
                multiplier=retry_policy.initial_delay_seconds,
                exp_base=retry_policy.backoff_multiplier,
                max=retry_policy.max_delay_seconds,
            ),
            retry=retry_if_exception_type(Exception),
            before_sleep=log_retry,
            reraise=True,
        ):
            with attempt:
                result = await invoke_once()
        return result

    async def _run_concurrently(
        self, branches: Sequence[tuple]
    ) -> List[StepOutcome]:
        tasks = [
            asyncio.create_task(self.execute(step, branch_ctx)) for step, branch_ctx in branches
        ]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    # -- variants ----------------------------------------------------------

    async def _execute_then(self, step: Then, ctx: StepContext) -> StepOutcome:
        result = await self._call_with_policy(
            step, lambda: step.execute(ctx), step.retry_policy, step.timeout_seconds
        )
        return StepOutcome.of(result)

    async def _execute_tap(self, step: Tap, ctx: StepContext) -> StepOutcome:
        result = await maybe_await(step.execute(ctx))
        if isinstance(result, SuspendRequest):
            return StepOutcome.suspend(result.step_id, result.reason)
        return StepOutcome.of(ctx.data)

    async def _execute_agent(self, step: Agent, ctx: StepContext) -> StepOutcome:
        if isinstance(step.prompt, str):
            prompt = step.prompt
        else:
            prompt = await maybe_await(step.prompt(ctx))

        options = {
            **step.options,
            "user_id": step.options.get("user_id", ctx.meta.user_id),
            "conversation_id": step.options.get("conversation_id", ctx.meta.conversation_id),
            "context": dict(ctx.context),
            "execution_id": ctx.meta.execution_id,
            "step_id": step.id,
        }

        async def call_agent() -> Any:
            if self.options.stream_agent_events and hasattr(step.agent, "stream_object"):
                agent_stream = step.agent.stream_object(prompt, step.schema, **options)
                await ctx.writer.pipe_from(agent_stream.events, prefix=step.id)
                return await agent_stream.result
            return await step.agent.generate_object(prompt, step.schema, **options)

        result = await self._call_with_policy(
            step, call_agent, step.retry_policy, step.timeout_seconds
        )
        if not isinstance(result, AgentResult):
            result = AgentResult(object=result)

        self.usage.add(result.usage)
        logger.debug(
            f"Agent step {step.id} used {result.usage.total_tokens} tokens "
            f"(running total {self.usage.total_tokens})"
        )
        return StepOutcome.of(result.object)

    async def _execute_when(self, step: When, ctx: StepContext) -> StepOutcome:
        if await maybe_await(step.condition(ctx)):
            return await self.execute(step.step, ctx.for_step(step.step.id, ctx.data))
        logger.info(f"Step condition not met, skipping: {step.id}")
        return StepOutcome.of(ctx.data, skipped=True)

    async def _execute_all(self, step: All, ctx: StepContext) -> StepOutcome:
        steps = await maybe_await(step.steps(ctx)) if callable(step.steps) else step.steps
        steps = list(steps)
        logger.info(f"Executing {len(steps)} parallel steps for {step.id}")
        outcomes = await self._run_concurrently(
            [(branch, ctx.for_step(branch.id, ctx.data)) for branch in steps]
        )
        return combine_outcomes(outcomes)

    async def _execute_race(self, step: Race, ctx: StepContext) -> StepOutcome:
        # Each branch tallies usage apart; only the winner's is kept.
        runners = [self.fork() for _ in step.steps]
        tasks = [
            asyncio.create_task(runner.execute(branch, ctx.for_step(branch.id, ctx.data)))
            for runner, branch in zip(runners, step.steps)
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        # Losers keep running; hold a reference until they settle.
        for task in pending:
            self._abandoned.add(task)
            task.add_done_callback(self._abandoned.discard)

        winner = next(index for index, task in enumerate(tasks) if task in done)
        self.usage.add(runners[winner].usage)
        logger.debug(f"Race {step.id} settled; {len(pending)} branch(es) abandoned")
        return tasks[winner].result()

    async def _execute_sub_workflow(self, step: SubWorkflow, ctx: StepContext) -> StepOutcome:
        child_stream = StreamController(ctx.meta.execution_id)
        pipe = asyncio.create_task(
            self.stream.pipe_from(child_stream.subscribe(), prefix=step.id)
        )
        child_options = RunOptions(
            user_id=self.options.user_id,
            conversation_id=self.options.conversation_id,
            context=dict(self.options.context),
            suspend_controller=self.controller,
            stream_agent_events=self.options.stream_agent_events,
        )

        try:
            pending_child = self.resume_children.pop(step.id, None)
            if pending_child is not None:
                child, error = await self.executor.resume(
                    step.workflow, pending_child, ctx.resume_data, child_options,
                    child_stream, self.controller,
                )
            else:
                if step.input_mapper is not None:
                    child_input = await maybe_await(step.input_mapper(ctx))
                else:
                    child_input = ctx.data
                child, error = await self.executor.start(
                    step.workflow, child_input, child_options, child_stream, self.controller
                )
        finally:
            child_stream.close()
            await pipe

        if child.is_terminal:
            self.usage.add(child.usage)

        if child.status == WorkflowStatus.COMPLETED:
            return StepOutcome.of(child.data)
        if child.status == WorkflowStatus.SUSPENDED:
            reason = child.suspension.reason if child.suspension else None
            return StepOutcome.suspend(step.id, reason, child=child)
        if child.status == WorkflowStatus.CANCELLED:
            return StepOutcome.cancel(child.cancel_reason)
        return StepOutcome.failure(
            StepExecutionError(step.id, self.definition.id, cause=error, message=child.error)
        )

    async def _execute_sleep(self, step: Sleep, ctx: StepContext) -> StepOutcome:
        delay = step.duration_seconds
        if step.until is not None:
            until = step.until
            now = utcnow() if until.tzinfo else datetime.now()
            delay = (until - now).total_seconds()
        delay = max(delay, 0.0)
        logger.info(f"Waiting for {delay}s")
        await asyncio.sleep(delay)
        return StepOutcome.of(ctx.data)

    async def _execute_for_each(self, step: ForEach, ctx: StepContext) -> StepOutcome:
        items = await maybe_await(step.items(ctx)) if step.items is not None else ctx.data
        if not isinstance(items, (list, tuple)):
            raise StepExecutionError(
                step.id,
                self.definition.id,
                message=f"ForEach expects a list, got {type(items).__name__}",
            )
        outcomes = await self._run_concurrently(
            [(step.step, ctx.for_step(step.step.id, item)) for item in items]
        )
        return combine_outcomes(outcomes)

    async def _execute_branch(self, step: Branch, ctx: StepContext) -> StepOutcome:
        selected = []
        for index, (condition, branch) in enumerate(step.branches):
            if await maybe_await(condition(ctx)):
                selected.append((index, branch))

        outcomes = await self._run_concurrently(
            [(branch, ctx.for_step(branch.id, ctx.data)) for _, branch in selected]
        )
        positional: List[Optional[StepOutcome]] = [None] * len(step.branches)
        for (index, _), outcome in zip(selected, outcomes):
            positional[index] = outcome
        return combine_outcomes(positional)

    async def _execute_loop(self, step: Loop, ctx: StepContext) -> StepOutcome:
        current = ctx.data
        iterations = 0
        while True:
            for inner in step.steps:
                if ctx.signal.is_cancel_requested:
                    return StepOutcome.cancel(ctx.signal.reason)
                outcome = _settled(await self.execute(inner, ctx.for_step(inner.id, current)))
                if outcome.kind != OutcomeKind.VALUE:
                    return outcome
                current = outcome.value

            iterations += 1
            keep_going = await maybe_await(step.condition(ctx.for_step(step.id, current)))
            if step.loop_type == LoopType.DO_UNTIL:
                keep_going = not keep_going
            if not keep_going:
                break
            if step.max_iterations is not None and iterations >= step.max_iterations:
                logger.warning(f"Loop {step.id} stopped after {iterations} iterations")
                break

        return StepOutcome.of(current)
