"""Drives one execution through its step chain."""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Optional, Tuple, Type
from uuid import uuid4

from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import InvalidStateError, ResumeValidationError, ValidationError, WorkflowError
from ..models.definition import Hook, WorkflowDefinition
from ..models.steps import SubWorkflow
from ..models.workflow import (
    Execution,
    StreamEventType,
    Suspension,
    WorkflowStatus,
    utcnow,
)
from .context import RunOptions, StepContext, StepMeta, StepStateView, StepWriter
from .state_manager import ExecutionStore
from .step_executors import OutcomeKind, StepOutcome, StepRunner
from .stream import StreamController
from .suspend import SuspendController

WORKFLOW_ORIGIN = "workflow"

RunResult = Tuple[Execution, Optional[WorkflowError]]


def validate_schema(
    schema: Any,
    value: Any,
    label: str,
    error_cls: Type[ValidationError] = ValidationError,
) -> Any:
    """Validate ``value`` against a pydantic-compatible schema.

    ``None`` means no validation. The validated value is dumped back to
    plain python data so the pipeline never carries model instances.
    """
    if schema is None:
        return value

    adapter = TypeAdapter(schema)
    try:
        validated = adapter.validate_python(value)
    except PydanticValidationError as e:
        raise error_cls(
            f"{label} failed validation ({e.error_count()} error(s))", errors=e.errors()
        ) from e
    return adapter.dump_python(validated, mode="python")


def json_schema_for(schema: Any) -> Optional[Dict[str, Any]]:
    """JSON schema of a resume schema, for persistence and event payloads."""
    if schema is None:
        return None
    try:
        return TypeAdapter(schema).json_schema()
    except Exception as e:
        logger.debug(f"Resume schema has no JSON schema representation: {e}")
        return None


def resolve_resume_schema(
    definition: WorkflowDefinition, suspension: Suspension, step_index: Optional[int] = None
) -> Any:
    """Find the resume schema declared by the step that suspended.

    Sub-workflow suspensions are followed into the child definition. When
    the originating step is not found by id, the top-level step at
    ``step_index`` is used. Returns ``None`` when neither locates a step.
    """
    step = definition.find_step(suspension.origin_step_id)
    if step is None and step_index is not None and 0 <= step_index < len(definition.steps):
        step = definition.steps[step_index]
    if step is None:
        return None
    if suspension.child is not None and isinstance(step, SubWorkflow):
        child = suspension.child
        if child.suspension is None:
            return None
        return resolve_resume_schema(step.workflow, child.suspension, child.current_step_index)
    return step.resume_schema


@dataclass(frozen=True)
class ResumePoint:
    """What a resumed run carries into the step that suspended."""

    origin_step_id: str
    resume_data: Any = None
    child: Optional[Execution] = None


class ChainExecutor:
    """Runs the sequential step chain of a workflow definition.

    Every status change is persisted through the store before the matching
    stream event is written, so readers of the stream always find the
    record at least as new as the event.
    """

    def __init__(self, store: ExecutionStore, default_timeout: Optional[float] = None) -> None:
        self.store = store
        self.default_timeout = default_timeout

    async def start(
        self,
        definition: WorkflowDefinition,
        input: Any,
        options: RunOptions,
        stream: StreamController,
        controller: SuspendController,
    ) -> RunResult:
        """Validate input, create the execution and run it.

        Raises:
            ValidationError: input does not satisfy the input schema
        """
        data = self.validate_input(definition, input)

        execution = Execution(
            execution_id=options.execution_id or str(uuid4()),
            workflow_id=definition.id,
            input=data,
            data=data,
            user_id=options.user_id,
            conversation_id=options.conversation_id,
            context=dict(options.context),
        )
        await self.store.save(execution)

        stream.emit(
            StreamEventType.WORKFLOW_START.value,
            WORKFLOW_ORIGIN,
            {"workflow_id": definition.id, "workflow_name": definition.name, "input": data},
        )
        await self._call_hook(definition.hooks.on_start, execution, "on_start")
        logger.info(f"Started workflow execution: {execution.execution_id} ({definition.name})")

        return await self._drive(definition, execution, options, stream, controller)

    def validate_input(self, definition: WorkflowDefinition, input: Any) -> Any:
        """Validate run input against the workflow's input schema."""
        return validate_schema(
            definition.input_schema, input, f"Input of workflow '{definition.id}'"
        )

    def validate_resume(
        self, definition: WorkflowDefinition, execution: Execution, resume_data: Any
    ) -> Any:
        """Check that ``execution`` can be resumed with ``resume_data``.

        Raises:
            InvalidStateError: the execution is not suspended
            ResumeValidationError: resume data fails the step's resume schema
        """
        if execution.status != WorkflowStatus.SUSPENDED or execution.suspension is None:
            raise InvalidStateError(
                f"Execution {execution.execution_id} is {execution.status.value}, not suspended"
            )
        schema = resolve_resume_schema(
            definition, execution.suspension, execution.current_step_index
        )
        return validate_schema(
            schema,
            resume_data,
            f"Resume data for step '{execution.suspension.origin_step_id}'",
            error_cls=ResumeValidationError,
        )

    async def resume(
        self,
        definition: WorkflowDefinition,
        execution: Execution,
        resume_data: Any,
        options: RunOptions,
        stream: StreamController,
        controller: SuspendController,
    ) -> RunResult:
        """Continue a suspended execution from the step that suspended it."""
        resume_data = self.validate_resume(definition, execution, resume_data)
        suspension = execution.suspension

        execution.suspension = None
        execution.transition_to(
            WorkflowStatus.RUNNING, trigger="resume", step_id=suspension.step_id
        )
        controller.reset()
        await self.store.save(execution)

        stream.emit(
            StreamEventType.WORKFLOW_RESUMED.value,
            WORKFLOW_ORIGIN,
            {"step_id": suspension.step_id, "resume_data": resume_data},
        )
        logger.info(
            f"Resumed workflow execution: {execution.execution_id} at step {suspension.step_id}"
        )

        resume = ResumePoint(
            origin_step_id=suspension.origin_step_id,
            resume_data=resume_data,
            child=suspension.child,
        )
        return await self._drive(definition, execution, options, stream, controller, resume)

    async def _drive(
        self,
        definition: WorkflowDefinition,
        execution: Execution,
        options: RunOptions,
        stream: StreamController,
        controller: SuspendController,
        resume: Optional[ResumePoint] = None,
    ) -> RunResult:
        runner = StepRunner(self, definition, execution, options, controller, stream)
        if resume is not None and resume.child is not None:
            runner.resume_children[resume.origin_step_id] = resume.child

        state_view = StepStateView(execution.step_results)

        while execution.current_step_index < len(definition.steps):
            index = execution.current_step_index
            step = definition.steps[index]

            if controller.is_cancel_requested:
                await self.cancel(definition, execution, stream, controller.reason)
                return execution, None
            if controller.is_suspend_requested:
                await self._suspend(
                    definition, execution, stream, StepOutcome.suspend(step.id, controller.reason)
                )
                return execution, None

            # The index is never rewound, so the first step after a resume is
            # the one that suspended.
            resume_data = resume.resume_data if resume is not None else None
            resume = None

            ctx = StepContext(
                data=execution.data,
                state=state_view,
                writer=StepWriter(stream, step.id),
                signal=controller.token,
                meta=StepMeta(
                    execution_id=execution.execution_id,
                    workflow_id=definition.id,
                    step_id=step.id,
                    user_id=execution.user_id,
                    conversation_id=execution.conversation_id,
                ),
                context=MappingProxyType(dict(execution.context)),
                resume_data=resume_data,
            )

            stream.emit(
                StreamEventType.STEP_START.value,
                step.id,
                {"index": index, "type": step.type.value, "name": step.label},
            )
            await self._call_hook(definition.hooks.on_step_start, execution, "on_step_start")

            outcome = await runner.execute(step, ctx)

            if outcome.kind == OutcomeKind.VALUE:
                if not outcome.skipped:
                    execution.step_results[step.id] = outcome.value
                execution.data = outcome.value
                execution.current_step_index = index + 1
                execution.updated_at = utcnow()
                await self.store.save(execution)

                stream.emit(
                    StreamEventType.STEP_COMPLETE.value,
                    step.id,
                    {"index": index, "output": outcome.value, "skipped": outcome.skipped},
                )
                await self._call_hook(definition.hooks.on_step_end, execution, "on_step_end")
                logger.info(f"Step completed: {step.label} ({step.id})")
            elif outcome.kind == OutcomeKind.SUSPEND:
                await self._suspend(definition, execution, stream, outcome, step_id=step.id)
                return execution, None
            elif outcome.kind == OutcomeKind.CANCEL:
                await self.cancel(definition, execution, stream, outcome.reason)
                return execution, None
            else:
                await self._fail(definition, execution, stream, outcome.error)
                return execution, outcome.error

        try:
            execution.data = validate_schema(
                definition.result_schema, execution.data, f"Result of workflow '{definition.id}'"
            )
        except ValidationError as e:
            await self._fail(definition, execution, stream, e)
            return execution, e

        execution.transition_to(WorkflowStatus.COMPLETED, trigger="chain exhausted")
        await self.store.save(execution)

        stream.emit(
            StreamEventType.WORKFLOW_COMPLETE.value,
            WORKFLOW_ORIGIN,
            {"data": execution.data, "usage": execution.usage.model_dump()},
        )
        await self._call_hook(definition.hooks.on_end, execution, "on_end")
        logger.info(f"Workflow execution completed: {execution.execution_id}")
        return execution, None

    async def _suspend(
        self,
        definition: WorkflowDefinition,
        execution: Execution,
        stream: StreamController,
        outcome: StepOutcome,
        step_id: Optional[str] = None,
    ) -> None:
        step_id = step_id or outcome.origin_step_id
        suspension = Suspension(
            step_id=step_id,
            origin_step_id=outcome.origin_step_id,
            reason=outcome.reason,
            child=outcome.child,
        )
        if outcome.child is not None and outcome.child.suspension is not None:
            suspension.resume_schema = outcome.child.suspension.resume_schema
        else:
            suspension.resume_schema = json_schema_for(
                resolve_resume_schema(definition, suspension, execution.current_step_index)
            )

        execution.suspension = suspension
        execution.transition_to(
            WorkflowStatus.SUSPENDED, trigger="suspend", step_id=step_id, reason=outcome.reason
        )
        await self.store.save(execution)

        stream.emit(
            StreamEventType.WORKFLOW_SUSPENDED.value,
            WORKFLOW_ORIGIN,
            {
                "step_id": step_id,
                "origin_step_id": suspension.origin_step_id,
                "reason": suspension.reason,
                "resume_schema": suspension.resume_schema,
            },
        )
        await self._call_hook(definition.hooks.on_suspend, execution, "on_suspend")
        logger.info(f"Workflow execution suspended: {execution.execution_id} at step {step_id}")

    async def cancel(
        self,
        definition: WorkflowDefinition,
        execution: Execution,
        stream: StreamController,
        reason: Optional[str],
    ) -> None:
        execution.cancel_reason = reason
        execution.transition_to(WorkflowStatus.CANCELLED, trigger="cancel", reason=reason)
        await self.store.save(execution)

        stream.emit(
            StreamEventType.WORKFLOW_CANCELLED.value, WORKFLOW_ORIGIN, {"reason": reason}
        )
        await self._call_hook(definition.hooks.on_end, execution, "on_end")
        logger.info(f"Cancelled workflow execution: {execution.execution_id}")

    async def _fail(
        self,
        definition: WorkflowDefinition,
        execution: Execution,
        stream: StreamController,
        error: WorkflowError,
    ) -> None:
        execution.error = str(error)
        execution.failed_step_id = getattr(error, "step_id", None)
        execution.transition_to(
            WorkflowStatus.FAILED, trigger="error", step_id=execution.failed_step_id
        )
        await self.store.save(execution)

        stream.emit(
            StreamEventType.WORKFLOW_ERROR.value,
            WORKFLOW_ORIGIN,
            {"error": execution.error, "step_id": execution.failed_step_id},
        )
        await self._call_hook(definition.hooks.on_error, execution, "on_error")
        await self._call_hook(definition.hooks.on_end, execution, "on_end")
        logger.error(f"Workflow execution failed: {execution.execution_id} - {execution.error}")

    async def _call_hook(self, hook: Optional[Hook], execution: Execution, name: str) -> None:
        if hook is None:
            return
        try:
            await hook(execution)
        except Exception as e:
            logger.warning(f"Hook {name} failed for execution {execution.execution_id}: {e}")
