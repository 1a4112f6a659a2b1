"""Workflow engine: definition registry and run/stream/resume/cancel entry points."""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from loguru import logger

from ..config import EngineSettings, get_settings
from ..errors import ExecutionNotFoundError, InvalidStateError, WorkflowError, WorkflowNotFoundError
from ..models.definition import WorkflowDefinition, WorkflowHooks
from ..models.steps import Step
from ..models.workflow import Execution, StreamEvent, WorkflowStatus
from .context import RunOptions
from .executor import ChainExecutor, RunResult
from .state_manager import ExecutionStore, create_store
from .stream import StreamController
from .suspend import SuspendController

# Closed streams kept around so late subscribers can still replay them
MAX_RETAINED_STREAMS = 100


@dataclass
class LiveExecution:
    """In-process handles of an execution that has an open stream."""

    workflow_id: str
    stream: StreamController
    controller: SuspendController
    keep_open: bool = False
    stream_agent_events: bool = False


class WorkflowEngine:
    """
    Sequential step-chain workflow engine.

    Features:
    - Registry of immutable workflow definitions
    - Run to completion, or stream events while running
    - Cooperative suspension with typed resume data
    - Cooperative cancellation of running and suspended executions
    - Persistence of every status change through an execution store
    """

    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or create_store(self.settings)
        self.executor = ChainExecutor(
            self.store, default_timeout=self.settings.default_step_timeout_seconds
        )
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._live: Dict[str, LiveExecution] = {}
        self._retained: "OrderedDict[str, LiveExecution]" = OrderedDict()
        self._running_executions: Dict[str, asyncio.Task] = {}

    # -- registry ------------------------------------------------------------

    def register_workflow(self, definition: WorkflowDefinition) -> "Workflow":
        """Register a workflow definition and return it bound to this engine."""
        self._workflows[definition.id] = definition
        logger.info(
            f"Registered workflow: {definition.name} "
            f"(ID: {definition.id}, steps: {len(definition.steps)})"
        )
        return Workflow(definition, self)

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        definition = self._workflows.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition

    def list_workflows(self) -> List[WorkflowDefinition]:
        return list(self._workflows.values())

    def _resolve(self, workflow: Union[str, "Workflow", WorkflowDefinition]) -> WorkflowDefinition:
        if isinstance(workflow, str):
            return self.get_workflow(workflow)
        if isinstance(workflow, Workflow):
            workflow = workflow.definition
        if self._workflows.get(workflow.id) is not workflow:
            self.register_workflow(workflow)
        return workflow

    # -- live stream bookkeeping ---------------------------------------------

    def _open(
        self,
        execution_id: str,
        workflow_id: str,
        controller: SuspendController,
        keep_open: bool,
        stream_agent_events: bool,
    ) -> LiveExecution:
        live = LiveExecution(
            workflow_id=workflow_id,
            stream=StreamController(execution_id),
            controller=controller,
            keep_open=keep_open,
            stream_agent_events=stream_agent_events,
        )
        self._live[execution_id] = live
        self._retained.pop(execution_id, None)
        return live

    def _release(self, execution_id: str) -> None:
        live = self._live.pop(execution_id, None)
        if live is None:
            return
        live.stream.close()
        self._retained[execution_id] = live
        while len(self._retained) > MAX_RETAINED_STREAMS:
            self._retained.popitem(last=False)

    async def _settle(
        self, execution_id: str, live: LiveExecution, run: Awaitable[RunResult]
    ) -> Execution:
        try:
            execution, error = await run
        except BaseException:
            self._release(execution_id)
            raise

        if execution.is_terminal or not live.keep_open:
            self._release(execution_id)
        execution.bind(self)
        if error is not None:
            raise error
        return execution

    # -- run -----------------------------------------------------------------

    def _prepare_run(
        self, definition: WorkflowDefinition, options: Optional[RunOptions], keep_open: bool
    ) -> tuple:
        options = options or RunOptions()
        execution_id = options.execution_id or str(uuid4())
        controller = options.suspend_controller or SuspendController()
        options = replace(options, execution_id=execution_id, suspend_controller=controller)
        live = self._open(
            execution_id, definition.id, controller, keep_open, options.stream_agent_events
        )
        return options, live

    async def run(
        self,
        workflow: Union[str, "Workflow", WorkflowDefinition],
        input: Any = None,
        options: Optional[RunOptions] = None,
    ) -> Execution:
        """Run a workflow until it completes, suspends or is cancelled.

        Raises:
            WorkflowNotFoundError: unknown workflow id
            ValidationError: input or result fails its schema
            StepExecutionError: a step failed
        """
        definition = self._resolve(workflow)
        options, live = self._prepare_run(definition, options, keep_open=False)
        return await self._settle(
            options.execution_id,
            live,
            self.executor.start(definition, input, options, live.stream, live.controller),
        )

    def stream(
        self,
        workflow: Union[str, "Workflow", WorkflowDefinition],
        input: Any = None,
        options: Optional[RunOptions] = None,
    ) -> "WorkflowStream":
        """Start a run in the background and return its event stream.

        The stream stays open across suspensions and closes once the
        execution reaches a terminal status.
        """
        definition = self._resolve(workflow)
        options, live = self._prepare_run(definition, options, keep_open=True)
        task = asyncio.ensure_future(
            self._settle(
                options.execution_id,
                live,
                self.executor.start(definition, input, options, live.stream, live.controller),
            )
        )
        task.add_done_callback(_collect_stream_error)
        return WorkflowStream(self, options.execution_id, live.stream, live.controller, task)

    async def start_execution(
        self, workflow_id: str, input: Any = None, options: Optional[RunOptions] = None
    ) -> str:
        """Start a run as a background task and return its execution id."""
        definition = self.get_workflow(workflow_id)
        self.executor.validate_input(definition, input)
        options, live = self._prepare_run(definition, options, keep_open=False)
        execution_id = options.execution_id

        task = asyncio.create_task(
            self._run_in_background(
                execution_id,
                self._settle(
                    execution_id,
                    live,
                    self.executor.start(definition, input, options, live.stream, live.controller),
                ),
            )
        )
        self._running_executions[execution_id] = task
        logger.info(f"Created workflow execution: {execution_id}")
        return execution_id

    async def _run_in_background(self, execution_id: str, run: Awaitable[Execution]) -> None:
        try:
            await run
        except WorkflowError as e:
            logger.error(f"Background execution {execution_id} ended with error: {e}")
        finally:
            self._running_executions.pop(execution_id, None)

    # -- resume --------------------------------------------------------------

    async def _load(self, execution_id: str) -> Execution:
        execution = await self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def _prepare_resume(
        self, execution_id: str, resume_data: Any, options: Optional[RunOptions]
    ) -> tuple:
        execution = await self._load(execution_id)
        definition = self.get_workflow(execution.workflow_id)
        self.executor.validate_resume(definition, execution, resume_data)

        options = options or RunOptions()
        live = self._live.get(execution_id)
        if live is not None and live.stream.closed:
            live = None
        controller = options.suspend_controller or (
            live.controller if live is not None else SuspendController()
        )
        stream_agent_events = options.stream_agent_events or (
            live.stream_agent_events if live is not None else False
        )
        if live is None:
            live = self._open(
                execution_id, execution.workflow_id, controller, False, stream_agent_events
            )
        else:
            live.controller = controller

        run_options = RunOptions(
            user_id=execution.user_id,
            conversation_id=execution.conversation_id,
            context=dict(execution.context),
            suspend_controller=controller,
            stream_agent_events=stream_agent_events,
            execution_id=execution_id,
        )
        run = self.executor.resume(
            definition, execution, resume_data, run_options, live.stream, controller
        )
        return live, run

    async def resume(
        self,
        execution_id: str,
        resume_data: Any = None,
        options: Optional[RunOptions] = None,
    ) -> Execution:
        """Resume a suspended execution with ``resume_data``.

        Raises:
            ExecutionNotFoundError: unknown execution id
            InvalidStateError: the execution is not suspended
            ResumeValidationError: resume data fails the step's resume schema
        """
        live, run = await self._prepare_resume(execution_id, resume_data, options)
        return await self._settle(execution_id, live, run)

    async def start_resume(self, execution_id: str, resume_data: Any = None) -> str:
        """Validate resume data, then continue the execution in the background."""
        live, run = await self._prepare_resume(execution_id, resume_data, None)
        task = asyncio.create_task(
            self._run_in_background(execution_id, self._settle(execution_id, live, run))
        )
        self._running_executions[execution_id] = task
        return execution_id

    # -- cancel / inspect ----------------------------------------------------

    async def cancel(self, execution_id: str, reason: Optional[str] = None) -> bool:
        """Cancel a running or suspended execution.

        A running execution stops at its next step boundary; a suspended
        one is cancelled immediately. Returns ``False`` when the execution
        already finished or runs outside this engine.
        """
        execution = await self._load(execution_id)
        if execution.is_terminal:
            logger.warning(f"Execution {execution_id} already {execution.status.value}")
            return False

        live = self._live.get(execution_id)
        if execution.status == WorkflowStatus.RUNNING:
            if live is None:
                logger.warning(f"Execution {execution_id} is not running in this engine")
                return False
            live.controller.cancel(reason)
            return True

        definition = self.get_workflow(execution.workflow_id)
        stream = live.stream if live is not None else StreamController(execution_id)
        await self.executor.cancel(definition, execution, stream, reason)
        self._release(execution_id)
        return True

    async def get_execution(self, execution_id: str) -> Execution:
        execution = await self._load(execution_id)
        return execution.bind(self)

    async def attach_stream(
        self, execution_id: str, workflow_id: Optional[str] = None
    ) -> AsyncIterator[StreamEvent]:
        """Subscribe to the event stream of an execution.

        Live executions are followed until they suspend or finish; recently
        finished ones replay their closed log.

        Raises:
            ExecutionNotFoundError: unknown execution id
            InvalidStateError: the execution has no stream in this engine
        """
        live = self._live.get(execution_id) or self._retained.get(execution_id)
        if live is not None:
            if workflow_id is not None and live.workflow_id != workflow_id:
                raise ExecutionNotFoundError(execution_id)
            return live.stream.subscribe()

        execution = await self._load(execution_id)
        if workflow_id is not None and execution.workflow_id != workflow_id:
            raise ExecutionNotFoundError(execution_id)
        raise InvalidStateError(
            f"Execution {execution_id} is {execution.status.value} and has no live stream"
        )

    async def close(self) -> None:
        """Close the execution store and stop background runs."""
        for task in list(self._running_executions.values()):
            task.cancel()
        self._running_executions.clear()
        await self.store.close()


def _collect_stream_error(task: "asyncio.Future[Execution]") -> None:
    # Mark the error retrieved; the stream already carried it as an event.
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Streamed run ended with error: {task.exception()}")


class WorkflowStream:
    """Event stream of a programmatic run.

    Iterating yields every event from the start of the run. ``result``
    resolves to the execution once it completes, suspends or is cancelled;
    ``resume`` continues a suspended run on the same stream.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        execution_id: str,
        stream: StreamController,
        controller: SuspendController,
        task: "asyncio.Future[Execution]",
    ) -> None:
        self._engine = engine
        self.execution_id = execution_id
        self.suspend_controller = controller
        self._stream = stream
        self._task = task

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._stream.subscribe()

    @property
    def result(self) -> "asyncio.Future[Execution]":
        return self._task

    async def resume(self, resume_data: Any = None) -> Execution:
        self._task = asyncio.ensure_future(self._engine.resume(self.execution_id, resume_data))
        return await self._task

    async def cancel(self, reason: Optional[str] = None) -> bool:
        return await self._engine.cancel(self.execution_id, reason)


class Workflow:
    """A workflow definition bound to the engine that runs it."""

    def __init__(self, definition: WorkflowDefinition, engine: WorkflowEngine) -> None:
        self.definition = definition
        self.engine = engine

    @property
    def id(self) -> str:
        return self.definition.id

    @property
    def name(self) -> str:
        return self.definition.name

    async def run(self, input: Any = None, options: Optional[RunOptions] = None) -> Execution:
        return await self.engine.run(self.definition, input, options)

    def stream(self, input: Any = None, options: Optional[RunOptions] = None) -> WorkflowStream:
        return self.engine.stream(self.definition, input, options)


@lru_cache
def get_default_engine() -> WorkflowEngine:
    """Process-wide engine used when ``create_workflow`` gets none."""
    return WorkflowEngine()


def create_workflow(
    id: str,
    name: str,
    steps: Sequence[Step],
    *,
    input_schema: Any = None,
    result_schema: Any = None,
    description: Optional[str] = None,
    hooks: Optional[WorkflowHooks] = None,
    engine: Optional[WorkflowEngine] = None,
) -> Workflow:
    """Build a definition and register it with ``engine`` (or the default engine)."""
    definition = WorkflowDefinition(
        id=id,
        name=name,
        steps=tuple(steps),
        input_schema=input_schema,
        result_schema=result_schema,
        description=description,
        hooks=hooks or WorkflowHooks(),
    )
    return (engine or get_default_engine()).register_workflow(definition)
