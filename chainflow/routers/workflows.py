"""Workflow API endpoints: start, stream, resume, cancel and inspect executions."""

import json
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from loguru import logger

from ..errors import (
    ExecutionNotFoundError,
    InvalidStateError,
    StepExecutionError,
    ValidationError,
    WorkflowError,
    WorkflowNotFoundError,
)
from ..models.workflow import (
    CancelRequest,
    Execution,
    ResumeRequest,
    RunRequest,
    StreamEvent,
    StreamEventType,
    WorkflowStatus,
)
from ..workflows.context import RunOptions
from ..workflows.engine import WorkflowEngine
from ..workflows.executor import WORKFLOW_ORIGIN

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Engine events after which an SSE response ends
CLOSING_EVENTS = frozenset(
    {
        StreamEventType.WORKFLOW_SUSPENDED.value,
        StreamEventType.WORKFLOW_COMPLETE.value,
        StreamEventType.WORKFLOW_ERROR.value,
        StreamEventType.WORKFLOW_CANCELLED.value,
    }
)


def get_workflow_engine(request: Request) -> WorkflowEngine:
    """Engine owned by the application."""
    return request.app.state.engine


def to_http_exception(error: WorkflowError, execution_id: Optional[str] = None) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(error, (WorkflowNotFoundError, ExecutionNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "message": str(error),
                "errors": json.loads(json.dumps(error.errors, default=str)),
            },
        )
    if isinstance(error, InvalidStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, StepExecutionError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(error), "execution_id": execution_id, "step_id": error.step_id},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


async def _load_execution(
    engine: WorkflowEngine, workflow_id: str, execution_id: str
) -> Execution:
    execution = await engine.get_execution(execution_id)
    if execution.workflow_id != workflow_id:
        raise ExecutionNotFoundError(execution_id)
    return execution


def format_sse(event: StreamEvent) -> str:
    """Render one event as a server-sent event frame."""
    return f"event: {event.type}\ndata: {json.dumps(event.to_wire(), default=str)}\n\n"


async def _event_source(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield format_sse(event)
        if event.from_ == WORKFLOW_ORIGIN and event.type in CLOSING_EVENTS:
            break


@router.post(
    "/{workflow_id}/runs",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow run",
)
async def start_run(
    workflow_id: str,
    request: RunRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> dict:
    """
    Start a run of a registered workflow.

    The run executes asynchronously. Use the returned execution_id to
    attach to its event stream or to inspect its state.
    """
    try:
        execution_id = await engine.start_execution(
            workflow_id,
            request.input,
            RunOptions(
                user_id=request.user_id,
                conversation_id=request.conversation_id,
                context=request.context,
            ),
        )
    except WorkflowError as e:
        logger.error(f"Failed to start workflow {workflow_id}: {e}")
        raise to_http_exception(e)

    return {
        "execution_id": execution_id,
        "workflow_id": workflow_id,
        "status": WorkflowStatus.RUNNING.value,
        "message": "Workflow execution started",
    }


@router.post(
    "/{workflow_id}/executions/{execution_id}/stream",
    summary="Stream execution events (SSE)",
)
async def stream_execution(
    workflow_id: str,
    execution_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> StreamingResponse:
    """
    Attach to an execution's event stream.

    Every event since the start of the current run phase is replayed. The
    response ends after the execution suspends or reaches a terminal state.
    """
    try:
        events = await engine.attach_stream(execution_id, workflow_id=workflow_id)
    except WorkflowError as e:
        raise to_http_exception(e, execution_id)

    return StreamingResponse(
        _event_source(events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.post(
    "/{workflow_id}/executions/{execution_id}/resume",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume a suspended execution",
)
async def resume_execution(
    workflow_id: str,
    execution_id: str,
    request: ResumeRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> dict:
    """
    Resume a suspended execution with resume data.

    The resume data is validated against the suspended step's resume
    schema before the execution continues in the background.
    """
    try:
        await _load_execution(engine, workflow_id, execution_id)
        await engine.start_resume(execution_id, request.resume_data)
    except WorkflowError as e:
        logger.error(f"Failed to resume execution {execution_id}: {e}")
        raise to_http_exception(e, execution_id)

    return {
        "execution_id": execution_id,
        "workflow_id": workflow_id,
        "status": WorkflowStatus.RUNNING.value,
        "message": "Workflow execution resumed",
    }


@router.post(
    "/{workflow_id}/executions/{execution_id}/cancel",
    summary="Cancel a running or suspended execution",
)
async def cancel_execution(
    workflow_id: str,
    execution_id: str,
    request: Optional[CancelRequest] = None,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> dict:
    """
    Cancel an execution.

    Suspended executions are cancelled immediately; running ones stop at
    their next step boundary.
    """
    reason = request.reason if request else None
    try:
        await _load_execution(engine, workflow_id, execution_id)
        cancelled = await engine.cancel(execution_id, reason)
    except WorkflowError as e:
        raise to_http_exception(e, execution_id)

    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Workflow cannot be cancelled (already finished or not running here)",
        )

    return {
        "execution_id": execution_id,
        "workflow_id": workflow_id,
        "message": "Workflow execution cancellation requested",
    }


@router.get(
    "/{workflow_id}/executions/{execution_id}",
    summary="Get an execution record",
)
async def get_execution(
    workflow_id: str,
    execution_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> dict:
    """Return the persisted execution record."""
    try:
        execution = await _load_execution(engine, workflow_id, execution_id)
    except WorkflowError as e:
        raise to_http_exception(e, execution_id)

    return execution.model_dump(mode="json")
