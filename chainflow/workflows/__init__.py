"""Workflow engine package: chain execution, streaming, suspension and persistence."""

from .context import RunOptions, StepContext, SuspendRequest
from .engine import Workflow, WorkflowEngine, WorkflowStream, create_workflow
from .executor import ChainExecutor
from .state_manager import ExecutionStore, InMemoryExecutionStore, RedisExecutionStore
from .stream import StreamController
from .suspend import CancellationToken, SuspendController

__all__ = [
    "CancellationToken",
    "ChainExecutor",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "RedisExecutionStore",
    "RunOptions",
    "StepContext",
    "StreamController",
    "SuspendController",
    "SuspendRequest",
    "Workflow",
    "WorkflowEngine",
    "WorkflowStream",
    "create_workflow",
]
