"""Context objects handed to step bodies."""

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, AsyncIterator, Collection, Dict, List, Mapping, Optional

from ..models.workflow import StepData, StreamEvent
from .stream import StreamController
from .suspend import CancellationToken, SuspendController


@dataclass(frozen=True)
class SuspendRequest:
    """Returned by ``ctx.suspend()``; a step returning it asks to pause.

    This is a value, not an exception: step bodies ``return ctx.suspend(...)``.
    """

    step_id: str
    reason: Optional[str] = None


@dataclass
class RunOptions:
    """Per-run options supplied by the caller."""

    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    suspend_controller: Optional[SuspendController] = None
    stream_agent_events: bool = False
    execution_id: Optional[str] = None


class StepStateView:
    """Read-only access to results of steps that already ran."""

    def __init__(self, step_results: Mapping[str, Any]) -> None:
        self._results = MappingProxyType(step_results)

    def get_step_data(self, step_id: str) -> Optional[StepData]:
        """Recorded output of ``step_id``, or ``None`` if it has not run.

        The output is wrapped in :class:`StepData` so a step whose output was
        ``None`` is distinguishable from one that never ran.
        """
        if step_id not in self._results:
            return None
        return StepData(step_id=step_id, output=self._results[step_id])

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._results

    @property
    def step_ids(self) -> List[str]:
        return list(self._results)


class StepWriter:
    """Stream writer bound to one step's id."""

    def __init__(self, stream: StreamController, step_id: str) -> None:
        self._stream = stream
        self.step_id = step_id

    @property
    def stream(self) -> StreamController:
        return self._stream

    def write(self, type: str, payload: Any = None) -> StreamEvent:
        """Publish a custom event tagged with this step's id."""
        return self._stream.emit(type, self.step_id, payload)

    async def pipe_from(
        self,
        source: AsyncIterator[Any],
        prefix: Optional[str] = None,
        filter: Optional[Collection[str]] = None,
    ) -> int:
        """Forward an external event sequence, prefixed with this step's id."""
        return await self._stream.pipe_from(source, prefix=prefix or self.step_id, filter=filter)


@dataclass(frozen=True)
class StepMeta:
    """System-owned identifiers for the step being executed."""

    execution_id: str
    workflow_id: str
    step_id: str
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class StepContext:
    """Everything a step body may see.

    ``data`` is the pipeline value, ``context`` the caller's metadata
    (read-only), ``meta`` the engine's identifiers. ``resume_data`` is set
    only on the first re-entry of a step after a resume.
    """

    data: Any
    state: StepStateView
    writer: StepWriter
    signal: CancellationToken
    meta: StepMeta
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    resume_data: Any = None

    @property
    def step_id(self) -> str:
        return self.meta.step_id

    def get_step_data(self, step_id: str) -> Optional[StepData]:
        return self.state.get_step_data(step_id)

    def suspend(self, reason: Optional[str] = None) -> SuspendRequest:
        """Build a suspension request; return it from the step body."""
        return SuspendRequest(step_id=self.meta.step_id, reason=reason)

    def for_step(self, step_id: str, data: Any) -> "StepContext":
        """Derive the context for a nested step."""
        return replace(
            self,
            data=data,
            writer=StepWriter(self.writer.stream, step_id),
            meta=replace(self.meta, step_id=step_id),
        )
