"""Agent capability consumed by agent steps."""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from ..models.workflow import Usage


class AgentResult(BaseModel):
    """Structured output of one agent call plus the tokens it consumed."""

    object: Any = None
    usage: Usage = Field(default_factory=Usage)


@dataclass
class AgentStream:
    """Live agent call: an event sequence and the eventual result.

    ``events`` yields dicts with ``type`` and ``payload`` keys (or
    :class:`~chainflow.models.workflow.StreamEvent` instances). ``result``
    settles once the call finishes, after ``events`` is exhausted.
    """

    events: AsyncIterator[Any]
    result: Awaitable[AgentResult]


@runtime_checkable
class Agent(Protocol):
    """Anything that turns a prompt into structured output."""

    name: str

    async def generate_object(self, prompt: str, schema: Any, **options: Any) -> AgentResult:
        ...


@runtime_checkable
class StreamingAgent(Agent, Protocol):
    """Agent that can also expose its internal event stream."""

    def stream_object(self, prompt: str, schema: Any, **options: Any) -> AgentStream:
        ...
