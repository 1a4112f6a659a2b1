"""LangChain chat-model adapter for the agent capability."""

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from loguru import logger
from pydantic import BaseModel

from ..models.workflow import Usage
from .base import AgentResult, AgentStream


def usage_from_message(message: Optional[BaseMessage]) -> Usage:
    """Read token usage from an ``AIMessage``'s ``usage_metadata``."""
    metadata = getattr(message, "usage_metadata", None) or {}
    prompt_tokens = int(metadata.get("input_tokens", 0) or 0)
    completion_tokens = int(metadata.get("output_tokens", 0) or 0)
    total_tokens = int(metadata.get("total_tokens", 0) or (prompt_tokens + completion_tokens))
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
    )


def _to_plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    return value


class LangChainAgent:
    """Expose a LangChain chat model as a workflow agent.

    Structured output goes through ``with_structured_output(schema,
    include_raw=True)`` so the raw message's usage metadata can be reported.
    Without a schema the model's text content is the result.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        name: str = "langchain-agent",
        system_prompt: Optional[str] = None,
    ) -> None:
        self.llm = llm
        self.name = name
        self.system_prompt = system_prompt

    def _messages(self, prompt: str) -> List[BaseMessage]:
        messages: List[BaseMessage] = []
        if self.system_prompt:
            messages.append(SystemMessage(content=self.system_prompt))
        messages.append(HumanMessage(content=prompt))
        return messages

    @staticmethod
    def _config(options: Dict[str, Any]) -> Dict[str, Any]:
        metadata = {
            key: options[key]
            for key in ("user_id", "conversation_id", "execution_id", "step_id")
            if options.get(key) is not None
        }
        return {"metadata": metadata} if metadata else {}

    async def generate_object(self, prompt: str, schema: Any, **options: Any) -> AgentResult:
        """Invoke the model once and return its (structured) output."""
        messages = self._messages(prompt)
        config = self._config(options)

        if schema is None:
            message = await self.llm.ainvoke(messages, config=config or None)
            return AgentResult(object=message.content, usage=usage_from_message(message))

        structured = self.llm.with_structured_output(schema, include_raw=True)
        output = await structured.ainvoke(messages, config=config or None)

        if output.get("parsing_error") is not None:
            logger.error(f"Agent {self.name} returned unparseable output")
            raise output["parsing_error"]

        return AgentResult(
            object=_to_plain(output.get("parsed")),
            usage=usage_from_message(output.get("raw")),
        )

    def stream_object(self, prompt: str, schema: Any, **options: Any) -> AgentStream:
        """Stream text deltas (or a single ``object`` event for structured calls)."""
        result: asyncio.Future = asyncio.get_running_loop().create_future()

        async def events() -> AsyncIterator[Dict[str, Any]]:
            try:
                if schema is not None:
                    agent_result = await self.generate_object(prompt, schema, **options)
                    yield {"type": "object", "payload": agent_result.object}
                else:
                    aggregate = None
                    async for chunk in self.llm.astream(
                        self._messages(prompt), config=self._config(options) or None
                    ):
                        aggregate = chunk if aggregate is None else aggregate + chunk
                        if chunk.content:
                            yield {"type": "text-delta", "payload": chunk.content}
                    agent_result = AgentResult(
                        object=aggregate.content if aggregate is not None else "",
                        usage=usage_from_message(aggregate),
                    )
            except Exception as e:
                logger.error(f"Agent {self.name} stream failed: {e}")
                result.set_exception(e)
                return
            result.set_result(agent_result)

        return AgentStream(events=events(), result=result)
