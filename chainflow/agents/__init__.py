"""Agent capability used by agent steps."""

from .base import Agent, AgentResult, AgentStream, StreamingAgent
from .langchain_agent import LangChainAgent

__all__ = [
    "Agent",
    "AgentResult",
    "AgentStream",
    "StreamingAgent",
    "LangChainAgent",
]
