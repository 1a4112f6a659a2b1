"""Shared fixtures for the workflow engine test suite."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from chainflow.agents.base import AgentResult
from chainflow.config import EngineSettings
from chainflow.main import create_app
from chainflow.models.workflow import Usage
from chainflow.workflows.engine import WorkflowEngine
from chainflow.workflows.state_manager import InMemoryExecutionStore


class FakeAgent:
    """Agent returning canned objects and usage, recording every call."""

    def __init__(
        self,
        output: Any = None,
        usage: Optional[Usage] = None,
        name: str = "fake-agent",
    ) -> None:
        self.name = name
        self.output = output
        self.usage = usage or Usage()
        self.calls: List[Dict[str, Any]] = []

    async def generate_object(self, prompt: str, schema: Any, **options: Any) -> AgentResult:
        self.calls.append({"prompt": prompt, "schema": schema, "options": options})
        return AgentResult(object=self.output, usage=self.usage)


@pytest.fixture
def test_settings() -> EngineSettings:
    """Provide test-specific settings."""
    return EngineSettings(
        app_name="chainflow-test",
        cors_origins=["http://localhost:3000", "http://localhost:8000"],
        store_backend="memory",
        log_level="DEBUG",
    )


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def engine(store: InMemoryExecutionStore, test_settings: EngineSettings) -> WorkflowEngine:
    """Engine backed by an in-memory store."""
    return WorkflowEngine(store=store, settings=test_settings)


@pytest.fixture
def app(test_settings: EngineSettings, engine: WorkflowEngine):
    """Create FastAPI app with test settings."""
    return create_app(test_settings, engine=engine)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def make_agent():
    """Factory for :class:`FakeAgent` instances."""

    def factory(output: Any = None, prompt_tokens: int = 0, completion_tokens: int = 0) -> FakeAgent:
        return FakeAgent(
            output=output,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    return factory
