"""Execution persistence: in-memory and Redis-backed stores."""

import copy
import json
from datetime import timedelta
from typing import TYPE_CHECKING, Dict, List, Optional

import redis.asyncio as aioredis
from loguru import logger

from ..models.workflow import Execution, StateTransition, WorkflowStatus, utcnow

if TYPE_CHECKING:
    from ..config import EngineSettings


class ExecutionStore:
    """Persistence contract used by the engine.

    ``save`` must store a snapshot: later mutation of the passed execution
    must not change what ``get`` returns.
    """

    async def save(self, execution: Execution) -> None:
        raise NotImplementedError

    async def get(self, execution_id: str) -> Optional[Execution]:
        raise NotImplementedError

    async def list(
        self, workflow_id: Optional[str] = None, status: Optional[WorkflowStatus] = None
    ) -> List[Execution]:
        raise NotImplementedError

    async def delete(self, execution_id: str) -> bool:
        raise NotImplementedError

    async def get_history(self, execution_id: str) -> List[StateTransition]:
        raise NotImplementedError

    async def close(self) -> None:
        """Release any held connections."""

    async def cleanup_old_executions(self, days: int = 30) -> int:
        """Delete finished executions that completed more than ``days`` ago."""
        cutoff = utcnow() - timedelta(days=days)
        deleted = 0

        for execution in await self.list():
            if execution.completed_at is not None and execution.completed_at < cutoff:
                if await self.delete(execution.execution_id):
                    deleted += 1

        logger.info(f"Cleaned up {deleted} old executions")
        return deleted


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store keeping deep copies of each execution."""

    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}

    async def save(self, execution: Execution) -> None:
        self._executions[execution.execution_id] = copy.deepcopy(execution)
        logger.debug(f"Saved execution state: {execution.execution_id} - {execution.status.value}")

    async def get(self, execution_id: str) -> Optional[Execution]:
        execution = self._executions.get(execution_id)
        return copy.deepcopy(execution) if execution is not None else None

    async def list(
        self, workflow_id: Optional[str] = None, status: Optional[WorkflowStatus] = None
    ) -> List[Execution]:
        return [
            copy.deepcopy(execution)
            for execution in self._executions.values()
            if (workflow_id is None or execution.workflow_id == workflow_id)
            and (status is None or execution.status == status)
        ]

    async def delete(self, execution_id: str) -> bool:
        if self._executions.pop(execution_id, None) is None:
            return False
        logger.info(f"Deleted execution: {execution_id}")
        return True

    async def get_history(self, execution_id: str) -> List[StateTransition]:
        execution = self._executions.get(execution_id)
        return list(copy.deepcopy(execution.history)) if execution is not None else []


class RedisExecutionStore(ExecutionStore):
    """Execution persistence in Redis with an audit trail of transitions."""

    def __init__(
        self, redis_url: str = "redis://localhost:6379/0", history_ttl_days: int = 30
    ) -> None:
        self.redis_url = redis_url
        self.history_ttl_days = history_ttl_days
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        if not self._redis:
            self._redis = await aioredis.from_url(
                self.redis_url, encoding="utf-8", decode_responses=True
            )
            logger.info("Connected to Redis for workflow state management")

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis")

    def _execution_key(self, execution_id: str) -> str:
        return f"workflow:execution:{execution_id}"

    def _history_key(self, execution_id: str) -> str:
        return f"workflow:history:{execution_id}"

    def _workflow_index_key(self, workflow_id: str) -> str:
        return f"workflow:index:{workflow_id}"

    async def save(self, execution: Execution) -> None:
        """Save execution state and append transitions not yet in the history list."""
        if not self._redis:
            await self.connect()

        key = self._execution_key(execution.execution_id)
        await self._redis.set(key, execution.model_dump_json())

        index_key = self._workflow_index_key(execution.workflow_id)
        await self._redis.sadd(index_key, execution.execution_id)

        history_key = self._history_key(execution.execution_id)
        stored = await self._redis.llen(history_key)
        pending = execution.history[stored:]
        if pending:
            await self._redis.rpush(
                history_key, *[transition.model_dump_json() for transition in pending]
            )
            await self._redis.expire(history_key, self.history_ttl_days * 24 * 60 * 60)

        logger.debug(f"Saved execution state: {execution.execution_id} - {execution.status.value}")

    async def get(self, execution_id: str) -> Optional[Execution]:
        if not self._redis:
            await self.connect()

        data = await self._redis.get(self._execution_key(execution_id))
        if not data:
            return None
        return Execution.model_validate_json(data)

    async def get_history(self, execution_id: str) -> List[StateTransition]:
        """Retrieve complete execution history."""
        if not self._redis:
            await self.connect()

        transitions = await self._redis.lrange(self._history_key(execution_id), 0, -1)
        return [StateTransition(**json.loads(t)) for t in transitions]

    async def list(
        self, workflow_id: Optional[str] = None, status: Optional[WorkflowStatus] = None
    ) -> List[Execution]:
        """List executions with optional filtering."""
        if not self._redis:
            await self.connect()

        if workflow_id:
            execution_ids = await self._redis.smembers(self._workflow_index_key(workflow_id))
        else:
            cursor = 0
            execution_ids = []
            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match="workflow:execution:*", count=100
                )
                execution_ids.extend([k.replace("workflow:execution:", "") for k in keys])
                if cursor == 0:
                    break

        executions = []
        for execution_id in execution_ids:
            execution = await self.get(execution_id)
            if execution and (not status or execution.status == status):
                executions.append(execution)
        return executions

    async def delete(self, execution_id: str) -> bool:
        """Delete execution and its history."""
        if not self._redis:
            await self.connect()

        execution = await self.get(execution_id)
        if not execution:
            return False

        await self._redis.srem(self._workflow_index_key(execution.workflow_id), execution_id)
        await self._redis.delete(
            self._execution_key(execution_id), self._history_key(execution_id)
        )
        logger.info(f"Deleted execution: {execution_id}")
        return True


def create_store(settings: "EngineSettings") -> ExecutionStore:
    """Build the execution store selected by ``settings.store_backend``."""
    if settings.store_backend == "redis":
        return RedisExecutionStore(settings.redis_url, history_ttl_days=settings.history_ttl_days)
    return InMemoryExecutionStore()
