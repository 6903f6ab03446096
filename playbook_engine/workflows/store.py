"""
Execution Store

Persistence contract the engine and dispatcher depend on:
- get/put executions by id
- list executions with a filter
- pluggable backends (in-memory, Redis)
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import redis.asyncio as redis
from pydantic import BaseModel
from redis.asyncio import Redis

from playbook_engine.logging_config import get_logger

from .state import Execution, ExecutionStatus

logger = get_logger(__name__)


class ExecutionFilter(BaseModel):
    """Filter for listing executions; unset fields match everything."""
    statuses: Optional[List[ExecutionStatus]] = None
    organization_id: Optional[str] = None
    customer_id: Optional[str] = None
    playbook_id: Optional[str] = None
    limit: Optional[int] = None

    def matches(self, execution: Execution) -> bool:
        if self.statuses is not None and execution.status not in self.statuses:
            return False
        if self.organization_id is not None and execution.organization_id != self.organization_id:
            return False
        if self.customer_id is not None and execution.customer_id != self.customer_id:
            return False
        if self.playbook_id is not None and execution.playbook_id != self.playbook_id:
            return False
        return True

    def apply(self, executions: List[Execution]) -> List[Execution]:
        """Filter, order newest first, and truncate."""
        selected = [e for e in executions if self.matches(e)]
        selected.sort(key=lambda e: e.created_at, reverse=True)
        if self.limit is not None:
            selected = selected[:self.limit]
        return selected


class ExecutionStore(ABC):
    """
    Abstract base class for execution storage backends.

    Implementations must return detached copies so callers never alias
    stored state.
    """

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[Execution]:
        """
        Get an execution by ID.

        Returns:
            Execution or None if not found
        """
        pass

    @abstractmethod
    async def put(self, execution: Execution) -> None:
        """Insert or replace an execution."""
        pass

    @abstractmethod
    async def list(self, execution_filter: Optional[ExecutionFilter] = None) -> List[Execution]:
        """
        List executions matching a filter.

        Returns:
            Executions ordered by creation time (newest first)
        """
        pass


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store, used by default and in tests."""

    def __init__(self):
        self._executions: Dict[str, Execution] = {}

    async def get(self, execution_id: str) -> Optional[Execution]:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def put(self, execution: Execution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def list(self, execution_filter: Optional[ExecutionFilter] = None) -> List[Execution]:
        execution_filter = execution_filter or ExecutionFilter()
        return [
            e.model_copy(deep=True)
            for e in execution_filter.apply(list(self._executions.values()))
        ]


class RedisExecutionStore(ExecutionStore):
    """
    Redis-based execution store.

    Each execution is stored as JSON under its own key; a set indexes all
    execution ids. Executions are retained indefinitely (no TTL).
    """

    # Key patterns
    KEY_EXECUTION = "playbook:execution:{execution_id}"
    KEY_INDEX = "playbook:executions"

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        redis_url: str = "redis://localhost:6379/0",
    ):
        """
        Initialize Redis execution store.

        Args:
            redis_client: Existing Redis client or None to create new
            redis_url: Redis connection URL
        """
        self._redis: Optional[Redis] = redis_client
        self._redis_url = redis_url

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Execution store connected to Redis", url=self._redis_url)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("RedisExecutionStore is not connected")
        return self._redis

    def _key(self, execution_id: str) -> str:
        return self.KEY_EXECUTION.format(execution_id=execution_id)

    async def get(self, execution_id: str) -> Optional[Execution]:
        raw = await self._client().get(self._key(execution_id))
        if raw is None:
            return None
        return Execution.model_validate_json(raw)

    async def put(self, execution: Execution) -> None:
        client = self._client()
        await client.set(self._key(execution.id), execution.model_dump_json())
        await client.sadd(self.KEY_INDEX, execution.id)

    async def list(self, execution_filter: Optional[ExecutionFilter] = None) -> List[Execution]:
        execution_filter = execution_filter or ExecutionFilter()
        client = self._client()

        ids = await client.smembers(self.KEY_INDEX)
        if not ids:
            return []

        raws = await client.mget([self._key(i) for i in sorted(ids)])
        executions = [Execution.model_validate_json(raw) for raw in raws if raw is not None]
        return execution_filter.apply(executions)
