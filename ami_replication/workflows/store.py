"""Execution history store.

Keeps the serialised form of every execution, written after each state
transition. The stored form is the resume record: an execution can be
rebuilt from it and continued at the step it was about to run, and it holds
the detailed error payloads that are never sent to the pipeline.

Two backends share one interface. ``ExecutionStore`` keeps records in this
process and loses them when it exits. ``RedisExecutionStore`` keeps them in
Redis, so executions cancelled at shutdown are resumed on the next start.

Usage:
    store = await create_execution_store(settings)
    await store.save(state)
    record = await store.get(state.execution_id)
    resumed = await store.load(state.execution_id)
"""

import copy
from typing import Any, Optional, Protocol

import structlog

from ami_replication.config.settings import Settings
from ami_replication.core.exceptions import InitializationError
from ami_replication.models.schemas import ExecutionState
from ami_replication.workflows.redis_store import RedisExecutionStore

logger = structlog.get_logger(__name__)


class StateStore(Protocol):
    async def save(self, state: ExecutionState) -> None: ...

    async def get(self, execution_id: str) -> Optional[dict[str, Any]]: ...

    async def load(self, execution_id: str) -> Optional[ExecutionState]: ...

    async def list_executions(self, limit: int = 100) -> list[dict[str, Any]]: ...

    async def unfinished_ids(self) -> list[str]: ...

    async def close(self) -> None: ...


class ExecutionStore:
    """In-memory execution store.

    Args:
        max_executions: Oldest finished executions are evicted beyond this count.
    """

    def __init__(self, max_executions: int = 1000) -> None:
        self.max_executions = max_executions
        self._records: dict[str, dict[str, Any]] = {}

    async def save(self, state: ExecutionState) -> None:
        """Persist the current form of an execution."""
        self._records[state.execution_id] = state.to_dict()
        if len(self._records) > self.max_executions:
            self._evict()

    async def get(self, execution_id: str) -> Optional[dict[str, Any]]:
        record = self._records.get(execution_id)
        return copy.deepcopy(record) if record is not None else None

    async def load(self, execution_id: str) -> Optional[ExecutionState]:
        """Rebuild an execution from its stored form."""
        record = self._records.get(execution_id)
        return ExecutionState.from_dict(record) if record is not None else None

    async def list_executions(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recently started executions first."""
        records = list(self._records.values())[-limit:]
        return [copy.deepcopy(r) for r in reversed(records)]

    async def unfinished_ids(self) -> list[str]:
        return [eid for eid, record in self._records.items() if record.get("outcome") is None]

    async def close(self) -> None:
        pass

    def _evict(self) -> None:
        for execution_id, record in list(self._records.items()):
            if len(self._records) <= self.max_executions:
                break
            if record.get("outcome") is not None:
                del self._records[execution_id]
                logger.debug("execution_evicted", execution_id=execution_id)


async def create_execution_store(settings: Settings) -> StateStore:
    """
    Build the execution store the settings ask for.

    Uses Redis when ``redis_url`` is set, the in-memory store otherwise.

    Raises:
        InitializationError: If Redis is configured but unreachable.
    """
    if not settings.redis_url:
        logger.info("execution_store_initialized", backend="memory")
        return ExecutionStore()

    store = RedisExecutionStore(
        redis_url=settings.redis_url,
        key_prefix=settings.redis_key_prefix,
        finished_ttl_seconds=settings.finished_execution_ttl_seconds,
    )
    try:
        await store.connect()
    except Exception as e:
        raise InitializationError(
            "RedisExecutionStore",
            f"Failed to connect to Redis: {e}",
            {"redis_url": settings.redis_url},
        ) from e

    logger.info("execution_store_initialized", backend="redis")
    return store
