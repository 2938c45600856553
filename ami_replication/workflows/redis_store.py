"""Redis-backed execution store with persistence across restarts.

Each execution is stored as one JSON document, and a sorted set scored by
first-save time keeps executions in start order. Finished executions expire
after ``finished_ttl_seconds``; unfinished ones never expire, so a restarted
service can find and resume them.

Usage:
    store = RedisExecutionStore(
        redis_url="redis://localhost:6379",
        key_prefix="ami-replication",
    )
    await store.connect()

    await store.save(state)
    resumable = await store.unfinished_ids()
"""

import json
import time
from typing import Any, Optional

import redis.asyncio as redis
import structlog

from ami_replication.models.schemas import ExecutionState

logger = structlog.get_logger(__name__)


class RedisExecutionStore:
    """
    Execution store shared by every service instance using the same Redis.

    Args:
        redis_url: Redis connection URL
        key_prefix: Prefix for Redis keys (default: "ami-replication")
        finished_ttl_seconds: Lifetime of a finished execution's record
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "ami-replication",
        finished_ttl_seconds: int = 7 * 24 * 3600,
    ):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self.finished_ttl_seconds = finished_ttl_seconds
        self._client: Optional[redis.Redis] = None
        self._connected = False

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._connected:
            return

        try:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await self._client.ping()
            self._connected = True
            logger.info("redis_execution_store_connected", url=self._redis_url)
        except Exception as e:
            logger.error("redis_execution_store_connection_failed", error=str(e))
            raise

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._connected = False
            logger.info("redis_execution_store_disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _record_key(self, execution_id: str) -> str:
        return f"{self._key_prefix}:execution:{execution_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._key_prefix}:executions"

    def _require_client(self) -> redis.Redis:
        if not self._connected:
            raise RuntimeError("Execution store not connected. Call connect() first.")
        return self._client

    async def save(self, state: ExecutionState) -> None:
        """Persist the current form of an execution."""
        client = self._require_client()
        record = state.to_dict()
        ttl = self.finished_ttl_seconds if record["outcome"] is not None else None

        pipe = client.pipeline()
        pipe.set(self._record_key(state.execution_id), json.dumps(record), ex=ttl)
        # nx keeps the original start position on later saves
        pipe.zadd(self._index_key, {state.execution_id: time.time()}, nx=True)
        await pipe.execute()

    async def get(self, execution_id: str) -> Optional[dict[str, Any]]:
        raw = await self._require_client().get(self._record_key(execution_id))
        return json.loads(raw) if raw is not None else None

    async def load(self, execution_id: str) -> Optional[ExecutionState]:
        """Rebuild an execution from its stored form."""
        record = await self.get(execution_id)
        return ExecutionState.from_dict(record) if record is not None else None

    async def list_executions(self, limit: int = 100) -> list[dict[str, Any]]:
        """Most recently started executions first."""
        client = self._require_client()
        execution_ids = await client.zrevrange(self._index_key, 0, limit - 1)
        return await self._records(execution_ids)

    async def unfinished_ids(self) -> list[str]:
        """Executions that have not reached a terminal step, oldest first."""
        client = self._require_client()
        execution_ids = await client.zrange(self._index_key, 0, -1)
        records = await self._records(execution_ids)
        return [r["execution_id"] for r in records if r["outcome"] is None]

    async def _records(self, execution_ids: list[str]) -> list[dict[str, Any]]:
        if not execution_ids:
            return []
        client = self._require_client()
        raws = await client.mget([self._record_key(eid) for eid in execution_ids])

        expired = [eid for eid, raw in zip(execution_ids, raws) if raw is None]
        if expired:
            await client.zrem(self._index_key, *expired)
            logger.debug("expired_executions_unindexed", count=len(expired))

        return [json.loads(raw) for raw in raws if raw is not None]
