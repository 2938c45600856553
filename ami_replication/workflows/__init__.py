"""Replication workflow: the state machine and its execution stores."""

from ami_replication.workflows.redis_store import RedisExecutionStore
from ami_replication.workflows.state_machine import ReplicationStateMachine, evaluate_progress
from ami_replication.workflows.store import ExecutionStore, create_execution_store

__all__ = [
    "ReplicationStateMachine",
    "ExecutionStore",
    "RedisExecutionStore",
    "create_execution_store",
    "evaluate_progress",
]
