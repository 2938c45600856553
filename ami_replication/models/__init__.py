"""Data models for replication requests and executions."""

from ami_replication.models.schemas import (
    ErrorInfo,
    ExecutionState,
    ReplicationRequest,
    ReplicationStep,
    SnapshotState,
    TerminalOutcome,
)

__all__ = [
    "ErrorInfo",
    "ExecutionState",
    "ReplicationRequest",
    "ReplicationStep",
    "SnapshotState",
    "TerminalOutcome",
]
