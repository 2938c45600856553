"""Pydantic models for API requests and responses."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ami_replication.config.targets import CopyJobParameters


# =============================================================================
# Replication Models
# =============================================================================


class CopyJobRequest(BaseModel):
    """One copy job: a pipeline job id and its action parameters."""

    job_id: str = Field(..., min_length=1, description="Pipeline job to notify")
    parameters: CopyJobParameters
    source_image_id: Optional[str] = Field(
        None,
        description="Image to copy; defaults to the latest image named amiName",
        json_schema_extra={"example": "ami-0123456789abcdef0"},
    )


class ReplicationBatchRequest(BaseModel):
    """Request model for dispatching replications."""

    jobs: list[CopyJobRequest] = Field(..., min_length=1)


class DispatchResultResponse(BaseModel):
    job_id: str
    started: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None


class ReplicationBatchResponse(BaseModel):
    results: list[DispatchResultResponse]
    started: int
    failed: int


class ExecutionSummary(BaseModel):
    execution_id: str
    pipeline_job_id: str
    step: str
    snapshot_id: Optional[str] = None
    image_id: Optional[str] = None
    outcome: Optional[dict[str, Any]] = None


class ExecutionDetail(ExecutionSummary):
    request: dict[str, Any]
    snapshot_state: Optional[str] = None
    error_info: Optional[dict[str, Any]] = None
    attempts: dict[str, int] = Field(default_factory=dict)
    poll_count: int = 0
    history: list[dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Health Models
# =============================================================================


class HealthCheckResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    running_executions: int
    uptime_seconds: Optional[float] = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    detail: Optional[str] = None
    path: Optional[str] = None
