"""Models for replication requests, execution state and outcomes."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class SnapshotState(str, Enum):
    """Snapshot states reported by the provider."""
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


class ReplicationStep(str, Enum):
    """States of the replication state machine."""
    COPY_SNAPSHOT = "CopySnapshot"
    CHECK_SNAPSHOT = "CheckSnapshot"
    EVAL_PROGRESS = "EvalProgress"
    WAIT_THEN_RECHECK = "WaitThenRecheck"
    REGISTER_IMAGE = "RegisterImage"
    NOTIFY_SUCCESS = "NotifySuccess"
    FAIL = "Fail"
    FAIL_TERMINAL = "FailTerminal"
    SUCCESS_TERMINAL = "SuccessTerminal"

    @property
    def is_terminal(self) -> bool:
        return self in (ReplicationStep.FAIL_TERMINAL, ReplicationStep.SUCCESS_TERMINAL)


# =============================================================================
# Request
# =============================================================================


class ReplicationRequest(BaseModel):
    """Everything an execution needs to copy one image to one target.

    Immutable once an execution starts. Serialised with camelCase keys, which
    is the execution input format the step handlers read and pass through.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source_image_id: str = Field(..., alias="sourceImageId", min_length=1)
    source_region: str = Field(..., alias="sourceRegion", min_length=1)
    destination_account_id: str = Field(
        ...,
        alias="destinationAccountId",
        pattern=r"^\d{12}$",
    )
    destination_region: str = Field(..., alias="destinationRegion", min_length=1)
    destination_role_name: str = Field(..., alias="destinationRoleName", min_length=1)
    encryption_key_alias: str = Field(..., alias="kmsKeyAlias", min_length=1)
    resource_name: str = Field(..., alias="amiName", min_length=1)

    @property
    def destination_role_arn(self) -> str:
        return f"arn:aws:iam::{self.destination_account_id}:role/{self.destination_role_name}"

    @property
    def target(self) -> str:
        """Short label for the (account, region) pair."""
        return f"{self.destination_account_id}-{self.destination_region}"

    def to_execution_input(self, pipeline_job_id: str) -> dict[str, Any]:
        data = self.model_dump(by_alias=True)
        data["pipelineJobId"] = pipeline_job_id
        return data

    @classmethod
    def from_execution_input(cls, document: dict[str, Any]) -> "ReplicationRequest":
        """Read the request fields out of an execution input, ignoring the rest."""
        fields = {
            info.alias: document.get(info.alias)
            for info in cls.model_fields.values()
            if info.alias in document
        }
        return cls.model_validate(fields)


# =============================================================================
# Execution state
# =============================================================================


@dataclass
class ErrorInfo:
    """Error captured by a step's catch and stored in execution history."""

    error: str
    cause: str
    step: str
    kind: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException, step: "ReplicationStep") -> "ErrorInfo":
        return cls(
            error=type(exc).__name__,
            cause=str(exc),
            step=step.value,
            kind=getattr(getattr(exc, "kind", None), "value", None),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"Error": self.error, "Cause": self.cause, "Step": self.step, "Kind": self.kind}


@dataclass
class TerminalOutcome:
    """Final result of one execution."""

    success: bool
    cause: Optional[str] = None
    notification_delivered: bool = True


@dataclass
class HistoryEvent:
    step: str
    event: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionState:
    """Mutable record threaded through one state machine execution.

    Owned by exactly one execution; never shared between executions.

    Attributes:
        execution_id: Unique identifier of the execution.
        pipeline_job_id: Pipeline job awaiting the terminal signal.
        request: The immutable replication request.
        step: The step the execution will run next (or its terminal step).
        snapshot_id: Destination snapshot, set once the copy has started.
        snapshot_state: Last state reported by the progress check.
        image_id: Registered destination image.
        error_info: Populated when a step catches an error.
        attempts: Attempts made per step, summed over re-entries.
        poll_count: Progress checks performed so far.
        history: Ordered step events.
        outcome: Set once, when the execution reaches a terminal step.
    """

    pipeline_job_id: str
    request: ReplicationRequest
    execution_id: str = field(default_factory=lambda: str(uuid4()))
    step: ReplicationStep = ReplicationStep.COPY_SNAPSHOT
    snapshot_id: Optional[str] = None
    snapshot_state: Optional[str] = None
    image_id: Optional[str] = None
    error_info: Optional[ErrorInfo] = None
    attempts: dict[str, int] = field(default_factory=dict)
    poll_count: int = 0
    history: list[HistoryEvent] = field(default_factory=list)
    outcome: Optional[TerminalOutcome] = None

    def record(self, step: ReplicationStep, event: str, **details: Any) -> None:
        self.history.append(HistoryEvent(step=step.value, event=event, details=details))

    def to_dict(self) -> dict[str, Any]:
        """Serialise for the API and the execution store."""
        return {
            "execution_id": self.execution_id,
            "pipeline_job_id": self.pipeline_job_id,
            "request": self.request.model_dump(by_alias=True),
            "step": self.step.value,
            "snapshot_id": self.snapshot_id,
            "snapshot_state": self.snapshot_state,
            "image_id": self.image_id,
            "error_info": self.error_info.to_dict() if self.error_info else None,
            "attempts": dict(self.attempts),
            "poll_count": self.poll_count,
            "outcome": (
                {
                    "success": self.outcome.success,
                    "cause": self.outcome.cause,
                    "notification_delivered": self.outcome.notification_delivered,
                }
                if self.outcome
                else None
            ),
            "history": [
                {
                    "step": e.step,
                    "event": e.event,
                    "timestamp": e.timestamp.isoformat(),
                    "details": e.details,
                }
                for e in self.history
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionState":
        """Rebuild an execution from its stored form, e.g. to resume it."""
        error_info = data.get("error_info")
        outcome = data.get("outcome")
        return cls(
            execution_id=data["execution_id"],
            pipeline_job_id=data["pipeline_job_id"],
            request=ReplicationRequest.model_validate(data["request"]),
            step=ReplicationStep(data["step"]),
            snapshot_id=data.get("snapshot_id"),
            snapshot_state=data.get("snapshot_state"),
            image_id=data.get("image_id"),
            error_info=(
                ErrorInfo(
                    error=error_info["Error"],
                    cause=error_info["Cause"],
                    step=error_info["Step"],
                    kind=error_info.get("Kind"),
                )
                if error_info
                else None
            ),
            attempts=dict(data.get("attempts", {})),
            poll_count=data.get("poll_count", 0),
            history=[
                HistoryEvent(
                    step=e["step"],
                    event=e["event"],
                    timestamp=datetime.fromisoformat(e["timestamp"]),
                    details=dict(e.get("details", {})),
                )
                for e in data.get("history", [])
            ],
            outcome=TerminalOutcome(**outcome) if outcome else None,
        )
