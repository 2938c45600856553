"""
Core exception hierarchy for the AMI replication orchestrator.

Provides standardized exception types with categorization for retry logic.
Provider (botocore) failures are translated into this hierarchy at the client
boundary so that the retry wrapper only has to look at ``RetryableError.kind``.
"""

from enum import Enum
from typing import Any, Optional

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


class ErrorKind(str, Enum):
    """Transient provider error kinds eligible for retry."""

    SERVICE_EXCEPTION = "service_exception"
    THROTTLING = "throttling"
    SDK_CLIENT_EXCEPTION = "sdk_client_exception"


# =============================================================================
# Base Exceptions
# =============================================================================


class ReplicationError(Exception):
    """Base exception for all replication errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RetryableError(ReplicationError):
    """
    Transient errors that should be retried.

    Examples: Throttling, provider internal errors, dropped connections.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        cause: Optional[BaseException] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.kind = kind
        self.cause = cause
        super().__init__(message, details)


class PermanentError(ReplicationError):
    """
    Errors that won't be fixed by retrying.

    Examples: Malformed input, authorization denial, missing resources.
    """

    pass


# =============================================================================
# Initialization Errors
# =============================================================================


class InitializationError(PermanentError):
    """Raised when a critical component fails to initialize."""

    def __init__(self, component: str, message: str, details: Optional[dict[str, Any]] = None):
        self.component = component
        super().__init__(f"[{component}] {message}", details)


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(PermanentError):
    """Raised when the provider rejects a call for a non-transient reason."""

    def __init__(
        self,
        operation: str,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.operation = operation
        self.code = code
        super().__init__(f"[{operation}] {message}", details)


class ImageNotFoundError(ProviderError):
    """Raised when a source or destination image cannot be found."""

    pass


class SnapshotNotFoundError(ProviderError):
    """Raised when a snapshot cannot be found."""

    pass


class PollLimitExceededError(PermanentError):
    """Raised when a snapshot copy never settles within the poll limit."""

    def __init__(self, snapshot_id: Optional[str], poll_count: int):
        self.snapshot_id = snapshot_id
        self.poll_count = poll_count
        super().__init__(
            f"Snapshot {snapshot_id} still not completed after {poll_count} checks",
            {"snapshot_id": snapshot_id, "poll_count": poll_count},
        )


# =============================================================================
# Pipeline Errors
# =============================================================================


class NotificationError(PermanentError):
    """Raised when the pipeline rejects a job result."""

    pass


class DispatchError(PermanentError):
    """Raised when an execution cannot be started for a pipeline job."""

    def __init__(self, job_id: str, message: str, details: Optional[dict[str, Any]] = None):
        self.job_id = job_id
        super().__init__(f"[{job_id}] {message}", details)


class InvalidJobParametersError(PermanentError):
    """Raised when a pipeline job carries malformed user parameters."""

    pass


class SourceArtifactError(PermanentError):
    """Raised when the tested image cannot be read from a job's input artifact."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(PermanentError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        details = {"config_key": config_key} if config_key else None
        super().__init__(message, details)


# =============================================================================
# Provider error classification
# =============================================================================

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "RequestThrottledException",
        "TooManyRequestsException",
        "SlowDown",
    }
)

SERVICE_EXCEPTION_CODES = frozenset(
    {
        "InternalError",
        "InternalFailure",
        "InternalServerError",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "ServiceException",
        "Unavailable",
        "RequestTimeout",
        "RequestTimeoutException",
    }
)

TRANSIENT_SDK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def classify_provider_error(exc: Exception, operation: str) -> ReplicationError:
    """
    Translate a botocore exception into the replication error hierarchy.

    Args:
        exc: The exception raised by a boto3 call.
        operation: Provider operation name used in messages (e.g. "CopySnapshot").

    Returns:
        A RetryableError for transient conditions, a PermanentError otherwise.
        Already-classified errors are returned unchanged.
    """
    if isinstance(exc, ReplicationError):
        return exc

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message", str(exc))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        details = {"operation": operation, "code": code}

        if code in THROTTLING_CODES:
            return RetryableError(ErrorKind.THROTTLING, f"[{operation}] {message}", exc, details)
        if code in SERVICE_EXCEPTION_CODES or (status is not None and status >= 500):
            return RetryableError(ErrorKind.SERVICE_EXCEPTION, f"[{operation}] {message}", exc, details)
        if code in ("InvalidAMIID.NotFound", "InvalidAMIID.Unavailable"):
            return ImageNotFoundError(operation, message, code, details)
        if code == "InvalidSnapshot.NotFound":
            return SnapshotNotFoundError(operation, message, code, details)
        return ProviderError(operation, message, code, details)

    if isinstance(exc, TRANSIENT_SDK_ERRORS):
        return RetryableError(
            ErrorKind.SDK_CLIENT_EXCEPTION,
            f"[{operation}] {exc}",
            exc,
            {"operation": operation},
        )

    return ProviderError(operation, str(exc), type(exc).__name__)
