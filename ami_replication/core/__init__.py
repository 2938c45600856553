"""
Core infrastructure modules.

- exceptions: Standardized exception hierarchy and provider error classification
- retry: Retry policy applied to every remote step
- logging: structlog configuration
- container: Dependency wiring (import from ami_replication.core.container)
"""

from ami_replication.core.exceptions import (
    ConfigurationError,
    DispatchError,
    ErrorKind,
    ImageNotFoundError,
    InitializationError,
    InvalidJobParametersError,
    SourceArtifactError,
    NotificationError,
    PermanentError,
    PollLimitExceededError,
    ProviderError,
    ReplicationError,
    RetryableError,
    SnapshotNotFoundError,
    classify_provider_error,
)
from ami_replication.core.retry import RetryPolicy, call_with_retry

__all__ = [
    # Exceptions
    "ReplicationError",
    "RetryableError",
    "PermanentError",
    "ErrorKind",
    "InitializationError",
    "ProviderError",
    "ImageNotFoundError",
    "SnapshotNotFoundError",
    "PollLimitExceededError",
    "NotificationError",
    "DispatchError",
    "InvalidJobParametersError",
    "SourceArtifactError",
    "ConfigurationError",
    "classify_provider_error",
    # Retry
    "RetryPolicy",
    "call_with_retry",
]
