"""
Bounded exponential-backoff retry for remote calls.

Every externally visible side effect of a replication (copy start, progress
check, image registration, pipeline notification) goes through
``call_with_retry`` with the same ``RetryPolicy``. Only ``RetryableError``s
whose kind is in the policy are retried; everything else propagates on the
first attempt.

Usage:
    policy = RetryPolicy()
    snapshot_id = await call_with_retry(
        lambda: asyncio.to_thread(client.start_copy, request),
        policy,
        step="CopySnapshot",
    )
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ami_replication.core.exceptions import ErrorKind, RetryableError
from ami_replication.monitoring.metrics import record_retry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Union[Awaitable[T], T]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration shared by every step.

    Args:
        retryable_kinds: Error kinds eligible for retry
        backoff_rate: Multiplier applied to the interval after each attempt
        initial_interval_seconds: Delay before the first retry
        max_attempts: Total attempts, including the first one
    """

    retryable_kinds: frozenset[ErrorKind] = field(default_factory=lambda: frozenset(ErrorKind))
    backoff_rate: float = 2.0
    initial_interval_seconds: float = 2.0
    max_attempts: int = 6

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        """Build the policy from application settings."""
        return cls(
            backoff_rate=settings.retry_backoff_rate,
            initial_interval_seconds=settings.retry_initial_interval_seconds,
            max_attempts=settings.retry_max_attempts,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        """Check whether an exception is eligible for another attempt."""
        return isinstance(exc, RetryableError) and exc.kind in self.retryable_kinds

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after the given (1-based) failed attempt."""
        return self.initial_interval_seconds * self.backoff_rate ** (attempt - 1)


def _log_retry(step: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        kind = exc.kind.value if isinstance(exc, RetryableError) else "unknown"
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        record_retry(step, kind)
        logger.warning(
            "retry_scheduled",
            step=step,
            attempt=retry_state.attempt_number,
            kind=kind,
            delay_seconds=delay,
            error=str(exc),
        )

    return before_sleep


async def call_with_retry(
    operation: Operation,
    policy: RetryPolicy,
    *,
    step: str,
    sleep: SleepFn = asyncio.sleep,
    on_attempt: Optional[Callable[[int], None]] = None,
) -> Any:
    """
    Invoke an operation under the retry policy.

    Args:
        operation: Zero-argument callable; may return a value or an awaitable.
            It is called again for every attempt.
        policy: Retry configuration.
        step: Step name used for logging and metrics.
        sleep: Awaitable sleep used between attempts (injectable for tests).
        on_attempt: Called with the 1-based attempt number before each attempt.

    Returns:
        The operation's result.

    Raises:
        RetryableError: The last transient error once attempts are exhausted.
        Exception: Any non-retryable error, on the attempt that raised it.
    """
    def before(retry_state: RetryCallState) -> None:
        if on_attempt is not None:
            on_attempt(retry_state.attempt_number)

    retrying = AsyncRetrying(
        sleep=sleep,
        retry=retry_if_exception(policy.is_retryable),
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.initial_interval_seconds,
            exp_base=policy.backoff_rate,
        ),
        before=before,
        before_sleep=_log_retry(step),
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
    return result
