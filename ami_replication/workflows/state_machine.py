"""Replication state machine.

Drives one execution per (account, region) target through:

    CopySnapshot -> CheckSnapshot -> EvalProgress
        EvalProgress: completed -> RegisterImage -> NotifySuccess -> SuccessTerminal
        EvalProgress: error     -> Fail -> FailTerminal
        EvalProgress: otherwise -> WaitThenRecheck -> CheckSnapshot

Every remote step runs under the shared retry policy; an error that escapes
the policy is caught into ``error_info`` and routes to Fail. The execution is
persisted after every transition, so a stored execution can be resumed at the
step it was about to run. WaitThenRecheck is the only suspension point, and a
sleeping execution holds no thread.

The pipeline job is notified exactly once, from either Fail or NotifySuccess.
A notification that still fails after retries is logged and dropped; it never
sends the execution back through the replication steps.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable, Optional

import structlog

from ami_replication.clients.codepipeline import JobNotifier
from ami_replication.clients.ec2 import SnapshotCopyClient
from ami_replication.config.settings import Settings, get_settings
from ami_replication.core.exceptions import PermanentError, PollLimitExceededError
from ami_replication.core.retry import RetryPolicy, SleepFn, call_with_retry
from ami_replication.models.schemas import (
    ErrorInfo,
    ExecutionState,
    ReplicationStep,
    SnapshotState,
    TerminalOutcome,
)
from ami_replication.monitoring.metrics import (
    record_execution_outcome,
    record_notification_failure,
    track_step,
)
from ami_replication.workflows.store import ExecutionStore, StateStore

logger = structlog.get_logger(__name__)

StepHandler = Callable[[ExecutionState, Any], Awaitable[ReplicationStep]]


def evaluate_progress(snapshot_state: Optional[str]) -> ReplicationStep:
    """Choose the step after a progress check.

    ``completed`` registers the image, ``error`` fails the execution, and any
    other value (``pending`` or something the provider adds later) waits and
    checks again.
    """
    if snapshot_state == SnapshotState.COMPLETED.value:
        return ReplicationStep.REGISTER_IMAGE
    if snapshot_state == SnapshotState.ERROR.value:
        return ReplicationStep.FAIL
    return ReplicationStep.WAIT_THEN_RECHECK


class ReplicationStateMachine:
    """
    Runs replication executions to a terminal state.

    Args:
        client: Remote copy/check/register operations.
        notifier: Pipeline job-result notifier.
        store: Execution store written after every transition.
        policy: Retry policy applied to every remote step.
        poll_interval_seconds: Delay of WaitThenRecheck.
        max_poll_iterations: Progress checks allowed before the execution fails.
        failure_cause: Fixed cause reported to the pipeline on failure.
        sleep: Awaitable sleep for retries and waits (injectable for tests).
    """

    def __init__(
        self,
        client: SnapshotCopyClient,
        notifier: JobNotifier,
        *,
        store: Optional[StateStore] = None,
        policy: Optional[RetryPolicy] = None,
        poll_interval_seconds: float = 30.0,
        max_poll_iterations: int = 720,
        failure_cause: str = "Snapshot copy failed",
        sleep: SleepFn = asyncio.sleep,
    ):
        self.client = client
        self.notifier = notifier
        self.store = store or ExecutionStore()
        self.policy = policy or RetryPolicy()
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_iterations = max_poll_iterations
        self.failure_cause = failure_cause
        self._sleep = sleep

        self._handlers: dict[ReplicationStep, StepHandler] = {
            ReplicationStep.COPY_SNAPSHOT: self._copy_snapshot,
            ReplicationStep.CHECK_SNAPSHOT: self._check_snapshot,
            ReplicationStep.EVAL_PROGRESS: self._eval_progress,
            ReplicationStep.WAIT_THEN_RECHECK: self._wait_then_recheck,
            ReplicationStep.REGISTER_IMAGE: self._register_image,
            ReplicationStep.NOTIFY_SUCCESS: self._notify_success,
            ReplicationStep.FAIL: self._fail,
        }

    @classmethod
    def from_settings(
        cls,
        client: SnapshotCopyClient,
        notifier: JobNotifier,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "ReplicationStateMachine":
        settings = settings or get_settings()
        return cls(
            client,
            notifier,
            policy=RetryPolicy.from_settings(settings),
            poll_interval_seconds=settings.poll_interval_seconds,
            max_poll_iterations=settings.max_poll_iterations,
            failure_cause=settings.failure_cause,
            **kwargs,
        )

    # =========================================================================
    # Driver
    # =========================================================================

    async def run(self, state: ExecutionState) -> TerminalOutcome:
        """
        Run an execution from its current step until it is terminal.

        Fresh executions start at CopySnapshot; resumed ones continue where
        they stopped. An execution that is already terminal is returned as is.
        """
        log = logger.bind(
            execution_id=state.execution_id,
            destination_account_id=state.request.destination_account_id,
            destination_region=state.request.destination_region,
        )

        if state.step.is_terminal and state.outcome is not None:
            return state.outcome

        log.info("replication_execution_started", step=state.step.value)
        await self.store.save(state)

        while not state.step.is_terminal:
            step = state.step
            state.record(step, "entered")
            state.step = await self._handlers[step](state, log)
            await self.store.save(state)

        state.record(state.step, "terminal")
        await self.store.save(state)

        outcome = state.outcome
        record_execution_outcome(outcome.success, state.poll_count)
        log.info(
            "replication_execution_finished",
            success=outcome.success,
            image_id=state.image_id,
            poll_count=state.poll_count,
            notification_delivered=outcome.notification_delivered,
        )
        return outcome

    async def _remote(
        self,
        state: ExecutionState,
        step: ReplicationStep,
        fn: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Call a blocking provider operation in a worker thread, under the retry policy."""

        def count_attempt(attempt: int) -> None:
            state.attempts[step.value] = state.attempts.get(step.value, 0) + 1

        def attempt() -> Awaitable[Any]:
            loop = asyncio.get_event_loop()
            return loop.run_in_executor(None, partial(fn, *args))

        with track_step(step.value):
            return await call_with_retry(
                attempt,
                self.policy,
                step=step.value,
                sleep=self._sleep,
                on_attempt=count_attempt,
            )

    def _catch(
        self,
        state: ExecutionState,
        step: ReplicationStep,
        exc: BaseException,
        log: Any,
    ) -> ReplicationStep:
        state.error_info = ErrorInfo.from_exception(exc, step)
        state.record(step, "caught", **state.error_info.to_dict())
        log.error(
            "replication_step_failed",
            step=step.value,
            error=state.error_info.error,
            cause=state.error_info.cause,
        )
        return ReplicationStep.FAIL

    # =========================================================================
    # Steps
    # =========================================================================

    async def _copy_snapshot(self, state: ExecutionState, log: Any) -> ReplicationStep:
        step = ReplicationStep.COPY_SNAPSHOT
        try:
            state.snapshot_id = await self._remote(state, step, self.client.start_copy, state.request)
        except Exception as e:
            return self._catch(state, step, e, log)

        state.record(step, "succeeded", snapshot_id=state.snapshot_id)
        log.info("snapshot_copy_requested", snapshot_id=state.snapshot_id)
        return ReplicationStep.CHECK_SNAPSHOT

    async def _check_snapshot(self, state: ExecutionState, log: Any) -> ReplicationStep:
        step = ReplicationStep.CHECK_SNAPSHOT
        if state.snapshot_id is None:
            return self._catch(state, step, PermanentError("No snapshot to check"), log)
        if state.poll_count >= self.max_poll_iterations:
            return self._catch(
                state, step, PollLimitExceededError(state.snapshot_id, state.poll_count), log
            )

        state.poll_count += 1
        try:
            state.snapshot_state = await self._remote(
                state, step, self.client.check_progress, state.request, state.snapshot_id
            )
        except Exception as e:
            return self._catch(state, step, e, log)

        state.record(step, "succeeded", snapshot_state=state.snapshot_state, poll=state.poll_count)
        log.debug("snapshot_checked", snapshot_state=state.snapshot_state, poll=state.poll_count)
        return ReplicationStep.EVAL_PROGRESS

    async def _eval_progress(self, state: ExecutionState, log: Any) -> ReplicationStep:
        next_step = evaluate_progress(state.snapshot_state)
        if next_step is ReplicationStep.WAIT_THEN_RECHECK and state.poll_count >= self.max_poll_iterations:
            return self._catch(
                state,
                ReplicationStep.EVAL_PROGRESS,
                PollLimitExceededError(state.snapshot_id, state.poll_count),
                log,
            )
        if next_step is ReplicationStep.FAIL:
            state.error_info = ErrorInfo(
                error="SnapshotCopyError",
                cause=f"Snapshot {state.snapshot_id} entered state {state.snapshot_state}",
                step=ReplicationStep.EVAL_PROGRESS.value,
            )
            state.record(ReplicationStep.EVAL_PROGRESS, "caught", **state.error_info.to_dict())
        return next_step

    async def _wait_then_recheck(self, state: ExecutionState, log: Any) -> ReplicationStep:
        state.record(
            ReplicationStep.WAIT_THEN_RECHECK,
            "waiting",
            seconds=self.poll_interval_seconds,
        )
        await self._sleep(self.poll_interval_seconds)
        return ReplicationStep.CHECK_SNAPSHOT

    async def _register_image(self, state: ExecutionState, log: Any) -> ReplicationStep:
        step = ReplicationStep.REGISTER_IMAGE
        try:
            state.image_id = await self._remote(
                state, step, self.client.register_result, state.request, state.snapshot_id
            )
        except Exception as e:
            return self._catch(state, step, e, log)

        state.record(step, "succeeded", image_id=state.image_id)
        return ReplicationStep.NOTIFY_SUCCESS

    async def _notify(
        self,
        state: ExecutionState,
        step: ReplicationStep,
        fn: Callable[..., None],
        *args: Any,
        log: Any,
    ) -> bool:
        """Best-effort notification; returns whether the pipeline accepted it."""
        try:
            await self._remote(state, step, fn, *args)
        except Exception as e:
            record_notification_failure("success" if step is ReplicationStep.NOTIFY_SUCCESS else "failure")
            state.record(step, "notification_dropped", error=type(e).__name__, cause=str(e))
            log.error(
                "pipeline_notification_dropped",
                step=step.value,
                job_id=state.pipeline_job_id,
                error=str(e),
            )
            return False

        state.record(step, "succeeded")
        return True

    async def _notify_success(self, state: ExecutionState, log: Any) -> ReplicationStep:
        delivered = await self._notify(
            state,
            ReplicationStep.NOTIFY_SUCCESS,
            self.notifier.notify_success,
            state.pipeline_job_id,
            log=log,
        )
        state.outcome = TerminalOutcome(success=True, notification_delivered=delivered)
        return ReplicationStep.SUCCESS_TERMINAL

    async def _fail(self, state: ExecutionState, log: Any) -> ReplicationStep:
        delivered = await self._notify(
            state,
            ReplicationStep.FAIL,
            self.notifier.notify_failure,
            state.pipeline_job_id,
            self.failure_cause,
            log=log,
        )
        state.outcome = TerminalOutcome(
            success=False,
            cause=self.failure_cause,
            notification_delivered=delivered,
        )
        return ReplicationStep.FAIL_TERMINAL
