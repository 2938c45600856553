"""Unit tests for the replication state machine."""

import pytest

from ami_replication.core.exceptions import ErrorKind, NotificationError, PermanentError, RetryableError
from ami_replication.models.schemas import ExecutionState, ReplicationStep
from ami_replication.workflows.state_machine import ReplicationStateMachine, evaluate_progress
from ami_replication.workflows.store import ExecutionStore
from tests.conftest import FakeCopyClient, FakeNotifier, throttled


def entered_steps(state: ExecutionState) -> list[str]:
    return [event.step for event in state.history if event.event == "entered"]


@pytest.fixture
def store():
    return ExecutionStore()


@pytest.fixture
def build(fake_notifier, sleeper, store):
    """Build a state machine around a scripted client."""

    def _build(client: FakeCopyClient, notifier: FakeNotifier = None, **kwargs):
        return ReplicationStateMachine(
            client,
            notifier or fake_notifier,
            store=store,
            sleep=sleeper,
            **kwargs,
        )

    return _build


class TestEvaluateProgress:
    """Test the progress branch."""

    @pytest.mark.parametrize(
        "snapshot_state,expected",
        [
            ("completed", ReplicationStep.REGISTER_IMAGE),
            ("error", ReplicationStep.FAIL),
            ("pending", ReplicationStep.WAIT_THEN_RECHECK),
            ("recoverable", ReplicationStep.WAIT_THEN_RECHECK),
            ("", ReplicationStep.WAIT_THEN_RECHECK),
            (None, ReplicationStep.WAIT_THEN_RECHECK),
        ],
    )
    def test_branches(self, snapshot_state, expected):
        """completed registers, error fails, anything else waits."""
        assert evaluate_progress(snapshot_state) is expected


class TestReplicationScenarios:
    """End-to-end runs against scripted provider responses."""

    @pytest.mark.asyncio
    async def test_immediate_completion(self, build, fake_notifier, sleeper, sample_request):
        """Copy, completed on first poll, register, notify success once."""
        client = FakeCopyClient(states=["completed"])
        state = ExecutionState(pipeline_job_id="job-1", request=sample_request)

        outcome = await build(client).run(state)

        assert outcome.success is True
        assert fake_notifier.successes == ["job-1"]
        assert fake_notifier.failures == []
        assert state.step is ReplicationStep.SUCCESS_TERMINAL
        assert state.snapshot_id == "snap-111111111111-us-west-2"
        assert state.image_id == "ami-111111111111"
        assert ReplicationStep.FAIL.value not in entered_steps(state)
        assert entered_steps(state) == [
            "CopySnapshot",
            "CheckSnapshot",
            "EvalProgress",
            "RegisterImage",
            "NotifySuccess",
        ]
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_pending_then_completed(self, build, fake_notifier, sleeper, sample_request):
        """Two pending polls produce two 30-second waits before registering."""
        client = FakeCopyClient(states=["pending", "pending", "completed"])
        state = ExecutionState(pipeline_job_id="job-2", request=sample_request)

        outcome = await build(client).run(state)

        assert outcome.success is True
        assert sleeper.delays == [30.0, 30.0]
        assert state.poll_count == 3
        assert len(client.copy_calls) == 1
        assert client.register_calls == [state.snapshot_id]
        steps = entered_steps(state)
        assert steps.count("WaitThenRecheck") == 2
        assert steps.index("RegisterImage") > max(
            i for i, step in enumerate(steps) if step == "WaitThenRecheck"
        )
        assert fake_notifier.successes == ["job-2"]

    @pytest.mark.asyncio
    async def test_snapshot_error_fails(self, build, fake_notifier, sample_request):
        """An error state fails with the fixed cause and never registers."""
        client = FakeCopyClient(states=["error"])
        state = ExecutionState(pipeline_job_id="job-3", request=sample_request)

        outcome = await build(client).run(state)

        assert outcome.success is False
        assert outcome.cause == "Snapshot copy failed"
        assert fake_notifier.failures == [("job-3", "Snapshot copy failed")]
        assert fake_notifier.successes == []
        assert client.register_calls == []
        assert state.step is ReplicationStep.FAIL_TERMINAL
        assert state.error_info.error == "SnapshotCopyError"
        assert "Fail" in entered_steps(state)

    @pytest.mark.asyncio
    async def test_copy_retries_exhausted(self, build, fake_notifier, sleeper, sample_request):
        """A copy that keeps throttling fails after six attempts."""
        client = FakeCopyClient(copy_errors=[throttled() for _ in range(6)])
        state = ExecutionState(pipeline_job_id="job-4", request=sample_request)

        outcome = await build(client).run(state)

        assert outcome.success is False
        assert len(client.copy_calls) == 6
        assert state.attempts["CopySnapshot"] == 6
        assert sleeper.delays == [2, 4, 8, 16, 32]
        assert state.error_info.error == "RetryableError"
        assert state.error_info.kind == ErrorKind.THROTTLING.value
        assert state.error_info.step == "CopySnapshot"
        assert client.check_calls == []
        assert fake_notifier.failures == [("job-4", "Snapshot copy failed")]

    @pytest.mark.asyncio
    async def test_transient_check_error_recovers(self, build, fake_notifier, sleeper, sample_request):
        """A throttled progress check is retried within the same poll."""
        client = FakeCopyClient(states=["completed"], check_errors=[throttled("DescribeSnapshots")])
        state = ExecutionState(pipeline_job_id="job-5", request=sample_request)

        outcome = await build(client).run(state)

        assert outcome.success is True
        assert state.poll_count == 1
        assert state.attempts["CheckSnapshot"] == 2
        assert sleeper.delays == [2]

    @pytest.mark.asyncio
    async def test_permanent_register_error_fails_without_retry(self, build, fake_notifier, sample_request):
        """A permanent registration error goes straight to Fail."""
        client = FakeCopyClient(register_errors=[PermanentError("InvalidParameterValue")])
        state = ExecutionState(pipeline_job_id="job-6", request=sample_request)

        outcome = await build(client).run(state)

        assert outcome.success is False
        assert len(client.register_calls) == 1
        assert state.error_info.step == "RegisterImage"
        assert fake_notifier.failures == [("job-6", "Snapshot copy failed")]


class TestNotification:
    """Exactly-once, best-effort notification."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("states", [["completed"], ["error"], ["pending", "completed"]])
    async def test_exactly_one_notification(self, build, sample_request, states):
        """Every execution notifies the pipeline exactly once."""
        notifier = FakeNotifier()
        state = ExecutionState(pipeline_job_id="job-x", request=sample_request)

        await build(FakeCopyClient(states=states), notifier).run(state)

        assert notifier.calls == 1
        assert len(notifier.successes) + len(notifier.failures) == 1

    @pytest.mark.asyncio
    async def test_success_notification_failure_still_terminal(self, build, sample_request):
        """A rejected success notification is dropped, not turned into a failure."""
        notifier = FakeNotifier(errors=[NotificationError("job not found")])
        state = ExecutionState(pipeline_job_id="job-7", request=sample_request)

        outcome = await build(FakeCopyClient(), notifier).run(state)

        assert outcome.success is True
        assert outcome.notification_delivered is False
        assert state.step is ReplicationStep.SUCCESS_TERMINAL
        assert notifier.calls == 1
        assert notifier.failures == []
        assert "Fail" not in entered_steps(state)

    @pytest.mark.asyncio
    async def test_failure_notification_retried_then_dropped(self, build, sleeper, sample_request):
        """A failure notification that keeps throttling ends the execution anyway."""
        notifier = FakeNotifier(
            errors=[RetryableError(ErrorKind.THROTTLING, "slow down") for _ in range(6)]
        )
        state = ExecutionState(pipeline_job_id="job-8", request=sample_request)

        outcome = await build(FakeCopyClient(states=["error"]), notifier).run(state)

        assert outcome.success is False
        assert outcome.notification_delivered is False
        assert state.step is ReplicationStep.FAIL_TERMINAL
        assert notifier.calls == 6
        assert any(event.event == "notification_dropped" for event in state.history)


class TestPolling:
    """Polling bounds and idempotence."""

    @pytest.mark.asyncio
    async def test_poll_limit_fails_execution(self, build, fake_notifier, sleeper, sample_request):
        """A snapshot that never settles fails once the poll limit is reached."""
        client = FakeCopyClient(states=["pending"])
        state = ExecutionState(pipeline_job_id="job-9", request=sample_request)

        outcome = await build(client, max_poll_iterations=3).run(state)

        assert outcome.success is False
        assert len(client.check_calls) == 3
        assert sleeper.delays == [30.0, 30.0]
        assert state.error_info.error == "PollLimitExceededError"
        assert state.error_info.step == "EvalProgress"
        assert fake_notifier.failures == [("job-9", "Snapshot copy failed")]

    @pytest.mark.asyncio
    async def test_last_allowed_check_completing_still_registers(self, build, sleeper, sample_request):
        """A snapshot that completes on the final allowed check is registered."""
        client = FakeCopyClient(states=["pending", "pending", "completed"])
        state = ExecutionState(pipeline_job_id="job-9b", request=sample_request)

        outcome = await build(client, max_poll_iterations=3).run(state)

        assert outcome.success is True
        assert len(client.check_calls) == 3
        assert sleeper.delays == [30.0, 30.0]

    @pytest.mark.asyncio
    async def test_recheck_after_completed_starts_no_copy(self, build, sample_request):
        """Checking an already completed snapshot again never starts a new copy."""
        client = FakeCopyClient(states=["completed"])
        machine = build(client)
        state = ExecutionState(
            pipeline_job_id="job-10",
            request=sample_request,
            step=ReplicationStep.CHECK_SNAPSHOT,
            snapshot_id="snap-existing",
            snapshot_state="completed",
            poll_count=1,
        )

        outcome = await machine.run(state)

        assert outcome.success is True
        assert client.copy_calls == []
        assert client.check_calls == ["snap-existing"]

    @pytest.mark.asyncio
    async def test_check_without_snapshot_fails(self, build, fake_notifier, sample_request):
        """CheckSnapshot with no snapshot to check fails the execution."""
        client = FakeCopyClient()
        state = ExecutionState(
            pipeline_job_id="job-11",
            request=sample_request,
            step=ReplicationStep.CHECK_SNAPSHOT,
        )

        outcome = await build(client).run(state)

        assert outcome.success is False
        assert client.check_calls == []
        assert state.error_info.step == "CheckSnapshot"


class TestPersistenceAndResume:
    """Stored executions and resume."""

    @pytest.mark.asyncio
    async def test_terminal_state_is_stored(self, build, store, sample_request):
        """The store holds the terminal record, including the error payload."""
        state = ExecutionState(pipeline_job_id="job-12", request=sample_request)

        await build(FakeCopyClient(states=["error"])).run(state)

        record = await store.get(state.execution_id)
        assert record["step"] == "FailTerminal"
        assert record["error_info"]["Error"] == "SnapshotCopyError"
        assert record["outcome"] == {
            "success": False,
            "cause": "Snapshot copy failed",
            "notification_delivered": True,
        }
        assert record["request"]["destinationAccountId"] == "111111111111"

    @pytest.mark.asyncio
    async def test_resume_from_stored_wait(self, build, store, fake_notifier, sample_request):
        """A stored execution waiting to recheck resumes without copying again."""
        interrupted = ExecutionState(
            pipeline_job_id="job-13",
            request=sample_request,
            step=ReplicationStep.WAIT_THEN_RECHECK,
            snapshot_id="snap-in-flight",
            snapshot_state="pending",
            poll_count=4,
        )
        await store.save(interrupted)
        client = FakeCopyClient(states=["completed"])

        resumed = await store.load(interrupted.execution_id)
        outcome = await build(client).run(resumed)

        assert outcome.success is True
        assert client.copy_calls == []
        assert client.check_calls == ["snap-in-flight"]
        assert resumed.poll_count == 5
        assert fake_notifier.successes == ["job-13"]

    @pytest.mark.asyncio
    async def test_finished_execution_is_not_rerun(self, build, fake_notifier, sample_request):
        """Running a terminal execution again returns its outcome without side effects."""
        client = FakeCopyClient()
        machine = build(client)
        state = ExecutionState(pipeline_job_id="job-14", request=sample_request)

        first = await machine.run(state)
        second = await machine.run(state)

        assert second is first
        assert len(client.copy_calls) == 1
        assert fake_notifier.calls == 1

    @pytest.mark.asyncio
    async def test_from_settings(self, fake_client, fake_notifier):
        """Settings drive the poll interval, poll cap and failure cause."""
        from ami_replication.config.settings import Settings

        settings = Settings(poll_interval_seconds=45, max_poll_iterations=10, retry_max_attempts=3)

        machine = ReplicationStateMachine.from_settings(fake_client, fake_notifier, settings)

        assert machine.poll_interval_seconds == 45
        assert machine.max_poll_iterations == 10
        assert machine.policy.max_attempts == 3
        assert machine.failure_cause == "Snapshot copy failed"
