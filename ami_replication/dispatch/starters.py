"""Execution starters.

A starter launches one replication execution and returns its identifier
without waiting for it. Completion is only ever observed through the job
notifier the execution calls when it ends.
"""

import asyncio
import json
import re
from typing import Optional, Protocol

import structlog

from ami_replication.clients.aws import AwsSessionFactory
from ami_replication.core.exceptions import DispatchError, classify_provider_error
from ami_replication.models.schemas import ExecutionState, ReplicationRequest, TerminalOutcome
from ami_replication.workflows.state_machine import ReplicationStateMachine

logger = structlog.get_logger(__name__)


class ExecutionStarter(Protocol):
    async def start(self, request: ReplicationRequest, pipeline_job_id: str) -> str: ...


class LocalExecutionStarter:
    """
    Runs each execution as an independent asyncio task in this process.

    References to in-flight tasks are kept so executions are not garbage
    collected mid-flight and can be awaited or cancelled on shutdown. A task
    is dropped as soon as it finishes; its record stays in the store.
    """

    def __init__(self, state_machine: ReplicationStateMachine):
        self.state_machine = state_machine
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def start(self, request: ReplicationRequest, pipeline_job_id: str) -> str:
        state = ExecutionState(pipeline_job_id=pipeline_job_id, request=request)
        await self.state_machine.store.save(state)
        self._spawn(state)
        logger.info(
            "execution_started",
            execution_id=state.execution_id,
            job_id=pipeline_job_id,
            target=request.target,
        )
        return state.execution_id

    async def resume(self, execution_id: str) -> bool:
        """Continue a stored, unfinished execution from the step it stopped at.

        Returns False when the execution is unknown, finished or already running.
        """
        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            return False
        state = await self.state_machine.store.load(execution_id)
        if state is None or state.step.is_terminal:
            return False
        self._spawn(state)
        logger.info("execution_resumed", execution_id=execution_id, step=state.step.value)
        return True

    async def resume_unfinished(self) -> int:
        """Resume every stored execution that has not finished; returns how many."""
        resumed = 0
        for execution_id in await self.state_machine.store.unfinished_ids():
            if await self.resume(execution_id):
                resumed += 1
        return resumed

    def _spawn(self, state: ExecutionState) -> None:
        execution_id = state.execution_id
        task = asyncio.create_task(
            self.state_machine.run(state),
            name=f"replication-{execution_id}",
        )
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t: self._forget(execution_id, t))

    def _forget(self, execution_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(execution_id) is task:
            del self._tasks[execution_id]

    async def wait_all(self) -> dict[str, TerminalOutcome]:
        """Wait for the executions still in flight and return their outcomes."""
        in_flight = dict(self._tasks)
        results = await asyncio.gather(*in_flight.values(), return_exceptions=True)
        outcomes = {}
        for execution_id, result in zip(in_flight, results):
            if isinstance(result, BaseException):
                logger.error("execution_crashed", execution_id=execution_id, error=str(result))
                continue
            outcomes[execution_id] = result
        return outcomes

    async def cancel_all(self) -> None:
        in_flight = list(self._tasks.values())
        for task in in_flight:
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)


_EXECUTION_NAME_INVALID = re.compile(r"[^A-Za-z0-9_-]")


def execution_name(request: ReplicationRequest, pipeline_job_id: str) -> str:
    """Deterministic execution name, so a repeated start for the same job is rejected."""
    name = f"{request.destination_account_id}-{request.destination_region}-{pipeline_job_id}"
    return _EXECUTION_NAME_INVALID.sub("_", name)[:80]


class StepFunctionsExecutionStarter:
    """
    Starts executions of a deployed Step Functions state machine.

    Args:
        state_machine_arn: ARN of the replication state machine.
        sessions: Factory used to build the Step Functions client.
        region: Region of the state machine.
    """

    def __init__(
        self,
        state_machine_arn: str,
        sessions: Optional[AwsSessionFactory] = None,
        region: Optional[str] = None,
    ):
        self.state_machine_arn = state_machine_arn
        self._sessions = sessions or AwsSessionFactory()
        self._region = region

    def _start(self, request: ReplicationRequest, pipeline_job_id: str) -> str:
        client = self._sessions.client("stepfunctions", self._region)
        name = execution_name(request, pipeline_job_id)
        try:
            response = client.start_execution(
                stateMachineArn=self.state_machine_arn,
                name=name,
                input=json.dumps(request.to_execution_input(pipeline_job_id)),
            )
        except Exception as e:
            error = classify_provider_error(e, "StartExecution")
            if getattr(error, "code", None) == "ExecutionAlreadyExists":
                raise DispatchError(
                    pipeline_job_id,
                    "An execution for this job already exists",
                    {"execution_name": name},
                ) from e
            raise error from e
        return response["executionArn"]

    async def start(self, request: ReplicationRequest, pipeline_job_id: str) -> str:
        loop = asyncio.get_event_loop()
        execution_arn = await loop.run_in_executor(None, self._start, request, pipeline_job_id)
        logger.info(
            "execution_started",
            execution_arn=execution_arn,
            job_id=pipeline_job_id,
            target=request.target,
        )
        return execution_arn
