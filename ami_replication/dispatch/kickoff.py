"""Kickoff dispatcher.

Receives one copy job per (account, region) target and starts one
independent replication execution for each, returning as soon as the
executions are started. The dispatcher never waits for an execution: the
pipeline job is completed later by the execution's own notification.

If an execution cannot be started, no execution exists to report the
failure, so the dispatcher reports it to the pipeline job itself before
returning.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import structlog

from ami_replication.clients.artifacts import PipelineArtifactReader, SourceArtifact
from ami_replication.clients.codepipeline import JobNotifier
from ami_replication.clients.ec2 import SnapshotCopyClient, root_snapshot_id
from ami_replication.config.targets import CopyJobParameters
from ami_replication.core.retry import RetryPolicy, SleepFn, call_with_retry
from ami_replication.dispatch.starters import ExecutionStarter
from ami_replication.models.schemas import ReplicationRequest
from ami_replication.monitoring.metrics import record_dispatch

logger = structlog.get_logger(__name__)

DISPATCH_FAILURE_CAUSE = "Failed to start snapshot copy"


@dataclass
class CopyJob:
    """One pipeline copy action awaiting replication.

    Attributes:
        job_id: Pipeline job to notify when the replication ends.
        parameters: The action's user parameters.
        source_image_id: Image to copy, when known up front.
        source_artifact: Input artifact naming the tested image; read when
            ``source_image_id`` is not given.

    Without either, the latest image named ``parameters.ami_name`` is used.
    """

    job_id: str
    parameters: CopyJobParameters
    source_image_id: Optional[str] = None
    source_artifact: Optional[SourceArtifact] = None


@dataclass
class DispatchResult:
    job_id: str
    started: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None


class KickoffDispatcher:
    """
    Starts replication executions for pipeline copy jobs.

    Args:
        client: Used to resolve the source image and share its snapshot.
        notifier: Reports start failures to the pipeline.
        starter: Launches executions.
        source_region: Region holding the source images.
        artifacts: Reads the tested image id from job input artifacts.
        policy: Retry policy for the preparation and failure report calls.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        client: SnapshotCopyClient,
        notifier: JobNotifier,
        starter: ExecutionStarter,
        *,
        source_region: str,
        artifacts: Optional[PipelineArtifactReader] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.client = client
        self._artifacts = artifacts
        self.notifier = notifier
        self.starter = starter
        self.source_region = source_region
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def artifacts(self) -> PipelineArtifactReader:
        if self._artifacts is None:
            self._artifacts = PipelineArtifactReader()
        return self._artifacts

    async def dispatch(self, jobs: Iterable[CopyJob]) -> list[DispatchResult]:
        """Start one execution per job, concurrently. Never raises for a single job."""
        return list(await asyncio.gather(*(self.dispatch_one(job) for job in jobs)))

    async def dispatch_one(self, job: CopyJob) -> DispatchResult:
        log = logger.bind(
            job_id=job.job_id,
            destination_account_id=job.parameters.destination_account_id,
            destination_region=job.parameters.destination_region,
        )

        try:
            request = await self._retry(self._prepare, job, step="Kickoff")
            execution_id = await self.starter.start(request, job.job_id)
        except Exception as e:
            record_dispatch(False)
            log.error("dispatch_failed", error=str(e), error_type=type(e).__name__)
            await self._report_failure(job.job_id, log)
            return DispatchResult(job_id=job.job_id, started=False, error=str(e))

        record_dispatch(True)
        log.info("dispatch_started", execution_id=execution_id)
        return DispatchResult(job_id=job.job_id, started=True, execution_id=execution_id)

    async def _retry(self, fn: Any, *args: Any, step: str) -> Any:
        def attempt() -> Any:
            loop = asyncio.get_event_loop()
            return loop.run_in_executor(None, lambda: fn(*args))

        return await call_with_retry(attempt, self.policy, step=step, sleep=self._sleep)

    def _prepare(self, job: CopyJob) -> ReplicationRequest:
        """Resolve the source image, share its snapshot and build the request."""
        params = job.parameters
        image_id = job.source_image_id
        if image_id is None and job.source_artifact is not None:
            image_id = self.artifacts.image_id(job.source_artifact, self.source_region)

        if image_id:
            image = self.client.describe_source_image(self.source_region, image_id)
        else:
            logger.warning("source_image_by_name", job_id=job.job_id, ami_name=params.ami_name)
            image = self.client.find_latest_image(self.source_region, params.ami_name)

        self.client.share_snapshot(
            self.source_region,
            root_snapshot_id(image),
            params.destination_account_id,
        )

        return ReplicationRequest(
            source_image_id=image["ImageId"],
            source_region=self.source_region,
            destination_account_id=params.destination_account_id,
            destination_region=params.destination_region,
            destination_role_name=params.destination_role_name,
            encryption_key_alias=params.kms_key_alias,
            resource_name=params.ami_name,
        )

    async def report_failure(self, job_id: str, cause: str = DISPATCH_FAILURE_CAUSE) -> bool:
        """Report a failed start to the pipeline; returns whether it was accepted."""
        return await self._report_failure(job_id, logger.bind(job_id=job_id), cause)

    async def _report_failure(
        self,
        job_id: str,
        log: Any,
        cause: str = DISPATCH_FAILURE_CAUSE,
    ) -> bool:
        try:
            await self._retry(self.notifier.notify_failure, job_id, cause, step="DispatchFailure")
        except Exception as e:
            log.error("dispatch_failure_report_dropped", error=str(e))
            return False
        return True
