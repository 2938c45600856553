"""Lambda entry points for the deployed replication workflow.

``kickoff`` is invoked by each pipeline copy action. The remaining handlers
are the task states of the deployed state machine: each one reads the
execution input document, adds only the field it owns (``snapshotId``,
``snapshotState`` or ``imageId``) and passes everything else through
unchanged. Retries, the poll wait and the failure catch are configured on
the state machine itself, so these handlers make single attempts and let
errors propagate.
"""

import asyncio
from functools import lru_cache
from typing import Any

import structlog

from ami_replication.clients.artifacts import PipelineArtifactReader, SourceArtifact
from ami_replication.clients.aws import AwsSessionFactory
from ami_replication.clients.codepipeline import CodePipelineJobNotifier
from ami_replication.clients.ec2 import SnapshotCopyClient
from ami_replication.config.settings import get_settings
from ami_replication.config.targets import CopyJobParameters
from ami_replication.core.exceptions import (
    ConfigurationError,
    InvalidJobParametersError,
    SourceArtifactError,
)
from ami_replication.core.logging import configure_logging
from ami_replication.core.retry import RetryPolicy, call_with_retry
from ami_replication.dispatch.kickoff import DISPATCH_FAILURE_CAUSE, CopyJob, KickoffDispatcher
from ami_replication.dispatch.starters import StepFunctionsExecutionStarter
from ami_replication.models.schemas import ReplicationRequest

logger = structlog.get_logger(__name__)

PIPELINE_JOB_KEY = "CodePipeline.job"
INVALID_PARAMETERS_CAUSE = "Invalid copy action parameters"


@lru_cache
def _sessions() -> AwsSessionFactory:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    return AwsSessionFactory()


@lru_cache
def _copy_client() -> SnapshotCopyClient:
    return SnapshotCopyClient(_sessions())


@lru_cache
def _notifier() -> CodePipelineJobNotifier:
    return CodePipelineJobNotifier(_sessions(), get_settings().aws_region)


def _dispatcher() -> KickoffDispatcher:
    settings = get_settings()
    if not settings.state_machine_arn:
        raise ConfigurationError("STATE_MACHINE_ARN is not set", "state_machine_arn")
    return KickoffDispatcher(
        _copy_client(),
        _notifier(),
        StepFunctionsExecutionStarter(settings.state_machine_arn, _sessions(), settings.aws_region),
        source_region=settings.aws_region,
        artifacts=PipelineArtifactReader(
            _sessions(),
            manifest_name=settings.source_artifact_file,
            image_field=settings.source_artifact_field,
        ),
        policy=RetryPolicy.from_settings(settings),
    )


async def _report_misconfiguration(job_id: str) -> None:
    """Fail the job under the retry policy when no dispatcher can be built."""
    notifier = _notifier()

    def attempt():
        loop = asyncio.get_event_loop()
        return loop.run_in_executor(None, notifier.notify_failure, job_id, DISPATCH_FAILURE_CAUSE)

    await call_with_retry(attempt, RetryPolicy.from_settings(get_settings()), step="DispatchFailure")


# =============================================================================
# Pipeline action
# =============================================================================


def kickoff(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Start one replication execution for a pipeline copy action.

    The image to copy is the one named by the job's input artifact (the Test
    stage output). Only a job without input artifacts falls back to the latest
    image named ``amiName``. Returns without waiting for the execution.
    Malformed parameters and start failures are reported to the pipeline job
    before returning.
    """
    job = event[PIPELINE_JOB_KEY]
    job_id = job["id"]
    data = job["data"]
    configuration = data["actionConfiguration"]["configuration"]
    log = logger.bind(job_id=job_id)

    try:
        dispatcher = _dispatcher()
    except ConfigurationError as e:
        log.error("kickoff_misconfigured", error=str(e))
        try:
            asyncio.run(_report_misconfiguration(job_id))
        except Exception as report_error:
            log.error("dispatch_failure_report_dropped", error=str(report_error))
        raise

    try:
        parameters = CopyJobParameters.from_user_parameters(configuration.get("UserParameters", ""))
    except InvalidJobParametersError as e:
        log.error("kickoff_invalid_parameters", error=str(e))
        asyncio.run(dispatcher.report_failure(job_id, INVALID_PARAMETERS_CAUSE))
        return {"jobId": job_id, "started": False, "error": str(e)}

    try:
        artifact = SourceArtifact.from_job_data(data, get_settings().input_artifact_name)
    except SourceArtifactError as e:
        log.error("kickoff_source_artifact_missing", error=str(e))
        asyncio.run(dispatcher.report_failure(job_id))
        return {"jobId": job_id, "started": False, "error": str(e)}

    job_to_start = CopyJob(job_id=job_id, parameters=parameters, source_artifact=artifact)
    result = asyncio.run(dispatcher.dispatch_one(job_to_start))
    return {
        "jobId": job_id,
        "started": result.started,
        "executionArn": result.execution_id,
        "error": result.error,
    }


# =============================================================================
# State machine tasks
# =============================================================================


def copy_snapshot(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    request = ReplicationRequest.from_execution_input(event)
    return {**event, "snapshotId": _copy_client().start_copy(request)}


def check_snapshot_progress(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    request = ReplicationRequest.from_execution_input(event)
    state = _copy_client().check_progress(request, event["snapshotId"])
    return {**event, "snapshotState": state}


def register_image(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    request = ReplicationRequest.from_execution_input(event)
    return {**event, "imageId": _copy_client().register_result(request, event["snapshotId"])}


def notify_success(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    _notifier().notify_success(event["pipelineJobId"])
    return event


def notify_failure(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Report failure; ``errorInfo`` from the catch is logged, never forwarded."""
    logger.error(
        "replication_failed",
        job_id=event["pipelineJobId"],
        error_info=event.get("errorInfo"),
    )
    _notifier().notify_failure(event["pipelineJobId"], get_settings().failure_cause)
    return event
