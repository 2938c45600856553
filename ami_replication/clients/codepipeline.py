"""Pipeline job-result notifier.

Reports the terminal result of a replication back to the pipeline job that
started it. Calls are single attempts; the state machine applies the retry
policy around them.
"""

from typing import Any, Optional, Protocol

import structlog

from ami_replication.clients.aws import AwsSessionFactory
from ami_replication.core.exceptions import (
    NotificationError,
    RetryableError,
    classify_provider_error,
)

logger = structlog.get_logger(__name__)

# CodePipeline rejects failure messages longer than this.
MAX_FAILURE_MESSAGE_LENGTH = 5000


class JobNotifier(Protocol):
    """Anything able to signal a pipeline job's terminal result."""

    def notify_success(self, job_id: str) -> None: ...

    def notify_failure(self, job_id: str, cause: str) -> None: ...


class CodePipelineJobNotifier:
    """
    Job notifier backed by the CodePipeline job-result API.

    Args:
        sessions: Factory used to build the CodePipeline client.
        region: Region of the pipeline.
    """

    def __init__(self, sessions: Optional[AwsSessionFactory] = None, region: Optional[str] = None):
        self._sessions = sessions or AwsSessionFactory()
        self._region = region
        self._client: Any = None

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self._sessions.client("codepipeline", self._region)
        return self._client

    def _call(self, operation: str, **kwargs: Any) -> Any:
        try:
            return getattr(self.client, operation)(**kwargs)
        except Exception as e:
            error = classify_provider_error(e, operation)
            if isinstance(error, RetryableError):
                raise error from e
            raise NotificationError(str(error), {"operation": operation}) from e

    def notify_success(self, job_id: str) -> None:
        self._call("put_job_success_result", jobId=job_id)
        logger.info("pipeline_job_succeeded", job_id=job_id)

    def notify_failure(self, job_id: str, cause: str) -> None:
        self._call(
            "put_job_failure_result",
            jobId=job_id,
            failureDetails={
                "type": "JobFailed",
                "message": cause[:MAX_FAILURE_MESSAGE_LENGTH],
            },
        )
        logger.info("pipeline_job_failed", job_id=job_id, cause=cause)
