"""
Dependency container for the in-process replication service.

Wires settings, AWS clients, the execution store, the state machine and the
kickoff dispatcher together with lazy initialization. Collaborators can be
injected for tests.

Usage:
    container = ReplicationContainer()
    await container.start()
    results = await container.dispatcher.dispatch(jobs)

    # At shutdown
    await container.shutdown()
"""

from __future__ import annotations

from typing import Optional

import structlog

from ami_replication.clients.artifacts import PipelineArtifactReader
from ami_replication.clients.aws import AwsSessionFactory
from ami_replication.clients.codepipeline import CodePipelineJobNotifier, JobNotifier
from ami_replication.clients.ec2 import SnapshotCopyClient
from ami_replication.config.settings import Settings, get_settings
from ami_replication.core.exceptions import InitializationError
from ami_replication.core.retry import RetryPolicy, SleepFn
from ami_replication.dispatch.kickoff import KickoffDispatcher
from ami_replication.dispatch.starters import LocalExecutionStarter
from ami_replication.workflows.state_machine import ReplicationStateMachine
from ami_replication.workflows.store import ExecutionStore, StateStore, create_execution_store

logger = structlog.get_logger(__name__)


class ReplicationContainer:
    """
    Central container for the replication service's dependencies.

    Args:
        settings: Application settings. Defaults to get_settings().
        client: Snapshot copy client override.
        notifier: Job notifier override.
        store: Execution store override.
        sleep: Awaitable sleep override for retries and polling waits.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: SnapshotCopyClient | None = None,
        notifier: JobNotifier | None = None,
        store: StateStore | None = None,
        sleep: Optional[SleepFn] = None,
    ):
        self._settings = settings or get_settings()
        self._sessions: AwsSessionFactory | None = None
        self._client = client
        self._notifier = notifier
        self._store = store
        self._sleep = sleep
        self._state_machine: ReplicationStateMachine | None = None
        self._starter: LocalExecutionStarter | None = None
        self._dispatcher: KickoffDispatcher | None = None

        logger.info("replication_container_created")

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def sessions(self) -> AwsSessionFactory:
        if self._sessions is None:
            try:
                self._sessions = AwsSessionFactory()
            except Exception as e:
                logger.error("aws_session_creation_failed", error=str(e))
                raise InitializationError(
                    "AwsSessionFactory",
                    f"Failed to create AWS session: {e}",
                    {"region": self._settings.aws_region},
                ) from e
        return self._sessions

    @property
    def client(self) -> SnapshotCopyClient:
        if self._client is None:
            self._client = SnapshotCopyClient(self.sessions)
        return self._client

    @property
    def notifier(self) -> JobNotifier:
        if self._notifier is None:
            self._notifier = CodePipelineJobNotifier(self.sessions, self._settings.aws_region)
        return self._notifier

    @property
    def store(self) -> StateStore:
        """The execution store; in-memory unless start() connected another one."""
        if self._store is None:
            self._store = ExecutionStore()
        return self._store

    @property
    def state_machine(self) -> ReplicationStateMachine:
        if self._state_machine is None:
            kwargs = {"store": self.store}
            if self._sleep is not None:
                kwargs["sleep"] = self._sleep
            self._state_machine = ReplicationStateMachine.from_settings(
                self.client,
                self.notifier,
                self._settings,
                **kwargs,
            )
        return self._state_machine

    @property
    def starter(self) -> LocalExecutionStarter:
        if self._starter is None:
            self._starter = LocalExecutionStarter(self.state_machine)
        return self._starter

    @property
    def dispatcher(self) -> KickoffDispatcher:
        if self._dispatcher is None:
            kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
            self._dispatcher = KickoffDispatcher(
                self.client,
                self.notifier,
                self.starter,
                source_region=self._settings.aws_region,
                artifacts=PipelineArtifactReader(
                    self.sessions,
                    manifest_name=self._settings.source_artifact_file,
                    image_field=self._settings.source_artifact_field,
                ),
                policy=RetryPolicy.from_settings(self._settings),
                **kwargs,
            )
        return self._dispatcher

    async def start(self) -> int:
        """
        Connect the configured execution store and resume unfinished executions.

        Returns:
            Number of executions resumed.
        """
        if self._store is None:
            self._store = await create_execution_store(self._settings)
        resumed = await self.starter.resume_unfinished()
        logger.info("replication_container_started", resumed_executions=resumed)
        return resumed

    async def shutdown(self) -> None:
        """
        Cancel in-flight executions and close the execution store.

        With the Redis store the cancelled executions are resumed by the next
        start(). The in-memory store is discarded with the container.
        """
        logger.info("replication_container_shutting_down")
        if self._starter is not None:
            running = self._starter.running
            await self._starter.cancel_all()
            logger.info("executions_cancelled", count=running)
        if self._store is not None:
            await self._store.close()
        logger.info("replication_container_shutdown_complete")


_container: ReplicationContainer | None = None


def get_container() -> ReplicationContainer:
    """Get the global container instance, creating it on first use."""
    global _container
    if _container is None:
        _container = ReplicationContainer()
    return _container


def set_container(container: ReplicationContainer | None) -> None:
    """Replace the global container (tests, custom wiring)."""
    global _container
    _container = container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.shutdown()
        _container = None
