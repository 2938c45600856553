"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- sample_request: Replication request for 111111111111 / us-west-2
- sample_image: Source image description with an EBS root snapshot
- fake_client: Scripted snapshot copy client
- fake_notifier: Job notifier counting invocations
- sleeper: Awaitable sleep recording requested delays
- client_error: Factory for botocore ClientError instances
"""

from typing import Any, Iterable, Optional

import pytest
from botocore.exceptions import ClientError

from ami_replication.core.exceptions import ErrorKind, RetryableError
from ami_replication.models.schemas import ReplicationRequest

SOURCE_IMAGE_ID = "ami-0123456789abcdef0"
TESTED_IMAGE_ID = "ami-0feedbeef00000001"
SOURCE_SNAPSHOT_ID = "snap-0source0000000000"


def make_client_error(
    code: str,
    message: str = "error",
    status: int = 400,
    operation: str = "CopySnapshot",
) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def throttled(operation: str = "CopySnapshot") -> RetryableError:
    return RetryableError(ErrorKind.THROTTLING, f"[{operation}] Rate exceeded")


def make_request(account_id: str = "111111111111", region: str = "us-west-2") -> ReplicationRequest:
    return ReplicationRequest(
        source_image_id=SOURCE_IMAGE_ID,
        source_region="us-east-1",
        destination_account_id=account_id,
        destination_region=region,
        destination_role_name="AmiCopyDestinationRole",
        encryption_key_alias="alias/ami/base-linux",
        resource_name="base-linux",
    )


def make_image(image_id: str = SOURCE_IMAGE_ID, snapshot_id: str = SOURCE_SNAPSHOT_ID) -> dict:
    return {
        "ImageId": image_id,
        "Name": "base-linux-2024-01-15",
        "CreationDate": "2024-01-15T12:00:00.000Z",
        "Architecture": "arm64",
        "RootDeviceName": "/dev/xvda",
        "VirtualizationType": "hvm",
        "EnaSupport": True,
        "BlockDeviceMappings": [
            {
                "DeviceName": "/dev/xvda",
                "Ebs": {
                    "SnapshotId": snapshot_id,
                    "DeleteOnTermination": True,
                    "VolumeType": "gp3",
                },
            }
        ],
    }


class FakeCopyClient:
    """
    Scripted stand-in for SnapshotCopyClient.

    Each ``*_errors`` list is consumed one exception per call before the call
    succeeds. Targets in ``failing_copy_targets`` fail every copy with a
    throttling error. ``states`` is returned one per progress check, the last
    value repeating.
    """

    def __init__(
        self,
        states: Iterable[str] = ("completed",),
        copy_errors: Iterable[Exception] = (),
        check_errors: Iterable[Exception] = (),
        register_errors: Iterable[Exception] = (),
        failing_copy_targets: Iterable[str] = (),
        prepare_error: Optional[Exception] = None,
    ):
        self.states = list(states)
        self.copy_errors = list(copy_errors)
        self.check_errors = list(check_errors)
        self.register_errors = list(register_errors)
        self.failing_copy_targets = set(failing_copy_targets)
        self.prepare_error = prepare_error

        self.copy_calls: list[ReplicationRequest] = []
        self.check_calls: list[str] = []
        self.register_calls: list[str] = []
        self.shared: list[tuple[str, str]] = []
        self.name_lookups: list[str] = []
        self._checks = 0

    # Dispatcher preparation

    def describe_source_image(self, region: str, image_id: str) -> dict:
        if self.prepare_error is not None:
            raise self.prepare_error
        return make_image(image_id)

    def find_latest_image(self, region: str, name: str) -> dict:
        self.name_lookups.append(name)
        if self.prepare_error is not None:
            raise self.prepare_error
        return make_image()

    def share_snapshot(self, region: str, snapshot_id: str, account_id: str) -> None:
        self.shared.append((snapshot_id, account_id))

    # Replication steps

    def start_copy(self, request: ReplicationRequest) -> str:
        self.copy_calls.append(request)
        if request.target in self.failing_copy_targets:
            raise throttled()
        if self.copy_errors:
            raise self.copy_errors.pop(0)
        return f"snap-{request.destination_account_id}-{request.destination_region}"

    def check_progress(self, request: ReplicationRequest, snapshot_id: str) -> str:
        self.check_calls.append(snapshot_id)
        if self.check_errors:
            raise self.check_errors.pop(0)
        state = self.states[min(self._checks, len(self.states) - 1)]
        self._checks += 1
        return state

    def register_result(self, request: ReplicationRequest, snapshot_id: str) -> str:
        self.register_calls.append(snapshot_id)
        if self.register_errors:
            raise self.register_errors.pop(0)
        return f"ami-{request.destination_account_id}"


class FakeNotifier:
    """Job notifier recording every call; ``errors`` are raised first, one per call."""

    def __init__(self, errors: Iterable[Exception] = ()):
        self.errors = list(errors)
        self.successes: list[str] = []
        self.failures: list[tuple[str, str]] = []
        self.calls = 0

    def _maybe_raise(self) -> None:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)

    def notify_success(self, job_id: str) -> None:
        self._maybe_raise()
        self.successes.append(job_id)

    def notify_failure(self, job_id: str, cause: str) -> None:
        self._maybe_raise()
        self.failures.append((job_id, cause))


class FakeArtifactReader:
    """Artifact reader returning a fixed image id; ``error`` is raised instead when set."""

    def __init__(self, image_id: str = TESTED_IMAGE_ID, error: Optional[Exception] = None):
        self._image_id = image_id
        self.error = error
        self.reads: list[str] = []

    def image_id(self, artifact: Any, region: str) -> str:
        self.reads.append(artifact.name)
        if self.error is not None:
            raise self.error
        return self._image_id


class SleepRecorder:
    """Awaitable sleep that returns immediately and records the delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sample_request() -> ReplicationRequest:
    """Return a replication request for 111111111111 / us-west-2."""
    return make_request()


@pytest.fixture
def sample_image() -> dict[str, Any]:
    """Return a source image with an EBS root snapshot."""
    return make_image()


@pytest.fixture
def fake_client() -> FakeCopyClient:
    return FakeCopyClient()


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def client_error():
    """Factory for botocore ClientError instances."""
    return make_client_error
