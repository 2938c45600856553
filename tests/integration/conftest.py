"""Integration test configuration.

The API runs against a replication container wired with scripted fakes, so
executions run to completion in-process without touching AWS.
"""

import time

import pytest
from fastapi.testclient import TestClient

from ami_replication.api.main import app
from ami_replication.config.settings import Settings
from ami_replication.core.container import ReplicationContainer, set_container
from ami_replication.workflows.store import ExecutionStore
from tests.conftest import FakeCopyClient, FakeNotifier


@pytest.fixture
def copy_client() -> FakeCopyClient:
    return FakeCopyClient(states=["pending", "completed"])


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def container(copy_client, notifier, sleeper):
    """Replication container with fake AWS collaborators, installed globally."""
    container = ReplicationContainer(
        Settings(),
        client=copy_client,
        notifier=notifier,
        store=ExecutionStore(),
        sleep=sleeper,
    )
    set_container(container)
    yield container
    set_container(None)


@pytest.fixture
def api_client(container):
    """TestClient with the application lifespan running."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def wait_for_terminal(api_client):
    """Poll an execution until it reaches a terminal step."""

    def _wait(execution_id: str, timeout: float = 5.0) -> dict:
        deadline = time.monotonic() + timeout
        while True:
            body = api_client.get(f"/api/v1/executions/{execution_id}").json()
            if body["step"] in ("SuccessTerminal", "FailTerminal"):
                return body
            if time.monotonic() > deadline:
                raise AssertionError(f"Execution {execution_id} stuck at {body['step']}")
            time.sleep(0.01)

    return _wait
