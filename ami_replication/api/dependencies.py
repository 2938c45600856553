"""FastAPI dependency injection providers.

Route handlers reach the dispatcher, starter and store through the global
replication container, which tests replace with ``set_container``.
"""

from ami_replication.core.container import get_container
from ami_replication.dispatch.kickoff import KickoffDispatcher
from ami_replication.dispatch.starters import LocalExecutionStarter
from ami_replication.workflows.store import StateStore


def get_dispatcher() -> KickoffDispatcher:
    return get_container().dispatcher


def get_starter() -> LocalExecutionStarter:
    return get_container().starter


def get_store() -> StateStore:
    return get_container().store
