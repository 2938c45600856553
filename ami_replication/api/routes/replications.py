"""Replication endpoints.

Dispatching returns as soon as every execution has been started; results are
delivered to the pipeline job, and progress can be inspected through the
execution endpoints.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from ami_replication.api.dependencies import get_dispatcher, get_starter, get_store
from ami_replication.api.models import (
    DispatchResultResponse,
    ErrorResponse,
    ExecutionDetail,
    ExecutionSummary,
    ReplicationBatchRequest,
    ReplicationBatchResponse,
)
from ami_replication.dispatch.kickoff import CopyJob, KickoffDispatcher
from ami_replication.dispatch.starters import LocalExecutionStarter
from ami_replication.workflows.store import StateStore

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Replications"])


def _summary(doc: dict[str, Any]) -> ExecutionSummary:
    return ExecutionSummary(
        execution_id=doc["execution_id"],
        pipeline_job_id=doc["pipeline_job_id"],
        step=doc["step"],
        snapshot_id=doc.get("snapshot_id"),
        image_id=doc.get("image_id"),
        outcome=doc.get("outcome"),
    )


@router.post(
    "/replications",
    response_model=ReplicationBatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start replications",
)
async def start_replications(
    body: ReplicationBatchRequest,
    dispatcher: KickoffDispatcher = Depends(get_dispatcher),
) -> ReplicationBatchResponse:
    """
    Start one replication execution per copy job.

    Jobs that cannot be started have already been failed on the pipeline
    when this returns.
    """
    jobs = [
        CopyJob(
            job_id=job.job_id,
            parameters=job.parameters,
            source_image_id=job.source_image_id,
        )
        for job in body.jobs
    ]
    results = await dispatcher.dispatch(jobs)
    started = sum(1 for result in results if result.started)

    logger.info("replications_dispatched", started=started, failed=len(results) - started)

    return ReplicationBatchResponse(
        results=[
            DispatchResultResponse(
                job_id=result.job_id,
                started=result.started,
                execution_id=result.execution_id,
                error=result.error,
            )
            for result in results
        ],
        started=started,
        failed=len(results) - started,
    )


@router.get(
    "/executions",
    response_model=list[ExecutionSummary],
    summary="List executions",
)
async def list_executions(
    limit: int = Query(100, ge=1, le=1000),
    store: StateStore = Depends(get_store),
) -> list[ExecutionSummary]:
    return [_summary(doc) for doc in await store.list_executions(limit)]


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionDetail,
    summary="Get execution details",
    responses={404: {"model": ErrorResponse, "description": "Execution not found"}},
)
async def get_execution(
    execution_id: str,
    store: StateStore = Depends(get_store),
) -> ExecutionDetail:
    """Full execution record, including the error payload kept from the pipeline."""
    doc = await store.get(execution_id)
    if doc is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return ExecutionDetail(**doc)


@router.post(
    "/executions/{execution_id}/resume",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume an interrupted execution",
    responses={409: {"model": ErrorResponse, "description": "Execution cannot be resumed"}},
)
async def resume_execution(
    execution_id: str,
    starter: LocalExecutionStarter = Depends(get_starter),
    store: StateStore = Depends(get_store),
) -> dict:
    if await store.get(execution_id) is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    if not await starter.resume(execution_id):
        raise HTTPException(
            status_code=409,
            detail=f"Execution {execution_id} is finished or already running",
        )
    return {"execution_id": execution_id, "resumed": True}
