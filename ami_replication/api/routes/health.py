"""Health check endpoints."""

import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from ami_replication import __version__
from ami_replication.api.dependencies import get_starter
from ami_replication.api.models import HealthCheckResponse
from ami_replication.dispatch.starters import LocalExecutionStarter

router = APIRouter(tags=["Health"])

# Track server start time for uptime calculation
_server_start_time: Optional[float] = None


def set_server_start_time() -> None:
    global _server_start_time
    _server_start_time = time.time()


def get_uptime_seconds() -> Optional[float]:
    if _server_start_time is None:
        return None
    return time.time() - _server_start_time


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health Check",
)
async def health_check(
    starter: LocalExecutionStarter = Depends(get_starter),
) -> HealthCheckResponse:
    return HealthCheckResponse(
        status="healthy",
        version=__version__,
        running_executions=starter.running,
        uptime_seconds=get_uptime_seconds(),
    )


@router.get("/health/live", summary="Liveness Check")
async def liveness() -> dict:
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}
