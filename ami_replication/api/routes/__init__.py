"""API route modules."""

from ami_replication.api.routes.health import router as health_router
from ami_replication.api.routes.replications import router as replications_router

__all__ = ["health_router", "replications_router"]
