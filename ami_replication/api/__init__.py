"""
FastAPI application.

API Structure:
- /health - Health and liveness probes
- /api/v1/replications - Dispatch replications
- /api/v1/executions - Inspect and resume executions
- /metrics - Prometheus metrics

Example:
    uvicorn ami_replication.api.main:app --reload
"""
