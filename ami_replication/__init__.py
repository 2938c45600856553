"""
AMI replication orchestrator.

Copies a tested image's root snapshot into destination accounts and regions,
registers it there, and reports the result to the pipeline job that asked:
- clients: EC2, STS and CodePipeline access over boto3
- config: Pydantic settings and copy target parameters
- core: Exceptions, retry policy, logging and dependency wiring
- models: Replication request and execution state
- workflows: The replication state machine and its execution store
- dispatch: Fire-and-forget execution starters and the kickoff dispatcher
- api: FastAPI application
- handlers: Lambda entry points for the deployed workflow
"""

__version__ = "0.1.0"
