"""
AMI Replication Test Suite.

- unit/: Retry policy, state machine, dispatcher, clients and handlers
- integration/: API endpoints driving in-process executions
- conftest.py: Shared fakes, fixtures and test configuration

Run tests with: pytest
"""
