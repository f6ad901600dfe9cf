"""
Pytest fixtures for the approvals test suite.

Provides:
- Deterministic clock
- In-memory SQLite ``DatabaseManager`` with the schema applied
- Wired services from ``create_services``
- ``driver`` for pushing real requests through the workflow

Environment:
- Forces offline mode and console-only logging before the package is imported.
"""

from __future__ import annotations

import os

os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_ANON_KEY"] = ""
os.environ["LOG_FILE"] = ""
os.environ["SQLITE_PATH"] = ":memory:"

from typing import Generator  # noqa: E402

import pytest  # noqa: E402

from approvals.config import AppConfig, reset_config  # noqa: E402
from approvals.database import DatabaseManager  # noqa: E402
from approvals.logger import StructuredLogger  # noqa: E402
from approvals.repositories.request_repository import RequestRepository  # noqa: E402
from approvals.schema import initialize_schema  # noqa: E402
from approvals.services import ServiceContainer, create_services  # noqa: E402
from approvals.services.approval_workflow import ApprovalWorkflowService  # noqa: E402
from approvals.services.request_queries import RequestQueryService  # noqa: E402
from approvals.utils.clock import DeterministicClock  # noqa: E402
from tests.factories import EPOCH, WorkflowDriver  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_config() -> Generator[None, None, None]:
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(EPOCH)


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(name="approvals.tests", log_file="")


@pytest.fixture
def config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def db(logger: StructuredLogger) -> Generator[DatabaseManager, None, None]:
    manager = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=":memory:",
        logger=logger,
    )
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture
def services(db: DatabaseManager, config: AppConfig, clock: DeterministicClock) -> ServiceContainer:
    return create_services(db, config, clock=clock)


@pytest.fixture
def repo(services: ServiceContainer) -> RequestRepository:
    return services["request_repository"]


@pytest.fixture
def workflow(services: ServiceContainer) -> ApprovalWorkflowService:
    return services["approval_workflow_service"]


@pytest.fixture
def queries(services: ServiceContainer) -> RequestQueryService:
    return services["request_query_service"]


@pytest.fixture
def driver(workflow: ApprovalWorkflowService, clock: DeterministicClock) -> WorkflowDriver:
    return WorkflowDriver(workflow, clock)
