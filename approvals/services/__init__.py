"""
Business Logic Services Package.

Contains the approval engine, the involvement analyzer, the visibility
projector and the two services built on them.  Services depend on the
Repository layer for data access; the acting user is supplied by the
caller.

The ``create_services()`` factory wires every repository and service
together, returning a typed dict the calling layer can consume without
knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from approvals.config import AppConfig
from approvals.database import DatabaseManager
from approvals.logger import get_logger
from approvals.repositories.request_repository import RequestRepository
from approvals.services.approval_engine import ApprovalEngine
from approvals.services.approval_workflow import ApprovalWorkflowService
from approvals.services.request_queries import RequestQueryService
from approvals.utils.clock import Clock


class ServiceContainer(TypedDict):
    """Typed container for all services."""

    engine: ApprovalEngine
    request_repository: RequestRepository
    approval_workflow_service: ApprovalWorkflowService
    request_query_service: RequestQueryService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    clock: Optional[Clock] = None,
    max_workers: Optional[int] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  Call it
    once at startup, after :func:`approvals.schema.initialize_schema`.

    Args:
        db: Initialised DatabaseManager (SQLite ready, Supabase optional).
        config: Application configuration.
        clock: Clock used to stamp history entries; system time by default.
        max_workers: Thread pool size for batch visibility projection.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("approvals.services")

    engine = ApprovalEngine(include_legacy=config.ENABLE_LEGACY_WORKFLOW)
    if config.ENABLE_LEGACY_WORKFLOW:
        logger.info("Legacy linear verification workflow enabled.")

    # ------------------------------------------------------------------
    # 1. Repositories (data-access layer)
    # ------------------------------------------------------------------
    request_repo = RequestRepository(db=db, logger=logger)

    # ------------------------------------------------------------------
    # 2. Services
    # ------------------------------------------------------------------
    approval_workflow_service = ApprovalWorkflowService(
        request_repo=request_repo,
        logger=logger,
        engine=engine,
        clock=clock,
        db=db if config.PERSIST_AUDIT_EVENTS else None,
    )
    request_query_service = RequestQueryService(
        request_repo=request_repo,
        logger=logger,
        engine=engine,
        max_workers=max_workers,
    )

    return ServiceContainer(
        engine=engine,
        request_repository=request_repo,
        approval_workflow_service=approval_workflow_service,
        request_query_service=request_query_service,
    )
