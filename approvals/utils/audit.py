"""
Structured Audit Logging Utility.

Every state change (request creation, approval action) is logged as a
structured JSON object.  Provides a Pydantic-validated model and a single
function for consistent audit trail entries, with optional persistence to
the ``audit_log`` table.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from approvals.logger import StructuredLogger

__all__ = ["AuditEvent", "log_audit_event", "persist_audit_event"]

# Flat scalars only; nested structures belong in the request history.
DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry."""

    timestamp: str
    action: str
    entity_type: str
    entity_id: str
    user_id: str
    details: dict[str, DetailValue] = Field(default_factory=dict)


def _build_event(
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]],
    timestamp: Optional[datetime],
) -> AuditEvent:
    return AuditEvent(
        timestamp=(timestamp or datetime.now(timezone.utc)).isoformat(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        details=details or {},
    )


def log_audit_event(
    logger: StructuredLogger,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
    timestamp: Optional[datetime] = None,
) -> None:
    """Log a structured JSON audit event, with optional SQLite persistence.

    Always emits an ``AUDIT:`` line via *logger*.  When *conn* is given the
    event is also written to ``audit_log``; persistence failures are logged
    and never break the calling operation, which has already committed.

    Args:
        logger: The logger instance to write to.
        action: What happened (e.g. ``"CREATE"``, ``"FORWARD"``).
        entity_type: Type of entity affected (e.g. ``"ExpenditureRequest"``).
        entity_id: Primary key of the affected entity.
        user_id: ID of the user who performed the action.
        details: Optional additional context (e.g. old/new status).
        conn: Optional SQLite connection for the ``audit_log`` table.
        timestamp: Event time; defaults to the current UTC time.
    """
    event = _build_event(action, entity_type, entity_id, user_id, details, timestamp)
    logger.info("AUDIT: %s", json.dumps(event.model_dump(), default=str))

    if conn is not None:
        try:
            persist_audit_event(conn=conn, event=event)
        except (sqlite3.Error, ValueError) as db_err:
            logger.warning("Failed to persist audit event to SQLite: %s", db_err)


def persist_audit_event(conn: sqlite3.Connection, event: AuditEvent) -> None:
    """Write a validated :class:`AuditEvent` to the ``audit_log`` table."""
    conn.execute(
        """
        INSERT INTO audit_log (timestamp, action, entity_type, entity_id, user_id, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            event.timestamp,
            event.action,
            event.entity_type,
            event.entity_id,
            event.user_id,
            json.dumps(event.details, default=str),
        ),
    )
    conn.commit()
