"""
Data Models Package.

Re-exports the pydantic models and enumerations:
    from approvals.models import ExpenditureRequest, HistoryEntry, User
    from approvals.models import UserRole, RequestStatus, ActionType
"""

from __future__ import annotations

from approvals.models.enums import (
    ActionType,
    ErrorKind,
    RequestStatus,
    UserAction,
    UserRole,
    VisibilityCategory,
)
from approvals.models.request import ExpenditureRequest, HistoryEntry, RequestDraft
from approvals.models.user import User

__all__ = [
    "ActionType",
    "ErrorKind",
    "ExpenditureRequest",
    "HistoryEntry",
    "RequestDraft",
    "RequestStatus",
    "User",
    "UserAction",
    "UserRole",
    "VisibilityCategory",
]
