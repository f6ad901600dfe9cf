"""
Service Layer Data Transfer Objects.

Pydantic models for validated input/output at service boundaries:
the approval payload, the engine's transition context, the analyzer and
projector results, and the generic ``ServiceResult`` envelope.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from approvals.models.enums import (
    ActionType,
    ErrorKind,
    RequestStatus,
    UserAction,
    UserRole,
    VisibilityCategory,
)
from approvals.models.request import ExpenditureRequest

T = TypeVar("T")

__all__ = [
    "ApprovalPayload",
    "DashboardStats",
    "Involvement",
    "RequestFilter",
    "RequestVisibility",
    "ServiceResult",
    "TransitionContext",
    "VerificationProgress",
    "VisibleRequest",
]


# ---------------------------------------------------------------------------
# Write side
# ---------------------------------------------------------------------------

_APPROVAL_ACTIONS: frozenset[ActionType] = frozenset(
    {ActionType.APPROVE, ActionType.REJECT, ActionType.CLARIFY, ActionType.FORWARD}
)


class ApprovalPayload(BaseModel):
    """Validated body of an approval action.

    ``action`` accepts the lowercase tokens ``approve``, ``reject``,
    ``clarify`` and ``forward``; ``create`` is reserved for request
    creation.  ``target`` names a role (case-insensitive) and is
    normalized to the canonical ``UserRole`` value here, at the boundary.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    action: ActionType
    notes: Optional[str] = None
    forwarded_message: Optional[str] = None
    target: Optional[UserRole] = None
    sop_reference: Optional[str] = None
    sop_not_available: bool = False
    budget_available: Optional[bool] = None
    budget_allocated: Optional[Decimal] = None
    budget_spent: Optional[Decimal] = None
    attachments: list[str] = Field(default_factory=list)

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip().lower()
        if value not in {a.value for a in _APPROVAL_ACTIONS}:
            raise ValueError(
                f"Invalid action '{value}'. Expected one of: "
                f"{', '.join(sorted(a.value for a in _APPROVAL_ACTIONS))}."
            )
        return value

    @field_validator("target", mode="before")
    @classmethod
    def _normalize_target(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value


class TransitionContext(BaseModel):
    """Disambiguating context for successor resolution."""

    model_config = ConfigDict(frozen=True)

    clarification_target: Optional[UserRole] = None
    budget_available: Optional[bool] = None
    verification_complete: bool = False


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

class Involvement(BaseModel):
    """What a single user has done on a request, derived from its history."""

    model_config = ConfigDict(frozen=True)

    has_been_involved: bool = False
    has_approved: bool = False
    has_forwarded: bool = False
    has_rejected: bool = False
    has_clarified: bool = False
    last_action: Optional[ActionType] = None
    last_action_timestamp: Optional[datetime] = None


class VerificationProgress(BaseModel):
    """Completion state of the parallel SOP / budget verification."""

    model_config = ConfigDict(frozen=True)

    sop_complete: bool = False
    budget_complete: bool = False

    @property
    def both_complete(self) -> bool:
        return self.sop_complete and self.budget_complete


class RequestVisibility(BaseModel):
    """Projector output for one (request, role, user) triple.

    ``category`` is ``COMPLETED`` as a sentinel when ``can_see`` is false;
    callers must drop those rather than display them.
    """

    model_config = ConfigDict(frozen=True)

    can_see: bool
    category: VisibilityCategory
    reason: str
    user_action: Optional[UserAction] = None


class VisibleRequest(BaseModel):
    """A request annotated with its visibility for the viewer."""

    request: ExpenditureRequest
    visibility: RequestVisibility


class DashboardStats(BaseModel):
    """Per-user dashboard counters."""

    total_requests: int = 0
    pending_requests: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0
    in_progress_requests: int = 0


class RequestFilter(BaseModel):
    """Storage-level query filter.  All fields are optional and AND-ed."""

    requester_id: Optional[str] = None
    college: Optional[str] = None
    statuses: Optional[frozenset[RequestStatus]] = None


# ---------------------------------------------------------------------------
# Generic service models
# ---------------------------------------------------------------------------

class ServiceResult(BaseModel, Generic[T]):
    """
    Standard service return envelope.

    All service methods return this, providing a consistent contract
    for the API layer.  ``error_kind`` is the typed failure; ``status_code``
    is its conventional transport mapping so callers can forward it as is.
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    status_code: int = 200

    @classmethod
    def ok(cls, data: T, status_code: int = 200) -> "ServiceResult[T]":
        return cls(success=True, data=data, status_code=status_code)

    @classmethod
    def fail(cls, kind: ErrorKind, error: str) -> "ServiceResult[T]":
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            status_code=_STATUS_CODES[kind],
        )


_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_ACTION: 400,
    ErrorKind.NO_OP_TRANSITION: 500,
    ErrorKind.INTERNAL: 500,
}
