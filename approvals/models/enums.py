"""
Shared Enumerations for the Approval Workflow Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents, so persisted
values such as ``'hr'`` or ``'dean_review'`` round-trip without mapping.
Role values are the canonical lowercase tokens; every role-as-string field
(clarification target/type, department response) stores exactly these.
"""

from __future__ import annotations

from enum import StrEnum


class UserRole(StrEnum):
    """The thirteen workflow roles.

    Flat set: any hierarchy between roles lives in the transition table,
    not here.
    """

    REQUESTER = "requester"
    INSTITUTION_MANAGER = "institution_manager"
    SOP_VERIFIER = "sop_verifier"
    ACCOUNTANT = "accountant"
    VP = "vp"
    HEAD_OF_INSTITUTION = "head_of_institution"
    DEAN = "dean"
    MMA = "mma"
    HR = "hr"
    AUDIT = "audit"
    IT = "it"
    CHIEF_DIRECTOR = "chief_director"
    CHAIRMAN = "chairman"


DEPARTMENT_ROLES: frozenset[UserRole] = frozenset(
    {UserRole.MMA, UserRole.HR, UserRole.AUDIT, UserRole.IT}
)
"""Roles a DEAN clarification may be addressed to."""

VERIFIER_ROLES: frozenset[UserRole] = frozenset(
    {UserRole.SOP_VERIFIER, UserRole.ACCOUNTANT}
)
"""Roles an INSTITUTION_MANAGER clarification may be addressed to."""


class RequestStatus(StrEnum):
    """Workflow stages of an expenditure request.

    ``APPROVED`` and ``REJECTED`` are terminal.  ``SUBMITTED``,
    ``SOP_VERIFICATION``, ``BUDGET_CHECK`` and ``BUDGET_CLARIFICATION``
    only occur on requests persisted by the legacy linear flow.
    """

    SUBMITTED = "submitted"
    MANAGER_REVIEW = "manager_review"
    PARALLEL_VERIFICATION = "parallel_verification"
    SOP_VERIFICATION = "sop_verification"
    SOP_COMPLETED = "sop_completed"
    BUDGET_CHECK = "budget_check"
    BUDGET_COMPLETED = "budget_completed"
    BUDGET_CLARIFICATION = "budget_clarification"
    VP_APPROVAL = "vp_approval"
    HOI_APPROVAL = "hoi_approval"
    DEAN_REVIEW = "dean_review"
    DEPARTMENT_CHECKS = "department_checks"
    DEAN_VERIFICATION = "dean_verification"
    CHIEF_DIRECTOR_APPROVAL = "chief_director_approval"
    CHAIRMAN_APPROVAL = "chairman_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.APPROVED, RequestStatus.REJECTED}
)


class ActionType(StrEnum):
    """Kinds of history entries."""

    CREATE = "create"
    APPROVE = "approve"
    REJECT = "reject"
    CLARIFY = "clarify"
    FORWARD = "forward"


class VisibilityCategory(StrEnum):
    """Bucket a visible request falls into for a given viewer."""

    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class UserAction(StrEnum):
    """Viewer's own past action as reported by the projector."""

    APPROVE = "approve"
    CLARIFY = "clarify"
    REJECT = "reject"


class ErrorKind(StrEnum):
    """Typed failure kinds returned in ``ServiceResult.error_kind``."""

    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFLICT = "CONFLICT"
    INVALID_ACTION = "INVALID_ACTION"
    NO_OP_TRANSITION = "NO_OP_TRANSITION"
    INTERNAL = "INTERNAL"
