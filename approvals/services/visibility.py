"""
Visibility / Categorization Projector.

Derives, for one (request, role, user) triple, whether the viewer may see
the request and which bucket it belongs in: ``pending`` (waiting for the
viewer), ``in_progress`` (visible, somebody else's move), ``approved`` or
``completed``.  The projection is a pure function of the request's status
and history, so batches may be projected in parallel over a snapshot.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from approvals.models.enums import (
    DEPARTMENT_ROLES,
    ActionType,
    RequestStatus,
    UserAction,
    UserRole,
    VisibilityCategory,
)
from approvals.models.request import ExpenditureRequest, HistoryEntry
from approvals.models.service_models import Involvement, RequestVisibility, VisibleRequest
from approvals.services.approval_engine import DEFAULT_ENGINE, ApprovalEngine
from approvals.services.involvement import (
    analyze_involvement,
    has_acted_since,
    last_status_change_index,
    live_clarification_target,
)

__all__ = [
    "analyze_visibility",
    "expected_approvers",
    "filter_requests_by_visibility",
]


def expected_approvers(
    request: ExpenditureRequest,
    engine: ApprovalEngine = DEFAULT_ENGINE,
) -> frozenset[UserRole]:
    """Roles expected to act on *request* right now.

    Same as ``required_approvers(status)`` except at DEPARTMENT_CHECKS,
    where only the department named by the live clarification is expected.
    """
    approvers = engine.required_approvers(request.status)
    if request.status == RequestStatus.DEPARTMENT_CHECKS:
        target = live_clarification_target(request.history)
        return approvers & {target} if target is not None else frozenset()
    return approvers


def analyze_visibility(
    request: ExpenditureRequest,
    role: UserRole,
    user_id: str,
    engine: ApprovalEngine = DEFAULT_ENGINE,
) -> RequestVisibility:
    """Decide whether *user_id* acting as *role* sees *request*, and how."""
    if role == UserRole.REQUESTER:
        return _requester_visibility(request, user_id)

    involvement = analyze_involvement(request.history, user_id)
    reason = _reachability(request, role, involvement, engine)
    if reason is None:
        return RequestVisibility(
            can_see=False,
            category=VisibilityCategory.COMPLETED,
            reason="Request has not reached this level",
        )
    return _categorize(request, role, user_id, involvement, reason, engine)


def filter_requests_by_visibility(
    requests: Iterable[ExpenditureRequest],
    role: UserRole,
    user_id: str,
    category: Optional[VisibilityCategory] = None,
    engine: ApprovalEngine = DEFAULT_ENGINE,
    max_workers: Optional[int] = None,
) -> list[VisibleRequest]:
    """Annotate each request with its visibility and drop the invisible ones.

    Input order is preserved.  With *max_workers* > 1 the projections run
    on a thread pool.
    """
    snapshot: Sequence[ExpenditureRequest] = list(requests)

    def project(request: ExpenditureRequest) -> RequestVisibility:
        return analyze_visibility(request, role, user_id, engine)

    if max_workers is not None and max_workers > 1 and len(snapshot) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            visibilities = list(pool.map(project, snapshot))
    else:
        visibilities = [project(request) for request in snapshot]

    return [
        VisibleRequest(request=request, visibility=visibility)
        for request, visibility in zip(snapshot, visibilities)
        if visibility.can_see and (category is None or visibility.category == category)
    ]


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _requester_visibility(request: ExpenditureRequest, user_id: str) -> RequestVisibility:
    if request.requester_id != user_id:
        return RequestVisibility(
            can_see=False,
            category=VisibilityCategory.COMPLETED,
            reason="Not own request",
        )
    if request.status == RequestStatus.APPROVED:
        category = VisibilityCategory.APPROVED
    elif request.status == RequestStatus.REJECTED:
        category = VisibilityCategory.COMPLETED
    else:
        category = VisibilityCategory.PENDING
    return RequestVisibility(can_see=True, category=category, reason="Own request")


def _reachability(
    request: ExpenditureRequest,
    role: UserRole,
    involvement: Involvement,
    engine: ApprovalEngine,
) -> Optional[str]:
    """Reason the viewer may see *request*, or ``None`` if it may not."""
    status = request.status
    history = request.history

    if role in DEPARTMENT_ROLES and status == RequestStatus.DEPARTMENT_CHECKS:
        if live_clarification_target(history) == role:
            return "Clarification addressed to your department"
        if involvement.has_been_involved:
            return "You responded to an earlier clarification"
        return None

    if role == UserRole.DEAN:
        if status == RequestStatus.DEPARTMENT_CHECKS and _dean_clarified(history):
            return "Waiting for the department's response to the dean"
        if status == RequestStatus.DEAN_REVIEW and _has_department_response(history):
            return "Returned from department clarification"

    if role in expected_approvers(request, engine):
        return "Awaiting your role's action"

    if involvement.has_been_involved:
        return "You have acted on this request"

    if _passed_through(history, role, engine):
        return "Request has passed through your level"

    return None


def _dean_clarified(history: Sequence[HistoryEntry]) -> bool:
    return any(
        entry.action == ActionType.CLARIFY
        and entry.clarification_target is not None
        and entry.actor_role == UserRole.DEAN
        for entry in history
    )


def _has_department_response(history: Sequence[HistoryEntry]) -> bool:
    return any(
        entry.department_response is not None and entry.action == ActionType.FORWARD
        for entry in history
    )


def _passed_through(
    history: Sequence[HistoryEntry],
    role: UserRole,
    engine: ApprovalEngine,
) -> bool:
    statuses = engine.role_statuses(role)
    return any(
        entry.new_status in statuses or entry.previous_status in statuses
        for entry in history
    )


def _reported_action(involvement: Involvement) -> Optional[UserAction]:
    if involvement.has_rejected:
        return UserAction.REJECT
    if involvement.has_approved or involvement.has_forwarded:
        return UserAction.APPROVE
    if involvement.has_clarified:
        return UserAction.CLARIFY
    return None


def _categorize(
    request: ExpenditureRequest,
    role: UserRole,
    user_id: str,
    involvement: Involvement,
    reason: str,
    engine: ApprovalEngine,
) -> RequestVisibility:
    status = request.status

    if status == RequestStatus.APPROVED:
        return RequestVisibility(
            can_see=True,
            category=VisibilityCategory.APPROVED,
            reason="Request has been approved",
            user_action=_reported_action(involvement),
        )
    if status == RequestStatus.REJECTED:
        return RequestVisibility(
            can_see=True,
            category=VisibilityCategory.COMPLETED,
            reason="Request has been rejected",
            user_action=_reported_action(involvement),
        )

    if role in expected_approvers(request, engine):
        # Only actions after the request (re)entered this status count, so
        # a second visit to a cyclic status is pending again.
        anchor = last_status_change_index(request.history, status)
        if anchor is None or not has_acted_since(request.history, user_id, anchor):
            return RequestVisibility(
                can_see=True,
                category=VisibilityCategory.PENDING,
                reason="Waiting for your approval",
            )

    user_action = _reported_action(involvement)
    if user_action == UserAction.APPROVE:
        return RequestVisibility(
            can_see=True,
            category=VisibilityCategory.IN_PROGRESS,
            reason="You approved, now at next level",
            user_action=user_action,
        )
    if user_action == UserAction.CLARIFY:
        return RequestVisibility(
            can_see=True,
            category=VisibilityCategory.IN_PROGRESS,
            reason="You requested clarification",
            user_action=user_action,
        )
    return RequestVisibility(
        can_see=True,
        category=VisibilityCategory.IN_PROGRESS,
        reason=reason,
    )
