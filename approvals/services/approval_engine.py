"""
Approval Engine.

Pure-function module holding the declarative transition table and the
per-role successor rules layered on top of it.

The table answers the coarse question "which roles may act on a request
in this status" (:meth:`ApprovalEngine.required_approvers`).  The
successor rules answer "which of the possible next statuses applies when
role R takes action A with context C" (:meth:`ApprovalEngine.next_status`).
Every successor a rule produces must also be a declared edge of the table
for that role; anything else resolves to ``None``.

No I/O, no clock, no persistence: input data -> output result.
"""

from __future__ import annotations

from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from approvals.models.enums import (
    DEPARTMENT_ROLES,
    TERMINAL_STATUSES,
    ActionType,
    RequestStatus,
    UserRole,
)
from approvals.models.service_models import TransitionContext

__all__ = [
    "ACCEPTED_ACTIONS",
    "ApprovalEngine",
    "DEFAULT_ENGINE",
    "LEGACY_TRANSITIONS",
    "ROLE_STATUSES",
    "STATUS_PRESERVING_ACTIONS",
    "TRANSITIONS",
    "Transition",
]

S = RequestStatus
R = UserRole
A = ActionType


class Transition(BaseModel):
    """A declared (status, role) -> status edge."""

    model_config = ConfigDict(frozen=True)

    from_status: RequestStatus
    to_status: RequestStatus
    required_roles: frozenset[UserRole]


def _edge(from_status: RequestStatus, to_status: RequestStatus, *roles: UserRole) -> Transition:
    return Transition(
        from_status=from_status,
        to_status=to_status,
        required_roles=frozenset(roles),
    )


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

TRANSITIONS: tuple[Transition, ...] = (
    # Manager sends to parallel verification, or routes once both are done
    _edge(S.MANAGER_REVIEW, S.PARALLEL_VERIFICATION, R.INSTITUTION_MANAGER),
    _edge(S.MANAGER_REVIEW, S.VP_APPROVAL, R.INSTITUTION_MANAGER),
    _edge(S.MANAGER_REVIEW, S.DEAN_REVIEW, R.INSTITUTION_MANAGER),

    # Parallel verification: SOP and budget checks run independently
    _edge(S.PARALLEL_VERIFICATION, S.SOP_COMPLETED, R.SOP_VERIFIER),
    _edge(S.PARALLEL_VERIFICATION, S.BUDGET_COMPLETED, R.ACCOUNTANT),
    _edge(S.SOP_COMPLETED, S.MANAGER_REVIEW, R.ACCOUNTANT),
    _edge(S.BUDGET_COMPLETED, S.MANAGER_REVIEW, R.SOP_VERIFIER),

    # Executive chain (budget available)
    _edge(S.VP_APPROVAL, S.HOI_APPROVAL, R.VP),
    _edge(S.HOI_APPROVAL, S.DEAN_REVIEW, R.HEAD_OF_INSTITUTION),

    # Dean: clarify with a department, or approve onwards
    _edge(S.DEAN_REVIEW, S.DEPARTMENT_CHECKS, R.DEAN),
    _edge(S.DEAN_REVIEW, S.CHIEF_DIRECTOR_APPROVAL, R.DEAN),
    _edge(S.DEPARTMENT_CHECKS, S.DEAN_REVIEW, R.MMA, R.HR, R.AUDIT, R.IT),
    _edge(S.DEAN_VERIFICATION, S.CHIEF_DIRECTOR_APPROVAL, R.DEAN),

    # Final sign-off
    _edge(S.CHIEF_DIRECTOR_APPROVAL, S.CHAIRMAN_APPROVAL, R.CHIEF_DIRECTOR),
    _edge(S.CHAIRMAN_APPROVAL, S.APPROVED, R.CHAIRMAN),

    # Rejection from every stage, by whoever may act there
    _edge(S.MANAGER_REVIEW, S.REJECTED, R.INSTITUTION_MANAGER),
    _edge(S.PARALLEL_VERIFICATION, S.REJECTED, R.SOP_VERIFIER, R.ACCOUNTANT),
    _edge(S.SOP_COMPLETED, S.REJECTED, R.ACCOUNTANT),
    _edge(S.BUDGET_COMPLETED, S.REJECTED, R.SOP_VERIFIER),
    _edge(S.VP_APPROVAL, S.REJECTED, R.VP),
    _edge(S.HOI_APPROVAL, S.REJECTED, R.HEAD_OF_INSTITUTION),
    _edge(S.DEAN_REVIEW, S.REJECTED, R.DEAN),
    _edge(S.DEPARTMENT_CHECKS, S.REJECTED, R.MMA, R.HR, R.AUDIT, R.IT),
    _edge(S.DEAN_VERIFICATION, S.REJECTED, R.DEAN),
    _edge(S.CHIEF_DIRECTOR_APPROVAL, S.REJECTED, R.CHIEF_DIRECTOR),
    _edge(S.CHAIRMAN_APPROVAL, S.REJECTED, R.CHAIRMAN),
)

LEGACY_TRANSITIONS: tuple[Transition, ...] = (
    _edge(S.SOP_VERIFICATION, S.BUDGET_CHECK, R.SOP_VERIFIER),
    _edge(S.BUDGET_CHECK, S.VP_APPROVAL, R.ACCOUNTANT),
    _edge(S.BUDGET_CHECK, S.DEAN_REVIEW, R.ACCOUNTANT),
    _edge(S.SOP_VERIFICATION, S.REJECTED, R.SOP_VERIFIER),
    _edge(S.BUDGET_CHECK, S.REJECTED, R.ACCOUNTANT),
)


# ---------------------------------------------------------------------------
# Action vocabulary per (role, status).  REJECT is implied wherever the
# role is a required approver.
# ---------------------------------------------------------------------------

ACCEPTED_ACTIONS: dict[tuple[UserRole, RequestStatus], frozenset[ActionType]] = {
    (R.INSTITUTION_MANAGER, S.MANAGER_REVIEW): frozenset({A.FORWARD, A.APPROVE, A.CLARIFY}),
    (R.SOP_VERIFIER, S.PARALLEL_VERIFICATION): frozenset({A.APPROVE}),
    (R.SOP_VERIFIER, S.BUDGET_COMPLETED): frozenset({A.APPROVE}),
    (R.SOP_VERIFIER, S.SOP_VERIFICATION): frozenset({A.APPROVE}),
    (R.ACCOUNTANT, S.PARALLEL_VERIFICATION): frozenset({A.APPROVE}),
    (R.ACCOUNTANT, S.SOP_COMPLETED): frozenset({A.APPROVE}),
    (R.ACCOUNTANT, S.BUDGET_CHECK): frozenset({A.APPROVE}),
    (R.VP, S.VP_APPROVAL): frozenset({A.APPROVE, A.FORWARD}),
    (R.HEAD_OF_INSTITUTION, S.HOI_APPROVAL): frozenset({A.APPROVE, A.FORWARD}),
    (R.DEAN, S.DEAN_REVIEW): frozenset({A.APPROVE, A.FORWARD, A.CLARIFY}),
    (R.DEAN, S.DEAN_VERIFICATION): frozenset({A.APPROVE, A.FORWARD}),
    **{(dept, S.DEPARTMENT_CHECKS): frozenset({A.FORWARD}) for dept in DEPARTMENT_ROLES},
    (R.CHIEF_DIRECTOR, S.CHIEF_DIRECTOR_APPROVAL): frozenset({A.APPROVE, A.FORWARD}),
    (R.CHAIRMAN, S.CHAIRMAN_APPROVAL): frozenset({A.APPROVE, A.FORWARD}),
}

# Accepted actions that record an entry without moving the request.
STATUS_PRESERVING_ACTIONS: frozenset[tuple[UserRole, RequestStatus, ActionType]] = frozenset({
    (R.INSTITUTION_MANAGER, S.MANAGER_REVIEW, A.CLARIFY),
})

# Statuses each role is ever associated with, for "has the request passed
# through my level" checks on the read side.
ROLE_STATUSES: dict[UserRole, frozenset[RequestStatus]] = {
    R.REQUESTER: frozenset(),
    R.INSTITUTION_MANAGER: frozenset({S.MANAGER_REVIEW, S.PARALLEL_VERIFICATION}),
    R.SOP_VERIFIER: frozenset({S.SOP_VERIFICATION, S.PARALLEL_VERIFICATION, S.SOP_COMPLETED}),
    R.ACCOUNTANT: frozenset({S.BUDGET_CHECK, S.PARALLEL_VERIFICATION, S.BUDGET_COMPLETED}),
    R.VP: frozenset({S.VP_APPROVAL}),
    R.HEAD_OF_INSTITUTION: frozenset({S.HOI_APPROVAL}),
    R.DEAN: frozenset({S.DEAN_REVIEW, S.DEAN_VERIFICATION}),
    R.MMA: frozenset({S.DEPARTMENT_CHECKS}),
    R.HR: frozenset({S.DEPARTMENT_CHECKS}),
    R.AUDIT: frozenset({S.DEPARTMENT_CHECKS}),
    R.IT: frozenset({S.DEPARTMENT_CHECKS}),
    R.CHIEF_DIRECTOR: frozenset({S.CHIEF_DIRECTOR_APPROVAL}),
    R.CHAIRMAN: frozenset({S.CHAIRMAN_APPROVAL}),
}


# ---------------------------------------------------------------------------
# Successor rules, one per role
# ---------------------------------------------------------------------------

SuccessorRule = Callable[[RequestStatus, ActionType, TransitionContext], Optional[RequestStatus]]

_ONWARD: frozenset[ActionType] = frozenset({A.APPROVE, A.FORWARD})


def _institution_manager(
    status: RequestStatus, action: ActionType, ctx: TransitionContext
) -> Optional[RequestStatus]:
    if status != S.MANAGER_REVIEW:
        return None
    if action == A.FORWARD:
        return S.PARALLEL_VERIFICATION
    # Post-verification routing decision
    if action == A.APPROVE and ctx.verification_complete and ctx.budget_available is not None:
        return S.VP_APPROVAL if ctx.budget_available else S.DEAN_REVIEW
    return None


def _sop_verifier(
    status: RequestStatus, action: ActionType, ctx: TransitionContext
) -> Optional[RequestStatus]:
    if action != A.APPROVE:
        return None
    if status == S.PARALLEL_VERIFICATION:
        return S.SOP_COMPLETED
    if status == S.BUDGET_COMPLETED:
        return S.MANAGER_REVIEW
    if status == S.SOP_VERIFICATION:
        return S.BUDGET_CHECK
    return None


def _accountant(
    status: RequestStatus, action: ActionType, ctx: TransitionContext
) -> Optional[RequestStatus]:
    if action != A.APPROVE:
        return None
    if status == S.PARALLEL_VERIFICATION:
        return S.BUDGET_COMPLETED
    if status == S.SOP_COMPLETED:
        return S.MANAGER_REVIEW
    if status == S.BUDGET_CHECK and ctx.budget_available is not None:
        return S.VP_APPROVAL if ctx.budget_available else S.DEAN_REVIEW
    return None


def _dean(
    status: RequestStatus, action: ActionType, ctx: TransitionContext
) -> Optional[RequestStatus]:
    if status == S.DEAN_REVIEW:
        if action == A.CLARIFY and ctx.clarification_target in DEPARTMENT_ROLES:
            return S.DEPARTMENT_CHECKS
        if action in _ONWARD:
            return S.CHIEF_DIRECTOR_APPROVAL
    if status == S.DEAN_VERIFICATION and action in _ONWARD:
        return S.CHIEF_DIRECTOR_APPROVAL
    return None


def _department(role: UserRole) -> SuccessorRule:
    def rule(
        status: RequestStatus, action: ActionType, ctx: TransitionContext
    ) -> Optional[RequestStatus]:
        # Only the department the clarification is addressed to may answer.
        if status == S.DEPARTMENT_CHECKS and action == A.FORWARD and ctx.clarification_target == role:
            return S.DEAN_REVIEW
        return None

    return rule


def _single_step(at: RequestStatus, to: RequestStatus) -> SuccessorRule:
    def rule(
        status: RequestStatus, action: ActionType, ctx: TransitionContext
    ) -> Optional[RequestStatus]:
        if status == at and action in _ONWARD:
            return to
        return None

    return rule


_SUCCESSOR_RULES: dict[UserRole, SuccessorRule] = {
    R.INSTITUTION_MANAGER: _institution_manager,
    R.SOP_VERIFIER: _sop_verifier,
    R.ACCOUNTANT: _accountant,
    R.VP: _single_step(S.VP_APPROVAL, S.HOI_APPROVAL),
    R.HEAD_OF_INSTITUTION: _single_step(S.HOI_APPROVAL, S.DEAN_REVIEW),
    R.DEAN: _dean,
    **{dept: _department(dept) for dept in DEPARTMENT_ROLES},
    R.CHIEF_DIRECTOR: _single_step(S.CHIEF_DIRECTOR_APPROVAL, S.CHAIRMAN_APPROVAL),
    R.CHAIRMAN: _single_step(S.CHAIRMAN_APPROVAL, S.APPROVED),
}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ApprovalEngine:
    """Transition table plus successor resolution.

    Stateless apart from the immutable rule set chosen at construction;
    safe to share across threads.

    Args:
        include_legacy: Also honour the legacy linear
            SOP_VERIFICATION -> BUDGET_CHECK rules for old persisted requests.
    """

    def __init__(self, include_legacy: bool = False) -> None:
        self._transitions: tuple[Transition, ...] = (
            TRANSITIONS + LEGACY_TRANSITIONS if include_legacy else TRANSITIONS
        )
        approvers: dict[RequestStatus, set[UserRole]] = {}
        edges: set[tuple[RequestStatus, RequestStatus, UserRole]] = set()
        for transition in self._transitions:
            approvers.setdefault(transition.from_status, set()).update(transition.required_roles)
            for role in transition.required_roles:
                edges.add((transition.from_status, transition.to_status, role))
        self._approvers: dict[RequestStatus, frozenset[UserRole]] = {
            status: frozenset(roles) for status, roles in approvers.items()
        }
        self._edges: frozenset[tuple[RequestStatus, RequestStatus, UserRole]] = frozenset(edges)

    @property
    def transitions(self) -> tuple[Transition, ...]:
        return self._transitions

    @staticmethod
    def is_terminal(status: RequestStatus) -> bool:
        return status in TERMINAL_STATUSES

    def required_approvers(self, status: RequestStatus) -> frozenset[UserRole]:
        """Union of the roles allowed to act on *status*; empty when terminal."""
        return self._approvers.get(status, frozenset())

    def is_declared(
        self, from_status: RequestStatus, to_status: RequestStatus, role: UserRole
    ) -> bool:
        return (from_status, to_status, role) in self._edges

    def accepted_actions(self, role: UserRole, status: RequestStatus) -> frozenset[ActionType]:
        """Actions *role* may submit at *status* (empty if it may not act at all)."""
        if role not in self.required_approvers(status):
            return frozenset()
        return ACCEPTED_ACTIONS.get((role, status), frozenset()) | {A.REJECT}

    @staticmethod
    def is_status_preserving(role: UserRole, status: RequestStatus, action: ActionType) -> bool:
        return (role, status, action) in STATUS_PRESERVING_ACTIONS

    @staticmethod
    def role_statuses(role: UserRole) -> frozenset[RequestStatus]:
        return ROLE_STATUSES.get(role, frozenset())

    def next_status(
        self,
        current_status: RequestStatus,
        action: ActionType,
        role: UserRole,
        context: Optional[TransitionContext] = None,
    ) -> Optional[RequestStatus]:
        """Resolve the successor status, or ``None`` when no rule matches.

        ``None`` means "no status change"; callers decide whether that is
        a legitimate status-preserving action or a configuration error.
        REJECT resolves to ``REJECTED`` from every non-terminal status.
        """
        if self.is_terminal(current_status):
            return None
        if action == A.REJECT:
            return S.REJECTED

        rule = _SUCCESSOR_RULES.get(role)
        if rule is None:
            return None
        successor = rule(current_status, action, context or TransitionContext())
        if successor is None or not self.is_declared(current_status, successor, role):
            return None
        return successor


DEFAULT_ENGINE: ApprovalEngine = ApprovalEngine()
