"""
Involvement Analyzer.

Pure functions over a request's append-only history: what a user has
done on the request, whether the parallel verification round is
complete, and where the live department clarification points.

History order is the source of truth for "before/after": timestamps are
non-decreasing and ties are broken by insertion order, so list position
is the total order.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

from approvals.models.enums import ActionType, RequestStatus, UserRole
from approvals.models.request import HistoryEntry
from approvals.models.service_models import Involvement, VerificationProgress

__all__ = [
    "analyze_involvement",
    "has_acted_since",
    "last_status_change_index",
    "latest_clarification",
    "live_clarification_target",
    "verification_round_complete",
]

# Actions that move a stage along; a status-preserving CLARIFY does not
# take the actor off the hook for the current stage.
_STAGE_ACTIONS: frozenset[ActionType] = frozenset(
    {ActionType.APPROVE, ActionType.FORWARD, ActionType.REJECT}
)


def analyze_involvement(
    history: Sequence[HistoryEntry],
    user_id: str,
    role: Optional[UserRole] = None,
) -> Involvement:
    """Summarize the entries *user_id* authored.

    When *role* is given, only entries recorded under that role count.
    The ``has_*`` flags are independent existence checks.
    """
    own = [
        entry for entry in history
        if entry.actor_id == user_id and (role is None or entry.actor_role == role)
    ]
    if not own:
        return Involvement()

    actions = {entry.action for entry in own}
    last = own[-1]
    return Involvement(
        has_been_involved=True,
        has_approved=ActionType.APPROVE in actions,
        has_forwarded=ActionType.FORWARD in actions,
        has_rejected=ActionType.REJECT in actions,
        has_clarified=ActionType.CLARIFY in actions,
        last_action=last.action,
        last_action_timestamp=last.timestamp,
    )


def _current_round(history: Sequence[HistoryEntry]) -> Sequence[HistoryEntry]:
    """Entries since the request last entered parallel verification."""
    for index in range(len(history) - 1, -1, -1):
        if history[index].new_status == RequestStatus.PARALLEL_VERIFICATION:
            return history[index + 1:]
    return history


def _completes_sop(entry: HistoryEntry) -> bool:
    if entry.action != ActionType.APPROVE:
        return False
    if entry.new_status == RequestStatus.SOP_COMPLETED:
        return True
    # SOP finishing second hands straight back to the manager.
    return (
        entry.actor_role == UserRole.SOP_VERIFIER
        and entry.previous_status == RequestStatus.BUDGET_COMPLETED
    )


def _completes_budget(entry: HistoryEntry) -> bool:
    if entry.action != ActionType.APPROVE:
        return False
    if entry.new_status == RequestStatus.BUDGET_COMPLETED:
        return True
    return (
        entry.actor_role == UserRole.ACCOUNTANT
        and entry.previous_status == RequestStatus.SOP_COMPLETED
    )


def verification_round_complete(history: Sequence[HistoryEntry]) -> VerificationProgress:
    """Report which verifications completed in the current round.

    Only entries after the most recent move into PARALLEL_VERIFICATION
    count, so a manager who re-sends a request for verification has to
    wait for both checks again.
    """
    entries = _current_round(history)
    return VerificationProgress(
        sop_complete=any(_completes_sop(entry) for entry in entries),
        budget_complete=any(_completes_budget(entry) for entry in entries),
    )


def latest_clarification(history: Sequence[HistoryEntry]) -> Optional[HistoryEntry]:
    """Most recent CLARIFY entry addressed to a department, if any."""
    for entry in reversed(history):
        if entry.action == ActionType.CLARIFY and entry.clarification_target is not None:
            return entry
    return None


def live_clarification_target(history: Sequence[HistoryEntry]) -> Optional[UserRole]:
    entry = latest_clarification(history)
    return entry.clarification_target if entry is not None else None


def last_status_change_index(
    history: Sequence[HistoryEntry],
    status: RequestStatus,
) -> Optional[int]:
    """Index of the latest entry that set the request to *status*."""
    for index in range(len(history) - 1, -1, -1):
        if history[index].new_status == status:
            return index
    return None


def has_acted_since(
    history: Sequence[HistoryEntry],
    user_id: str,
    index: int,
) -> bool:
    """``True`` if *user_id* moved the stage along after position *index*."""
    return any(
        entry.actor_id == user_id and entry.action in _STAGE_ACTIONS
        for entry in history[index + 1:]
    )
