"""
Approval Workflow Service.

The single write path for expenditure requests: creation, and every
approval action (approve / reject / clarify / forward) applied through the
approval engine and persisted with a compare-and-swap.

Every operation returns a ``ServiceResult``; nothing raises across the
service boundary.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import ValidationError

from approvals.database import DatabaseManager
from approvals.exceptions import ConcurrencyConflictError, RequestNotFoundError
from approvals.logger import StructuredLogger
from approvals.models.enums import (
    DEPARTMENT_ROLES,
    VERIFIER_ROLES,
    ActionType,
    ErrorKind,
    RequestStatus,
    UserRole,
)
from approvals.models.request import ExpenditureRequest, HistoryEntry, RequestDraft
from approvals.models.service_models import ApprovalPayload, ServiceResult, TransitionContext
from approvals.models.user import User
from approvals.repositories.request_repository import RequestRepository
from approvals.services.approval_engine import DEFAULT_ENGINE, ApprovalEngine
from approvals.services.base_service import BaseService
from approvals.services.involvement import (
    latest_clarification,
    live_clarification_target,
    verification_round_complete,
)
from approvals.utils.audit import log_audit_event
from approvals.utils.clock import Clock, SystemClock

CREATE_NOTE = "Request created and forwarded to manager for review"

_SOP_APPROVE_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.PARALLEL_VERIFICATION,
    RequestStatus.BUDGET_COMPLETED,
    RequestStatus.SOP_VERIFICATION,
})


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        parts.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts)


class ApprovalWorkflowService(BaseService):
    """
    Applies approval actions to requests.

    Dependencies are injected via __init__.  ``db`` is only used to persist
    audit events to the local ``audit_log`` table; pass ``None`` to keep
    audit output log-only.
    """

    def __init__(
        self,
        request_repo: RequestRepository,
        logger: StructuredLogger,
        engine: ApprovalEngine = DEFAULT_ENGINE,
        clock: Optional[Clock] = None,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        super().__init__(logger)
        self._repo = request_repo
        self._engine = engine
        self._clock: Clock = clock or SystemClock()
        self._db = db

    # ------------------------------------------------------------------
    # Public: create_request
    # ------------------------------------------------------------------

    def create_request(
        self,
        requester: User,
        draft: Union[RequestDraft, dict[str, Any]],
    ) -> ServiceResult[ExpenditureRequest]:
        """
        Create a request in MANAGER_REVIEW with a single CREATE entry.

        Only a REQUESTER may create requests.

        Returns:
            ServiceResult carrying the stored request (status code 201).
        """
        try:
            if requester.role != UserRole.REQUESTER:
                return self._fail(
                    ErrorKind.UNAUTHORIZED,
                    "Only requesters can create expenditure requests.",
                    user_id=requester.id,
                    role=requester.role,
                )

            try:
                fields = draft if isinstance(draft, RequestDraft) else RequestDraft.model_validate(draft)
            except ValidationError as exc:
                return self._fail(
                    ErrorKind.INVALID_ACTION,
                    f"Invalid request: {_validation_message(exc)}",
                    user_id=requester.id,
                )

            now = self._clock.now()
            entry = HistoryEntry(
                action=ActionType.CREATE,
                actor_id=requester.id,
                actor_role=requester.role,
                previous_status=None,
                new_status=RequestStatus.MANAGER_REVIEW,
                timestamp=now,
                notes=CREATE_NOTE,
                attachments=tuple(fields.attachments),
            )
            request = ExpenditureRequest(
                id=str(uuid.uuid4()),
                requester_id=requester.id,
                status=RequestStatus.MANAGER_REVIEW,
                history=(entry,),
                created_at=now,
                updated_at=now,
                **fields.model_dump(),
            )

            created = self._repo.create(request)
            self._audit(
                action=ActionType.CREATE.value.upper(),
                request=created,
                user=requester,
                timestamp=now,
                details={
                    "new_status": RequestStatus.MANAGER_REVIEW.value,
                    "college": created.college,
                    "cost_estimate": str(created.cost_estimate),
                },
            )
            return ServiceResult.ok(created, status_code=201)
        except Exception as exc:
            self._logger.error(
                "Error creating request for user %s: %s",
                requester.id,
                str(exc),
                exc_info=True,
            )
            return ServiceResult.fail(ErrorKind.INTERNAL, f"Database error: {str(exc)}")

    # ------------------------------------------------------------------
    # Public: process_approval
    # ------------------------------------------------------------------

    def process_approval(
        self,
        request_id: str,
        acting_user: User,
        payload: Union[ApprovalPayload, dict[str, Any]],
    ) -> ServiceResult[ExpenditureRequest]:
        """
        Apply one approval action to a request.

        Steps: validate the payload, load the request, authorize the role
        (plus the department gate at DEPARTMENT_CHECKS), resolve the next
        status, append a history entry and persist with a compare-and-swap
        on the status and history length that were read.

        Failures are typed: NOT_FOUND, UNAUTHORIZED, INVALID_ACTION,
        NO_OP_TRANSITION, CONFLICT (reload and retry) and INTERNAL.
        """
        try:
            try:
                parsed = (
                    payload
                    if isinstance(payload, ApprovalPayload)
                    else ApprovalPayload.model_validate(payload)
                )
            except ValidationError as exc:
                return self._fail(
                    ErrorKind.INVALID_ACTION,
                    f"Invalid approval payload: {_validation_message(exc)}",
                    request_id=request_id,
                    user_id=acting_user.id,
                )

            request = self._repo.get_by_id(request_id)
            if request is None:
                return self._fail(
                    ErrorKind.NOT_FOUND,
                    f"Request '{request_id}' not found.",
                    request_id=request_id,
                )

            return self._apply(request, acting_user, parsed)

        except ConcurrencyConflictError as exc:
            return self._fail(
                ErrorKind.CONFLICT,
                str(exc),
                request_id=request_id,
                user_id=acting_user.id,
            )
        except RequestNotFoundError as exc:
            return self._fail(ErrorKind.NOT_FOUND, str(exc), request_id=request_id)
        except Exception as exc:
            self._logger.error(
                "Error processing approval for request %s: %s",
                request_id,
                str(exc),
                exc_info=True,
            )
            return ServiceResult.fail(ErrorKind.INTERNAL, f"Database error: {str(exc)}")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _apply(
        self,
        request: ExpenditureRequest,
        user: User,
        payload: ApprovalPayload,
    ) -> ServiceResult[ExpenditureRequest]:
        status = request.status
        role = user.role
        action = payload.action

        # --- Authorization ---
        if self._engine.is_terminal(status):
            return self._fail(
                ErrorKind.UNAUTHORIZED,
                f"Request is already {status.value}; no further actions are allowed.",
                request_id=request.id,
                role=role,
            )
        if role not in self._engine.required_approvers(status):
            return self._fail(
                ErrorKind.UNAUTHORIZED,
                f"Role '{role.value}' is not authorized to act on a request "
                f"in status '{status.value}'.",
                request_id=request.id,
                role=role,
                status=status,
            )

        if status == RequestStatus.DEPARTMENT_CHECKS:
            clarification = latest_clarification(request.history)
            if clarification is not None and clarification.clarification_target != role:
                return self._fail(
                    ErrorKind.UNAUTHORIZED,
                    f"This clarification is addressed to the "
                    f"'{clarification.clarification_target.value}' department, "
                    f"not '{role.value}'.",
                    request_id=request.id,
                    role=role,
                )

        # --- Action / payload validation ---
        if action not in self._engine.accepted_actions(role, status):
            return self._fail(
                ErrorKind.INVALID_ACTION,
                f"Action '{action.value}' is not available to role '{role.value}' "
                f"at status '{status.value}'.",
                request_id=request.id,
                role=role,
            )

        problem = self._payload_problem(request, role, payload)
        if problem is not None:
            return self._fail(
                ErrorKind.INVALID_ACTION,
                problem,
                request_id=request.id,
                role=role,
                action=action,
            )

        # --- Successor resolution ---
        progress = verification_round_complete(request.history)
        context = TransitionContext(
            clarification_target=(
                payload.target if action == ActionType.CLARIFY
                else live_clarification_target(request.history)
            ),
            budget_available=payload.budget_available,
            verification_complete=progress.both_complete,
        )
        target_status = self._engine.next_status(status, action, role, context)
        if target_status is None and not self._engine.is_status_preserving(role, status, action):
            return self._fail(
                ErrorKind.NO_OP_TRANSITION,
                f"No transition matches action '{action.value}' by role "
                f"'{role.value}' at status '{status.value}'.",
                request_id=request.id,
                role=role,
                action=action,
            )

        # --- Append and persist ---
        entry = self._build_entry(request, user, payload, target_status)
        updated = request.append(entry, **self._field_updates(request, role, payload))
        stored = self._repo.compare_and_swap(
            request.id,
            status,
            updated,
            expected_history_count=request.history_count,
        )

        details: dict[str, Any] = {
            "role": role.value,
            "previous_status": status.value,
            "new_status": stored.status.value,
        }
        if entry.clarification_target is not None:
            details["clarification_target"] = entry.clarification_target.value
        if entry.department_response is not None:
            details["department_response"] = entry.department_response.value
        self._audit(
            action=action.value.upper(),
            request=stored,
            user=user,
            timestamp=entry.timestamp,
            details=details,
        )
        return ServiceResult.ok(stored)

    def _payload_problem(
        self,
        request: ExpenditureRequest,
        role: UserRole,
        payload: ApprovalPayload,
    ) -> Optional[str]:
        """Describe what the payload is missing for this action, if anything."""
        status = request.status
        action = payload.action

        if action == ActionType.CLARIFY:
            if role == UserRole.DEAN and payload.target not in DEPARTMENT_ROLES:
                return (
                    "A dean clarification needs a department target: "
                    f"one of {', '.join(sorted(r.value for r in DEPARTMENT_ROLES))}."
                )
            if role == UserRole.INSTITUTION_MANAGER and payload.target not in VERIFIER_ROLES:
                return (
                    "A manager clarification needs a verifier target: "
                    f"one of {', '.join(sorted(r.value for r in VERIFIER_ROLES))}."
                )

        if action != ActionType.APPROVE:
            return None

        if (
            role == UserRole.SOP_VERIFIER
            and status in _SOP_APPROVE_STATUSES
            and not payload.sop_reference
            and not payload.sop_not_available
        ):
            return "An SOP reference is required, or mark the SOP as not available."

        if role == UserRole.INSTITUTION_MANAGER and status == RequestStatus.MANAGER_REVIEW:
            if not verification_round_complete(request.history).both_complete:
                return (
                    "Both SOP and budget verification must complete before the "
                    "manager can route the request. Forward it for verification first."
                )
            if payload.budget_available is None:
                return "The routing decision needs budget_available (true or false)."

        if (
            role == UserRole.ACCOUNTANT
            and status == RequestStatus.BUDGET_CHECK
            and payload.budget_available is None
        ):
            return "The budget check needs budget_available (true or false)."

        return None

    def _next_timestamp(self, request: ExpenditureRequest) -> datetime:
        """Clock time, never earlier than the last recorded entry."""
        now = self._clock.now()
        last = request.last_entry
        if last is not None and last.timestamp > now:
            return last.timestamp
        return now

    def _build_entry(
        self,
        request: ExpenditureRequest,
        user: User,
        payload: ApprovalPayload,
        target_status: Optional[RequestStatus],
    ) -> HistoryEntry:
        role = user.role
        action = payload.action
        fields: dict[str, Any] = {
            "action": action,
            "actor_id": user.id,
            "actor_role": role,
            "previous_status": request.status,
            "new_status": target_status,
            "timestamp": self._next_timestamp(request),
            "notes": payload.notes,
            "attachments": tuple(payload.attachments),
        }

        if action == ActionType.FORWARD:
            fields["forwarded_message"] = payload.forwarded_message or payload.notes

        if role == UserRole.SOP_VERIFIER and payload.sop_reference:
            fields["sop_reference"] = payload.sop_reference

        # Records both the accountant's finding and the manager's routing decision.
        if action != ActionType.FORWARD and payload.budget_available is not None:
            fields["budget_available"] = payload.budget_available

        if role == UserRole.ACCOUNTANT:
            budget = self._budget_figures(payload)
            if budget is not None:
                allocated, spent, balance = budget
                fields["budget_allocated"] = allocated
                fields["budget_spent"] = spent
                fields["budget_balance"] = balance

        if action == ActionType.CLARIFY:
            if role == UserRole.DEAN:
                fields["clarification_target"] = payload.target
            elif role == UserRole.INSTITUTION_MANAGER:
                fields["clarification_type"] = payload.target

        if (
            role in DEPARTMENT_ROLES
            and action == ActionType.FORWARD
            and request.status == RequestStatus.DEPARTMENT_CHECKS
        ):
            fields["department_response"] = role

        return HistoryEntry(**fields)

    @staticmethod
    def _budget_figures(payload: ApprovalPayload) -> Optional[tuple[Decimal, Decimal, Decimal]]:
        if payload.budget_allocated is None and payload.budget_spent is None:
            return None
        allocated = payload.budget_allocated or Decimal("0")
        spent = payload.budget_spent or Decimal("0")
        return allocated, spent, allocated - spent

    def _field_updates(
        self,
        request: ExpenditureRequest,
        role: UserRole,
        payload: ApprovalPayload,
    ) -> dict[str, Any]:
        """Denormalized request fields updated alongside the new entry."""
        updates: dict[str, Any] = {}
        if role == UserRole.SOP_VERIFIER and payload.sop_reference:
            updates["sop_reference"] = payload.sop_reference
        if role == UserRole.ACCOUNTANT:
            budget = self._budget_figures(payload)
            if budget is not None:
                allocated, spent, balance = budget
                updates["budget_allocated"] = allocated
                updates["budget_spent"] = spent
                updates["budget_balance"] = balance
        if payload.action != ActionType.FORWARD and payload.attachments:
            updates["attachments"] = list(request.attachments) + list(payload.attachments)
        return updates

    def _audit(
        self,
        action: str,
        request: ExpenditureRequest,
        user: User,
        timestamp: datetime,
        details: dict[str, Any],
    ) -> None:
        if self._db is None:
            log_audit_event(
                logger=self._logger,
                action=action,
                entity_type="ExpenditureRequest",
                entity_id=request.id,
                user_id=user.id,
                details=details,
                timestamp=timestamp,
            )
            return
        with self._db.write_lock:
            log_audit_event(
                logger=self._logger,
                action=action,
                entity_type="ExpenditureRequest",
                entity_id=request.id,
                user_id=user.id,
                details=details,
                conn=self._db.sqlite,
                timestamp=timestamp,
            )
