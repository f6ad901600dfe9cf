"""
Expenditure Request Model.

The request aggregate and its append-only history.  ``HistoryEntry`` is
frozen; ``ExpenditureRequest`` is only ever evolved through
:meth:`ExpenditureRequest.append`, which returns a new instance so a
caller's snapshot stays valid for compare-and-swap.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from approvals.models.enums import ActionType, RequestStatus, UserRole


class HistoryEntry(BaseModel):
    """One immutable audit record of an action taken on a request."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    action: ActionType
    actor_id: str
    actor_role: UserRole
    previous_status: Optional[RequestStatus] = None
    new_status: Optional[RequestStatus] = None
    timestamp: datetime

    notes: Optional[str] = None
    forwarded_message: Optional[str] = None
    attachments: tuple[str, ...] = ()

    # SOP verifier trail
    sop_reference: Optional[str] = None

    # Accountant budget trail
    budget_available: Optional[bool] = None
    budget_allocated: Optional[Decimal] = None
    budget_spent: Optional[Decimal] = None
    budget_balance: Optional[Decimal] = None

    # Clarification tracking
    clarification_target: Optional[UserRole] = None  # DEAN -> department
    clarification_type: Optional[UserRole] = None  # INSTITUTION_MANAGER -> verifier
    department_response: Optional[UserRole] = None

    @property
    def is_transition(self) -> bool:
        """``True`` when the entry moved the request to a different status."""
        return self.new_status is not None and self.new_status != self.previous_status


class RequestDraft(BaseModel):
    """Validated business fields for a new request."""

    title: str = Field(min_length=1)
    purpose: str = Field(min_length=1)
    college: str = Field(min_length=1)
    department: str = Field(min_length=1)
    cost_estimate: Decimal = Field(ge=0)
    expense_category: str = Field(min_length=1)
    sop_reference: Optional[str] = None
    attachments: list[str] = Field(default_factory=list)


class ExpenditureRequest(BaseModel):
    """A funding request moving through the approval workflow.

    ``status`` always equals the ``new_status`` of the last history entry
    that set one.  ``history`` only grows.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    requester_id: str

    # Business fields
    title: str = ""
    purpose: str = ""
    college: str = ""
    department: str = ""
    cost_estimate: Decimal = Decimal("0")
    expense_category: str = ""
    attachments: list[str] = Field(default_factory=list)

    # Denormalized latest values from SOP verifier / accountant actions
    sop_reference: Optional[str] = None
    budget_allocated: Decimal = Decimal("0")
    budget_spent: Decimal = Decimal("0")
    budget_balance: Decimal = Decimal("0")

    status: RequestStatus = RequestStatus.MANAGER_REVIEW
    history: tuple[HistoryEntry, ...] = ()

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def history_count(self) -> int:
        return len(self.history)

    @property
    def last_entry(self) -> Optional[HistoryEntry]:
        return self.history[-1] if self.history else None

    def append(
        self,
        entry: HistoryEntry,
        **field_updates: object,
    ) -> "ExpenditureRequest":
        """Return a copy with *entry* appended and status advanced.

        Extra keyword arguments are applied as denormalized field updates
        (e.g. ``sop_reference``) in the same step.
        """
        update: dict[str, object] = dict(field_updates)
        update["history"] = self.history + (entry,)
        if entry.new_status is not None and entry.new_status != self.status:
            update["status"] = entry.new_status
        update["updated_at"] = entry.timestamp
        return self.model_copy(update=update)
