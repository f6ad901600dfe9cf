"""
Repository-level exceptions.

Raised inside the data-access layer and converted into typed
``ServiceResult`` failures at the service boundary.
"""

from __future__ import annotations

from typing import Optional

from approvals.models.enums import RequestStatus


class RequestNotFoundError(LookupError):
    """The request id does not resolve to a stored request."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request '{request_id}' not found.")
        self.request_id = request_id


class ConcurrencyConflictError(RuntimeError):
    """A compare-and-swap found the stored request changed since it was read."""

    def __init__(
        self,
        request_id: str,
        expected_status: RequestStatus,
        actual_status: Optional[RequestStatus] = None,
    ) -> None:
        detail = f" (now '{actual_status}')" if actual_status is not None else ""
        super().__init__(
            f"Request '{request_id}' changed concurrently: expected status "
            f"'{expected_status}'{detail}. Reload and retry."
        )
        self.request_id = request_id
        self.expected_status = expected_status
        self.actual_status = actual_status
