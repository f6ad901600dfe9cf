"""
Request Query Service.

Read views over expenditure requests for one viewer: single request,
filtered list, pending approvals, in-progress and dashboard counters.
Every view is built on the batch visibility projection, so a viewer only
ever sees what the projector lets them see.
"""

from __future__ import annotations

from typing import Any, Optional

from approvals.logger import StructuredLogger
from approvals.models.enums import (
    ErrorKind,
    RequestStatus,
    UserAction,
    UserRole,
    VisibilityCategory,
)
from approvals.models.service_models import (
    DashboardStats,
    RequestFilter,
    ServiceResult,
    VisibleRequest,
)
from approvals.models.user import User
from approvals.repositories.request_repository import RequestRepository
from approvals.services.approval_engine import DEFAULT_ENGINE, ApprovalEngine
from approvals.services.base_service import BaseService
from approvals.services.visibility import analyze_visibility, filter_requests_by_visibility


class RequestQueryService(BaseService):
    """
    Read-side service.

    ``max_workers`` above one fans the visibility projection out over a
    thread pool for large result sets.
    """

    def __init__(
        self,
        request_repo: RequestRepository,
        logger: StructuredLogger,
        engine: ApprovalEngine = DEFAULT_ENGINE,
        max_workers: Optional[int] = None,
    ) -> None:
        super().__init__(logger)
        self._repo = request_repo
        self._engine = engine
        self._max_workers = max_workers

    def get_request(self, request_id: str, user: User) -> ServiceResult[VisibleRequest]:
        """Return one request with its visibility for *user*."""
        try:
            request = self._repo.get_by_id(request_id)
            if request is None:
                return self._fail(
                    ErrorKind.NOT_FOUND,
                    f"Request '{request_id}' not found.",
                    request_id=request_id,
                )
            visibility = analyze_visibility(request, user.role, user.id, self._engine)
            if not visibility.can_see:
                return self._fail(
                    ErrorKind.UNAUTHORIZED,
                    "You do not have access to this request.",
                    request_id=request_id,
                    user_id=user.id,
                    role=user.role,
                )
            return ServiceResult.ok(VisibleRequest(request=request, visibility=visibility))
        except Exception as exc:
            return self._internal("get_request", user, exc)

    def list_requests(
        self,
        user: User,
        status: Optional[str] = None,
        college: Optional[str] = None,
    ) -> ServiceResult[list[VisibleRequest]]:
        """All requests visible to *user*.

        ``status`` accepts ``"pending"`` (the viewer's pending category),
        ``"approved"``, ``"rejected"`` or any exact status value.
        """
        try:
            flt = RequestFilter(
                requester_id=user.id if user.role == UserRole.REQUESTER else None,
                college=college,
            )
            category: Optional[VisibilityCategory] = None
            if status:
                token = status.strip().lower()
                if token == VisibilityCategory.PENDING.value:
                    category = VisibilityCategory.PENDING
                else:
                    try:
                        flt = flt.model_copy(update={"statuses": frozenset({RequestStatus(token)})})
                    except ValueError:
                        return self._fail(
                            ErrorKind.INVALID_ACTION,
                            f"Unknown status filter '{status}'.",
                            user_id=user.id,
                        )
            return ServiceResult.ok(self._visible(user, flt, category))
        except Exception as exc:
            return self._internal("list_requests", user, exc)

    def pending_approvals(self, user: User) -> ServiceResult[list[VisibleRequest]]:
        """Requests waiting for *user*'s action."""
        try:
            if user.role == UserRole.REQUESTER:
                return ServiceResult.ok([])
            return ServiceResult.ok(
                self._visible(user, RequestFilter(), VisibilityCategory.PENDING)
            )
        except Exception as exc:
            return self._internal("pending_approvals", user, exc)

    def in_progress(self, user: User) -> ServiceResult[list[VisibleRequest]]:
        """Requests *user* has acted on that moved on, plus approved ones."""
        try:
            if user.role == UserRole.REQUESTER:
                return ServiceResult.ok([])
            visible = self._visible(user, RequestFilter(), None)
            return ServiceResult.ok([item for item in visible if self._is_in_progress(item)])
        except Exception as exc:
            return self._internal("in_progress", user, exc)

    def dashboard_stats(self, user: User) -> ServiceResult[DashboardStats]:
        """Counters for the viewer's dashboard."""
        try:
            flt = RequestFilter(
                requester_id=user.id if user.role == UserRole.REQUESTER else None
            )
            visible = self._visible(user, flt, None)
            stats = DashboardStats(
                total_requests=len(visible),
                pending_requests=sum(
                    1 for item in visible
                    if item.visibility.category == VisibilityCategory.PENDING
                ),
                approved_requests=sum(
                    1 for item in visible if item.request.status == RequestStatus.APPROVED
                ),
                rejected_requests=sum(
                    1 for item in visible if item.request.status == RequestStatus.REJECTED
                ),
                in_progress_requests=(
                    0 if user.role == UserRole.REQUESTER
                    else sum(1 for item in visible if self._is_in_progress(item))
                ),
            )
            return ServiceResult.ok(stats)
        except Exception as exc:
            return self._internal("dashboard_stats", user, exc)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _visible(
        self,
        user: User,
        flt: RequestFilter,
        category: Optional[VisibilityCategory],
    ) -> list[VisibleRequest]:
        requests = self._repo.query(flt)
        return filter_requests_by_visibility(
            requests,
            user.role,
            user.id,
            category=category,
            engine=self._engine,
            max_workers=self._max_workers,
        )

    @staticmethod
    def _is_in_progress(item: VisibleRequest) -> bool:
        if item.request.status == RequestStatus.APPROVED:
            return True
        return (
            item.visibility.category == VisibilityCategory.IN_PROGRESS
            and item.visibility.user_action in (UserAction.APPROVE, UserAction.CLARIFY)
        )

    def _internal(self, operation: str, user: User, exc: Exception) -> ServiceResult[Any]:
        self._logger.error(
            "Error in %s for user %s: %s",
            operation,
            user.id,
            str(exc),
            exc_info=True,
        )
        return ServiceResult.fail(ErrorKind.INTERNAL, f"Database error: {str(exc)}")
