"""
Base Service Class.

Standardizes the logger pattern for all services and the way a failed
operation is logged and turned into a typed ``ServiceResult``.
"""

from __future__ import annotations

from typing import Any

from approvals.logger import StructuredLogger
from approvals.models.enums import ErrorKind
from approvals.models.service_models import ServiceResult

# Failures that point at a defect rather than at the caller.
_LOUD_FAILURES: frozenset[ErrorKind] = frozenset(
    {ErrorKind.NO_OP_TRANSITION, ErrorKind.INTERNAL}
)


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _fail(self, kind: ErrorKind, error: str, **context: Any) -> ServiceResult[Any]:
        """Log *error* with structured *context* and return a failed result."""
        extra = {key: str(value) for key, value in context.items()}
        extra["error_kind"] = kind.value
        if kind in _LOUD_FAILURES:
            self._logger.error("%s", error, extra=extra)
        else:
            self._logger.warning("%s", error, extra=extra)
        return ServiceResult.fail(kind, error)
