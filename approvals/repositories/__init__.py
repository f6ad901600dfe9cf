"""
Repository Layer.

Data access for the approvals core.  Each repository receives a
``DatabaseManager`` and a ``StructuredLogger`` via its constructor.
"""

from __future__ import annotations

from approvals.repositories.base_repository import BaseRepository
from approvals.repositories.request_repository import RequestRepository

__all__ = ["BaseRepository", "RequestRepository"]
