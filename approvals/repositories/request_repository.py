"""
Request Repository.

Handles expenditure request data access via Supabase (primary, when
configured) and SQLite (local store / offline cache).

The only mutation after creation is :meth:`RequestRepository.compare_and_swap`,
a conditional update keyed on the status and history length the caller read.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Optional

from approvals.database import DatabaseManager
from approvals.exceptions import ConcurrencyConflictError, RequestNotFoundError
from approvals.logger import StructuredLogger
from approvals.models.enums import RequestStatus
from approvals.models.request import ExpenditureRequest
from approvals.models.service_models import RequestFilter
from approvals.repositories.base_repository import BaseRepository

_COLUMNS: tuple[str, ...] = (
    "id",
    "requester_id",
    "title",
    "purpose",
    "college",
    "department",
    "cost_estimate",
    "expense_category",
    "attachments",
    "sop_reference",
    "budget_allocated",
    "budget_spent",
    "budget_balance",
    "status",
    "history",
    "history_count",
    "created_at",
    "updated_at",
)

_JSON_COLUMNS: frozenset[str] = frozenset({"attachments", "history"})


class RequestRepository(BaseRepository):
    """Data access layer for ExpenditureRequest aggregates.

    **No ``delete()`` method.**  History is append-only for the lifetime
    of the aggregate; rejected requests stay queryable.
    """

    TABLE = "requests"

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        super().__init__(db, logger)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, request_id: str) -> Optional[ExpenditureRequest]:
        """Fetch a request by ID. Tries Supabase first, falls back to SQLite."""

        def from_supabase() -> Optional[ExpenditureRequest]:
            response = (
                self.supabase.table(self.TABLE)
                .select("*")
                .eq("id", request_id)
                .maybe_single()
                .execute()
            )
            if response is not None and response.data:
                return self._parse_row(response.data)
            return None

        def from_sqlite() -> Optional[ExpenditureRequest]:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE id = ?", (request_id,)
            ).fetchone()
            return self._parse_row(dict(row)) if row else None

        return self._execute_with_fallback(
            from_supabase,
            from_sqlite,
            lambda: None,
            operation_name=f"get_by_id ({self.TABLE})",
            on_supabase_success=self._cache_to_sqlite,
        )

    def query(self, request_filter: Optional[RequestFilter] = None) -> list[ExpenditureRequest]:
        """Return requests matching *request_filter*, newest activity first."""
        flt = request_filter or RequestFilter()

        def from_supabase() -> list[ExpenditureRequest]:
            q = self.supabase.table(self.TABLE).select("*")
            if flt.requester_id is not None:
                q = q.eq("requester_id", flt.requester_id)
            if flt.college is not None:
                q = q.eq("college", flt.college)
            if flt.statuses is not None:
                q = q.in_("status", sorted(s.value for s in flt.statuses))
            response = q.order("updated_at", desc=True).execute()
            return [self._parse_row(row) for row in response.data or []]

        def from_sqlite() -> list[ExpenditureRequest]:
            return self._query_sqlite(flt)

        return self._execute_with_fallback(
            from_supabase,
            from_sqlite,
            list,
            operation_name=f"query ({self.TABLE})",
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, request: ExpenditureRequest) -> ExpenditureRequest:
        """Insert a new request.

        Online: written to Supabase, then cached locally.  Offline: written
        to SQLite only.  Storage errors propagate to the caller.
        """
        if self._db.is_online:
            response = (
                self.supabase.table(self.TABLE)
                .insert(self._serialize_for_supabase(request))
                .execute()
            )
            created = self._parse_row(response.data[0]) if response.data else request
            self._cache_to_sqlite(created)
            self._logger.info("Request created: %s", created.id)
            return created

        row = self._serialize_for_sqlite(request)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._db.write_lock:
            self.sqlite.execute(
                f"INSERT INTO {self.TABLE} ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[col] for col in _COLUMNS),
            )
            self.sqlite.commit()
        self._logger.info("Request created locally: %s", request.id)
        return request

    def compare_and_swap(
        self,
        request_id: str,
        previous_status: RequestStatus,
        updated: ExpenditureRequest,
        expected_history_count: Optional[int] = None,
    ) -> ExpenditureRequest:
        """Persist *updated* only if the stored row still matches what was read.

        The stored row must have ``status == previous_status`` and
        ``history_count == expected_history_count`` (default: one fewer
        entry than *updated* carries).

        Raises
        ------
        ConcurrencyConflictError
            The row changed since it was read.
        RequestNotFoundError
            The row no longer exists.
        """
        if expected_history_count is None:
            expected_history_count = updated.history_count - 1

        if self._db.is_online:
            return self._cas_supabase(request_id, previous_status, updated, expected_history_count)
        return self._cas_sqlite(request_id, previous_status, updated, expected_history_count)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _cas_supabase(
        self,
        request_id: str,
        previous_status: RequestStatus,
        updated: ExpenditureRequest,
        expected_history_count: int,
    ) -> ExpenditureRequest:
        data = self._serialize_for_supabase(updated)
        data.pop("id", None)
        response = (
            self.supabase.table(self.TABLE)
            .update(data)
            .eq("id", request_id)
            .eq("status", previous_status.value)
            .eq("history_count", expected_history_count)
            .execute()
        )
        if not response.data:
            current = (
                self.supabase.table(self.TABLE)
                .select("status")
                .eq("id", request_id)
                .maybe_single()
                .execute()
            )
            if current is None or not current.data:
                raise RequestNotFoundError(request_id)
            raise ConcurrencyConflictError(
                request_id, previous_status, RequestStatus(current.data["status"])
            )

        stored = self._parse_row(response.data[0])
        try:
            self._cache_to_sqlite(stored)
        except sqlite3.Error as exc:
            self._logger.warning("Failed to cache request %s locally: %s", request_id, exc)
        return stored

    def _cas_sqlite(
        self,
        request_id: str,
        previous_status: RequestStatus,
        updated: ExpenditureRequest,
        expected_history_count: int,
    ) -> ExpenditureRequest:
        row = self._serialize_for_sqlite(updated)
        assignments = ", ".join(f"{col} = ?" for col in _COLUMNS if col != "id")
        params = tuple(row[col] for col in _COLUMNS if col != "id")

        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"UPDATE {self.TABLE} SET {assignments} "
                "WHERE id = ? AND status = ? AND history_count = ?",
                params + (request_id, previous_status.value, expected_history_count),
            )
            if cursor.rowcount == 0:
                current = self.sqlite.execute(
                    f"SELECT status FROM {self.TABLE} WHERE id = ?", (request_id,)
                ).fetchone()
                if current is None:
                    raise RequestNotFoundError(request_id)
                raise ConcurrencyConflictError(
                    request_id, previous_status, RequestStatus(current["status"])
                )
            self.sqlite.commit()
        return updated

    def _query_sqlite(self, flt: RequestFilter) -> list[ExpenditureRequest]:
        clauses: list[str] = []
        params: list[Any] = []
        if flt.requester_id is not None:
            clauses.append("requester_id = ?")
            params.append(flt.requester_id)
        if flt.college is not None:
            clauses.append("college = ?")
            params.append(flt.college)
        if flt.statuses is not None:
            if not flt.statuses:
                return []
            statuses = sorted(s.value for s in flt.statuses)
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.sqlite.execute(
            f"SELECT * FROM {self.TABLE}{where} ORDER BY updated_at DESC, id",
            tuple(params),
        ).fetchall()
        return [self._parse_row(dict(row)) for row in rows]

    def _cache_to_sqlite(self, request: ExpenditureRequest) -> None:
        """Upsert *request* into the local SQLite cache."""
        row = self._serialize_for_sqlite(request)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._db.write_lock:
            self.sqlite.execute(
                f"INSERT OR REPLACE INTO {self.TABLE} ({', '.join(_COLUMNS)}) "
                f"VALUES ({placeholders})",
                tuple(row[col] for col in _COLUMNS),
            )
            self.sqlite.commit()

    @staticmethod
    def _serialize_for_supabase(request: ExpenditureRequest) -> dict[str, Any]:
        """Convert a request into a JSON-safe row (history as a JSON array)."""
        data = request.model_dump(mode="json")
        row = {col: data.get(col) for col in _COLUMNS if col != "history_count"}
        row["history_count"] = request.history_count
        return row

    @classmethod
    def _serialize_for_sqlite(cls, request: ExpenditureRequest) -> dict[str, Any]:
        row = cls._serialize_for_supabase(request)
        for col in _JSON_COLUMNS:
            row[col] = json.dumps(row[col])
        return row

    @staticmethod
    def _parse_row(row: dict[str, Any]) -> ExpenditureRequest:
        """Parse a Supabase or SQLite row into an ``ExpenditureRequest``."""
        data = dict(row)
        data.pop("history_count", None)
        for col in _JSON_COLUMNS:
            if isinstance(data.get(col), str):
                data[col] = json.loads(data[col])
        return ExpenditureRequest.model_validate(data)
