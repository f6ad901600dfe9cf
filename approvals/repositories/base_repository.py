"""
Base Repository.

Provides shared infrastructure for all repositories:
- DatabaseManager reference (Supabase + SQLite)
- Logger reference
- Convenience properties for accessing clients
- Supabase-first, SQLite-fallback read helper
"""

from __future__ import annotations

import sqlite3
from typing import Callable, Optional, TypeVar

from supabase import Client as SupabaseClient

from approvals.database import DatabaseManager
from approvals.logger import StructuredLogger

T = TypeVar("T")


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def supabase(self) -> SupabaseClient:
        """Returns the Supabase client for cloud operations."""
        return self._db.supabase

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Returns the SQLite connection for local operations."""
        return self._db.sqlite

    def _execute_with_fallback(
        self,
        supabase_op: Callable[[], Optional[T]],
        sqlite_op: Callable[[], Optional[T]],
        default_factory: Callable[[], T],
        *,
        operation_name: str,
        on_supabase_success: Optional[Callable[[T], None]] = None,
    ) -> T:
        """Execute a read operation with Supabase-first, SQLite-fallback semantics.

        NOT intended for write paths: writes go to exactly one store.

        Execution order:
        1. Call ``supabase_op()`` when online.  If it returns a non-``None``
           value, optionally invoke ``on_supabase_success``, then return.
        2. Call ``sqlite_op()``.  If it returns a non-``None`` value, return.
        3. Return ``default_factory()``.

        Parameters
        ----------
        supabase_op:
            Zero-argument callable that performs the Supabase query.
        sqlite_op:
            Zero-argument callable that performs the SQLite query.
        default_factory:
            Produces the typed default when both sources return ``None``.
        operation_name:
            Human-readable label for log messages, e.g.
            ``"get_by_id (requests)"``.
        on_supabase_success:
            Optional cache-warming callback invoked with the Supabase result.
            Exceptions are logged as warnings but never mask the result.
        """
        if self._db.is_online:
            try:
                result = supabase_op()
                if result is not None:
                    if on_supabase_success is not None:
                        try:
                            on_supabase_success(result)
                        except Exception as cache_exc:
                            self._logger.warning(
                                "Post-Supabase callback failed for %s: %s",
                                operation_name,
                                cache_exc,
                            )
                    return result
            except Exception as exc:
                self._logger.warning(
                    "Supabase unavailable for %s: %s", operation_name, exc
                )

        try:
            result = sqlite_op()
            if result is not None:
                return result
        except sqlite3.Error as sqlite_exc:
            self._logger.error(
                "SQLite fallback also failed for %s: %s",
                operation_name,
                sqlite_exc,
            )

        return default_factory()
