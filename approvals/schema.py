"""
Centralized SQLite Schema Initialization.

Defines the canonical schema for the approvals local database and provides
a single entry-point, :func:`initialize_schema`, that creates all required
tables idempotently.  A ``schema_version`` table tracks applied migrations
so schema changes can be rolled forward without data loss.

Migration Strategy
~~~~~~~~~~~~~~~~~~
- **Fresh databases** (version 0): all tables are created in one shot from
  :data:`_TABLE_DEFINITIONS`.
- **Existing databases** (version N > 0): only the migrations registered in
  :data:`_MIGRATIONS` for versions ``(N, CURRENT_SCHEMA_VERSION]`` run.
- The whole upgrade (migrations + version bump) is one SQLite transaction.
  On failure the database rolls back to version N and the next startup
  retries.

Usage::

    from approvals.schema import initialize_schema

    initialize_schema(db.sqlite, logger)
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from approvals.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

# ---------------------------------------------------------------------------
# Schema version -- bump this whenever a migration is added.
# ---------------------------------------------------------------------------
CURRENT_SCHEMA_VERSION: int = 2

# ---------------------------------------------------------------------------
# DDL statements for every table in the local database.
# ---------------------------------------------------------------------------
_TABLE_DEFINITIONS: list[str] = [
    # -- single-row version tracker -------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- persistent structured audit trail ------------------------------------
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        details TEXT DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- expenditure requests (history stored as a JSON array) ----------------
    """
    CREATE TABLE IF NOT EXISTS requests (
        id TEXT PRIMARY KEY,
        requester_id TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        purpose TEXT NOT NULL DEFAULT '',
        college TEXT NOT NULL DEFAULT '',
        department TEXT NOT NULL DEFAULT '',
        cost_estimate TEXT NOT NULL DEFAULT '0',
        expense_category TEXT NOT NULL DEFAULT '',
        attachments TEXT NOT NULL DEFAULT '[]',
        sop_reference TEXT,
        budget_allocated TEXT NOT NULL DEFAULT '0',
        budget_spent TEXT NOT NULL DEFAULT '0',
        budget_balance TEXT NOT NULL DEFAULT '0',
        status TEXT NOT NULL,
        history TEXT NOT NULL DEFAULT '[]',
        history_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status)",
    "CREATE INDEX IF NOT EXISTS idx_requests_requester_id ON requests(requester_id)",
    "CREATE INDEX IF NOT EXISTS idx_requests_updated_at ON requests(updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_log_entity_id ON audit_log(entity_id)",
]


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_version`` table if it does not yet exist."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.commit()


def _get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the current schema version, or ``0`` if unset."""
    cursor: sqlite3.Cursor = conn.execute(
        "SELECT version FROM schema_version WHERE id = 1"
    )
    row = cursor.fetchone()
    return row[0] if row is not None else 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Upsert the version tracker.  Does **not** commit."""
    conn.execute(
        """
        INSERT INTO schema_version (id, version) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET version = excluded.version,
                                      applied_at = CURRENT_TIMESTAMP
        """,
        (version,),
    )


def _create_all_tables(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Execute every DDL statement in :data:`_TABLE_DEFINITIONS`.  Does **not** commit."""
    for ddl in _TABLE_DEFINITIONS:
        conn.execute(ddl)
    logger.info(
        f"All {len(_TABLE_DEFINITIONS)} schema statements applied successfully."
    )


_ALLOWED_TABLES: frozenset[str] = frozenset({
    "schema_version",
    "audit_log",
    "requests",
})
"""Tables that may be referenced in dynamic PRAGMA queries."""


def _column_exists(
    conn: sqlite3.Connection, table: str, column: str,
) -> bool:
    """Check whether *column* already exists in *table*.

    Raises:
        ValueError: If *table* is not in :data:`_ALLOWED_TABLES`.
    """
    if table not in _ALLOWED_TABLES:
        raise ValueError(
            f"Invalid table name: {table!r}. "
            f"Allowed tables: {sorted(_ALLOWED_TABLES)}"
        )
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cursor.fetchall())


def _migrate_v1_to_v2(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Add ``history_count`` to ``requests`` and backfill it from the JSON history.

    The compare-and-swap write conditions on this column.
    """
    if not _column_exists(conn, "requests", "history_count"):
        conn.execute(
            "ALTER TABLE requests ADD COLUMN history_count INTEGER NOT NULL DEFAULT 0"
        )
        conn.execute("UPDATE requests SET history_count = json_array_length(history)")
        logger.info("Migration v1→v2: added history_count column to requests.")


MigrationFunc = Callable[[sqlite3.Connection, StructuredLogger], None]

_MIGRATIONS: dict[int, MigrationFunc] = {
    2: _migrate_v1_to_v2,
}


def _run_incremental_migrations(
    conn: sqlite3.Connection,
    logger: StructuredLogger,
    from_version: int,
    to_version: int,
) -> None:
    """Apply registered migrations in ``(from_version, to_version]``.  Does **not** commit."""
    pending = sorted(
        v for v in _MIGRATIONS if from_version < v <= to_version
    )
    for version in pending:
        logger.info(f"Applying migration to schema version {version} …")
        _MIGRATIONS[version](conn, logger)


# ---------------------------------------------------------------------------
# Public entry-point
# ---------------------------------------------------------------------------

def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Ensure the local SQLite database matches the current schema version.

    Workflow:
        1. Guarantee the ``schema_version`` table exists (separate commit).
        2. Read the stored version number (``0`` for a fresh database).
        3. If it already equals or exceeds :data:`CURRENT_SCHEMA_VERSION`,
           return immediately.
        4. Otherwise create all tables (fresh) or run the incremental
           migrations (existing), bump the version and commit, all in one
           transaction.  On failure everything is rolled back.

    Called on every startup; fully idempotent.
    """
    _ensure_version_table(conn)
    current: int = _get_schema_version(conn)

    if current >= CURRENT_SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current}).")
        return

    logger.info(
        f"Upgrading schema from version {current} "
        f"to {CURRENT_SCHEMA_VERSION} …"
    )

    try:
        if current == 0:
            _create_all_tables(conn, logger)
        else:
            _run_incremental_migrations(
                conn, logger, current, CURRENT_SCHEMA_VERSION,
            )

        _set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error(
            f"Schema migration failed, rolled back to version {current}."
        )
        raise

    logger.info(f"Schema initialised at version {CURRENT_SCHEMA_VERSION}.")
