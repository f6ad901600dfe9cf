"""
Application Configuration.

Pydantic Settings model for the expenditure approvals core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase (optional cloud store) ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")

    # --- Local store ---
    SQLITE_PATH: str = "approvals_local.db"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "approvals.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    # --- Workflow ---
    # Old persisted requests may still sit in SOP_VERIFICATION / BUDGET_CHECK.
    ENABLE_LEGACY_WORKFLOW: bool = False

    # --- Audit ---
    PERSIST_AUDIT_EVENTS: bool = True

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when optional configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so operators get a log line instead of a surprise.
        """
        _log = logging.getLogger("approvals.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty, running against the local SQLite store only."
            )

        return self

    @property
    def log_level(self) -> int:
        """Numeric logging level for ``LOG_LEVEL`` (unknown names map to INFO)."""
        level = logging.getLevelName(self.LOG_LEVEL.upper())
        return level if isinstance(level, int) else logging.INFO


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern so the fast path takes no lock while
    first initialisation stays thread-safe.  Prefer constructor injection
    of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance


def reset_config() -> None:
    """Drop the cached singleton so the next ``get_config()`` re-reads the environment."""
    global _config_instance
    with _config_lock:
        _config_instance = None
