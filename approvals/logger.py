"""
JSON logging for the approvals core.

Every component takes a :class:`StructuredLogger` in its constructor.  Log
lines are single JSON objects so request ids, roles and statuses passed via
``extra`` stay machine-readable next to the ``AUDIT:`` events.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO, Union

_RESERVED_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)


class JSONFormatter(logging.Formatter):
    """Render a record as ``{timestamp, level, logger_name, message}``.

    Fields passed through ``extra=`` are stringified under ``"extra"``; a
    traceback, when present, goes under ``"exception"``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Union[str, dict[str, str]]] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        context = {
            key: str(value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if context:
            entry["extra"] = context

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


def _file_handler(path: str, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        filename=str(log_path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )


class StructuredLogger:
    """Named JSON logger configured from ``AppConfig``.

    Arguments left as ``None`` fall back to ``LOG_LEVEL``, ``LOG_FILE``,
    ``LOG_MAX_BYTES`` and ``LOG_BACKUP_COUNT``.  An empty ``log_file``
    keeps output on the stream only.  Handlers are attached the first time
    a name is seen; later instances with the same name share them.
    """

    def __init__(
        self,
        name: str = "approvals",
        level: Optional[int] = None,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        from approvals.config import get_config
        cfg = get_config()

        resolved_level = level if level is not None else cfg.log_level
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(resolved_level)
        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        handlers: list[logging.Handler] = [logging.StreamHandler(stream or sys.stdout)]

        path = log_file if log_file is not None else cfg.LOG_FILE
        file_error: Optional[OSError] = None
        if path:
            try:
                handlers.append(_file_handler(
                    path,
                    max_bytes if max_bytes is not None else cfg.LOG_MAX_BYTES,
                    backup_count if backup_count is not None else cfg.LOG_BACKUP_COUNT,
                ))
            except OSError as exc:
                file_error = exc

        for handler in handlers:
            handler.setLevel(resolved_level)
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)

        if file_error is not None:
            self._logger.warning(
                "Log file '%s' unavailable (%s); logging to the console only.",
                path,
                file_error,
            )

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "approvals") -> StructuredLogger:
    """``StructuredLogger`` for *name* with every setting taken from config."""
    return StructuredLogger(name=name)
