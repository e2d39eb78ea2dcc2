"""
Structured logging for the Ibex server.

Plain text to stderr by default; one JSON object per line when IBEX_LOG_JSON=1.
Messages are redacted (Hugging Face tokens, home directory) before emission.
"""

import json
import logging
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .context import get_request_id

_TOKEN_PATTERN = re.compile(r"hf_[A-Za-z0-9]{20,}")
_ERROR_RATE_LIMIT_SECONDS = 5.0

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _json_mode() -> bool:
    return os.environ.get("IBEX_LOG_JSON", "0") == "1"


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON (also used for uvicorn loggers)."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry.update(fields)
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _PlainFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        level = "WARN" if record.levelno == logging.WARNING else record.levelname
        line = f"[{level}] {record.getMessage()}"
        fields = getattr(record, "fields", None)
        if fields:
            extras = " ".join(f"{k}={v}" for k, v in fields.items())
            line = f"{line} ({extras})"
        return line


class IbexLogger:
    """Thin wrapper around a stdlib logger with redaction and structured fields."""

    def __init__(self, name: str = "ibex", verbose: bool = False):
        self.name = name
        self.verbose = verbose
        self._last_error_at: Dict[str, float] = {}
        self._logger = logging.getLogger(name)
        self._logger.propagate = False
        self._configure_handler()

    def _configure_handler(self) -> None:
        # Handler is rebuilt so the JSON toggle is honored per logger instance
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JSONFormatter() if _json_mode() else _PlainFormatter())
        self._logger.addHandler(handler)
        if self._logger.level == logging.NOTSET:
            self._logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    def set_verbose(self, verbose: bool) -> None:
        self.verbose = verbose
        self._logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    def set_level(self, level: str) -> None:
        numeric = _LEVELS.get(level.lower(), logging.INFO)
        self.verbose = numeric <= logging.DEBUG
        self._logger.setLevel(numeric)

    @staticmethod
    def _redact(message: str) -> str:
        redacted = _TOKEN_PATTERN.sub("[REDACTED_TOKEN]", message)
        home = str(Path.home())
        if home and home != "/":
            redacted = redacted.replace(home, "~")
        return redacted

    def _emit(self, level: int, message: str, fields: Dict[str, Any]) -> None:
        if "request_id" not in fields:
            fields["request_id"] = get_request_id()
        clean = {k: self._redact(v) if isinstance(v, str) else v for k, v in fields.items() if v is not None}
        self._logger.log(level, self._redact(str(message)), extra={"fields": clean})

    def debug(self, message: str, **fields: Any) -> None:
        if self.verbose:
            self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, error_key: Optional[str] = None, **fields: Any) -> None:
        """Log an error; repeated errors sharing `error_key` are limited to one per 5s."""
        if error_key is not None:
            now = time.monotonic()
            last = self._last_error_at.get(error_key)
            if last is not None and now - last < _ERROR_RATE_LIMIT_SECONDS:
                return
            self._last_error_at[error_key] = now
        self._emit(logging.ERROR, message, fields)


_logger: Optional[IbexLogger] = None


def get_logger() -> IbexLogger:
    global _logger
    if _logger is None:
        _logger = IbexLogger("ibex")
    return _logger


def set_log_level(level: str) -> None:
    """Apply a level name (debug/info/warning/error) to the Ibex logger."""
    get_logger().set_level(level)


def uvicorn_log_config(level: str) -> Optional[Dict[str, Any]]:
    """Uvicorn logging config using JSONFormatter, or None to keep uvicorn's default."""
    if not _json_mode():
        return None
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"()": "ibex.logging.JSONFormatter"},
            "access": {"()": "ibex.logging.JSONFormatter"},
        },
        "handlers": {
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
            "access": {
                "formatter": "access",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": level.upper()},
            "uvicorn.error": {"handlers": ["default"], "level": level.upper(), "propagate": False},
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
        },
    }


def set_json_mode(enabled: bool) -> None:
    """Switch between plain and JSON output.

    Exported through IBEX_LOG_JSON so uvicorn_log_config() follows the same choice.
    """
    os.environ["IBEX_LOG_JSON"] = "1" if enabled else "0"
    get_logger()._configure_handler()
