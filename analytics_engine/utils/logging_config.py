"""Logging setup for the analytics engine plus the structured audit helpers.

The audit helpers emit one greppable line per analysis run, cache event or
compensated collaborator failure, prefixed ``ANALYSIS_RUN``, ``CACHE_EVENT``
and ``COLLABORATOR_FAILURE`` respectively.
"""
import logging.config
import os
import sys
from pathlib import Path
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

PACKAGE_LOGGER = "analytics_engine"

_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_AUDIT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-28s | %(message)s"
_SIMPLE_FORMAT = "%(levelname)-8s | %(name)-28s | %(message)s"
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"

# Collaborator libraries that only surface warnings.
_QUIET_LOGGERS = ("asyncio", "pydantic")

_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5


def get_log_level() -> int:
    """Level named by ``LOG_LEVEL``; unknown names fall back to INFO."""
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def _console_handler(level: int) -> Dict[str, Any]:
    return {"class": "logging.StreamHandler", "level": level, "formatter": "console", "stream": sys.stdout}


def _file_handler(level: int, log_file: Path) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "file",
        "filename": str(log_file),
        "maxBytes": _MAX_LOG_BYTES,
        "backupCount": _LOG_BACKUPS,
        "encoding": "utf-8",
    }


def setup_logging(
    log_level: Optional[int] = None, log_file: Optional[str] = None, include_audit_context: bool = True
) -> None:
    """Route engine logs to stdout and, optionally, a rotating file.

    ``analytics_engine`` loggers stop at their own handlers; the root logger
    gets the same handlers so host-application logs land alongside.
    """
    level = get_log_level() if log_level is None else log_level

    handlers: Dict[str, Any] = {"console": _console_handler(level)}
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = _file_handler(level, path)
    handler_names: List[str] = list(handlers)

    loggers: Dict[str, Any] = {
        PACKAGE_LOGGER: {"level": level, "handlers": list(handler_names), "propagate": False},
    }
    for name in _QUIET_LOGGERS:
        loggers[name] = {"level": logging.WARNING, "handlers": list(handler_names), "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "format": _AUDIT_FORMAT if include_audit_context else _SIMPLE_FORMAT,
                    "datefmt": _DATE_FORMAT,
                },
                "file": {"format": _FILE_FORMAT, "datefmt": _DATE_FORMAT},
            },
            "handlers": handlers,
            "loggers": loggers,
            "root": {"level": level, "handlers": list(handler_names)},
        }
    )

    logging.getLogger(__name__).info(
        "Analytics logging at %s%s",
        logging.getLevelName(level),
        f", writing to {log_file}" if log_file else "",
    )


def log_analysis_run(logger: logging.Logger, entity_id: str, status: str, duration_ms: float = 0.0) -> None:
    """Log a completed analysis run for audit purposes."""
    logger.info(f"ANALYSIS_RUN: {entity_id} | Status: {status} | Duration: {duration_ms:.1f}ms")


def log_cache_event(logger: logging.Logger, event: str, key: str, detail: str = "") -> None:
    """Log cache maintenance events (evictions, invalidations)."""
    message = f"CACHE_EVENT: {event} | Key: {key}"
    if detail:
        message += f" | {detail}"
    logger.debug(message)


def log_collaborator_failure(logger: logging.Logger, collaborator: str, entity_id: Optional[str], error: BaseException) -> None:
    """Log a failed collaborator call that was compensated with a safe default."""
    logger.warning(
        f"COLLABORATOR_FAILURE: {collaborator} | Entity: {entity_id or '-'} | "
        f"Error: {type(error).__name__}: {error}"
    )
