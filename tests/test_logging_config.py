import logging
import logging.handlers
import sys

import pytest

from analytics_engine.utils.logging_config import (
    get_log_level,
    log_analysis_run,
    log_cache_event,
    log_collaborator_failure,
    setup_logging,
)

CONFIGURED = ("analytics_engine", "asyncio", "pydantic", "")


@pytest.fixture
def restore_logging():
    saved = {}
    for name in CONFIGURED:
        logger = logging.getLogger(name)
        saved[name] = (logger.level, list(logger.handlers), logger.propagate)
    yield
    for name, (level, handlers, propagate) in saved.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            if handler not in handlers:
                handler.close()
        logger.handlers = handlers
        logger.setLevel(level)
        logger.propagate = propagate


def test_log_level_from_environment(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert get_log_level() == logging.DEBUG
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    assert get_log_level() == logging.INFO


def test_setup_logging_adds_rotating_file_handler(tmp_path, restore_logging):
    log_file = tmp_path / "logs" / "analytics.log"
    setup_logging(logging.DEBUG, str(log_file))

    package_logger = logging.getLogger("analytics_engine")
    assert package_logger.level == logging.DEBUG
    assert package_logger.propagate is False
    assert any(isinstance(handler, logging.handlers.RotatingFileHandler) for handler in package_logger.handlers)
    assert logging.getLogger("asyncio").level == logging.WARNING

    logging.getLogger("analytics_engine.tests").info("written to file")
    for handler in package_logger.handlers:
        handler.flush()
    assert "written to file" in log_file.read_text(encoding="utf-8")


def test_audit_helpers_format_messages(caplog):
    logger = logging.getLogger("analytics_engine.audit_test")
    with caplog.at_level(logging.DEBUG, logger="analytics_engine.audit_test"):
        log_analysis_run(logger, "s1", "partial", 12.345)
        log_cache_event(logger, "evict", "s2", "size=50")
        log_collaborator_failure(logger, "patterns", None, RuntimeError("boom"))

    assert "ANALYSIS_RUN: s1 | Status: partial | Duration: 12.3ms" in caplog.text
    assert "CACHE_EVENT: evict | Key: s2 | size=50" in caplog.text
    assert "COLLABORATOR_FAILURE: patterns | Entity: - | Error: RuntimeError: boom" in caplog.text


def test_console_can_drop_audit_context(restore_logging):
    setup_logging(logging.INFO, include_audit_context=False)

    package_logger = logging.getLogger("analytics_engine")
    (console,) = package_logger.handlers
    assert console.stream is sys.stdout
    assert console.formatter.usesTime() is False
    assert logging.getLogger("pydantic").level == logging.WARNING
    assert logging.getLogger("pydantic").handlers[0] is console
