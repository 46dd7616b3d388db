"""Logging setup tests."""

from __future__ import annotations

import json
import logging

import structlog

from shopguard.logging_config import AUDIT_LOGGER_NAME, setup_logging


def test_audit_events_written_to_file(tmp_path):
    audit_file = tmp_path / "audit.log"
    setup_logging(log_level="info", json_format=False, audit_log_file=str(audit_file))
    try:
        structlog.get_logger(AUDIT_LOGGER_NAME).warning("suspicious_activity", status_code=403, ip="1.2.3.4")
        structlog.get_logger("shopguard.other").info("not_audited")
        for handler in logging.getLogger(AUDIT_LOGGER_NAME).handlers:
            handler.flush()

        lines = audit_file.read_text().strip().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["event"] == "suspicious_activity"
        assert record["status_code"] == 403
        assert record["module"] == AUDIT_LOGGER_NAME
        assert record["level"] == "warning"
    finally:
        setup_logging()


def test_setup_without_audit_file_has_no_file_handler():
    setup_logging(log_level="debug")
    assert logging.getLogger(AUDIT_LOGGER_NAME).handlers == []
    assert logging.getLogger().level == logging.DEBUG
