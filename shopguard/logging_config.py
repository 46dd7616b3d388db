"""Gateway logging: structlog over stdlib handlers.

Every record carries the ``request_id`` bound per request through
structlog contextvars, and the stdlib logger name is emitted as ``module``.
Security events such as failed logins go to the
``shopguard.audit`` logger, which can additionally be written to a
JSON-lines file for collection by a SIEM.
"""

import logging
import sys

import structlog

AUDIT_LOGGER_NAME = "shopguard.audit"

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _rename_logger_to_module(
    logger: logging.Logger, method_name: str, event_dict: dict
) -> dict:
    if "logger" in event_dict:
        event_dict["module"] = event_dict.pop("logger")
    return event_dict


def _formatter(renderer: structlog.types.Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def _reset_audit_sink(audit_log_file: str) -> None:
    """Replace the audit logger's file handler; the file is JSON whatever the console format."""
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    for existing in list(audit_logger.handlers):
        audit_logger.removeHandler(existing)
        existing.close()
    if not audit_log_file:
        return
    file_handler = logging.FileHandler(audit_log_file, encoding="utf-8")
    file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    audit_logger.addHandler(file_handler)


def setup_logging(log_level: str = "info", json_format: bool = True, audit_log_file: str = "") -> None:
    """Configure structlog and the root handler.

    ``json_format`` picks JSON lines or the coloured console renderer for
    stdout. Safe to call more than once: handlers are
    replaced, not stacked.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _rename_logger_to_module,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_formatter(renderer))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(console)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    _reset_audit_sink(audit_log_file)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
