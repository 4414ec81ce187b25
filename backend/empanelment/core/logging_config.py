"""Structured logging configuration.

JSON-formatted logs suitable for ELK, CloudWatch or any JSON-based log
aggregation system. Every record carries:
- ISO8601 timestamp
- Log level and logger name
- Event type (for filtering)
- Service metadata

Audit chain events (writes, verification runs, alerts) are tagged so that
RTI/CAG reviewers can pull them out of the general application stream.
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

from empanelment.core.config import settings


# Log directory for file-based shipping
LOG_DIR = Path("/var/log/empanelment")


class SIEMJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with the fields log shippers expect.

    - @timestamp: ISO8601 timestamp (ELK compatible)
    - level: Log level
    - service: Service name, version and environment
    - event_type: For filtering
    """

    def __init__(self, *args, **kwargs):
        super().__init__(
            *args,
            fmt='%(asctime)s %(levelname)s %(name)s %(message)s',
            rename_fields={
                'asctime': '@timestamp',
                'levelname': 'level',
                'name': 'logger',
            },
            **kwargs
        )

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['@timestamp'] = datetime.now(timezone.utc).isoformat()

        log_record['service'] = {
            'name': settings.APP_NAME,
            'version': settings.APP_VERSION,
            'environment': settings.ENVIRONMENT,
        }

        if 'level' in log_record:
            log_record['level'] = log_record['level'].upper()

        if 'event_type' not in log_record:
            log_record['event_type'] = f"log.{record.name}"

        log_record['source'] = {
            'file': record.pathname,
            'line': record.lineno,
            'function': record.funcName,
        }


class AuditEventFilter(logging.Filter):
    """Tag records that belong to the audit trail.

    Adds 'is_audit_event' so handlers can route them separately.
    """

    AUDIT_LOGGERS = {
        'empanelment.audit',
        'empanelment.scheduler',
    }

    AUDIT_EVENT_PREFIXES = ('audit.', 'alert.')

    def filter(self, record: logging.LogRecord) -> bool:
        is_audit_logger = any(
            record.name.startswith(logger)
            for logger in self.AUDIT_LOGGERS
        )
        event_type = getattr(record, 'event_type', '')
        has_audit_event_type = isinstance(event_type, str) and event_type.startswith(
            self.AUDIT_EVENT_PREFIXES
        )

        record.is_audit_event = is_audit_logger or has_audit_event_type
        return True  # Always allow through


class _AuditOnlyFilter(logging.Filter):
    """Filter that only allows audit events."""

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, 'is_audit_event', False)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured logging for the application.

    Sets up:
    1. Console handler with JSON formatting
    2. Rotating file handlers (if the log directory exists)
    3. Audit event tagging

    Call this at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    json_formatter = SIEMJsonFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(json_formatter)
    console_handler.addFilter(AuditEventFilter())
    root_logger.addHandler(console_handler)

    if LOG_DIR.exists():
        _setup_file_handlers(json_formatter)

    _configure_uvicorn_loggers(json_formatter)

    logging.info(
        "Logging configured",
        extra={
            "event_type": "system.startup.logging_configured",
            "log_level": logging.getLevelName(level),
            "file_logging": LOG_DIR.exists(),
        }
    )


def _setup_file_handlers(formatter: logging.Formatter) -> None:
    """Set up rotating file handlers for application and audit logs."""
    root_logger = logging.getLogger()

    # Application logs - rotated daily, keep 30 days
    app_handler = logging.handlers.TimedRotatingFileHandler(
        LOG_DIR / "application.log",
        when="midnight",
        interval=1,
        backupCount=30,
        encoding="utf-8",
    )
    app_handler.setFormatter(formatter)
    app_handler.addFilter(AuditEventFilter())
    root_logger.addHandler(app_handler)

    # Audit trail logs - kept for the retention period
    audit_handler = logging.handlers.TimedRotatingFileHandler(
        LOG_DIR / "audit.log",
        when="midnight",
        interval=1,
        backupCount=2555,  # ~7 years
        encoding="utf-8",
    )
    audit_handler.setFormatter(formatter)
    audit_handler.addFilter(AuditEventFilter())
    audit_handler.addFilter(_AuditOnlyFilter())
    root_logger.addHandler(audit_handler)


def _configure_uvicorn_loggers(formatter: logging.Formatter) -> None:
    """Configure uvicorn loggers to use JSON format."""
    for logger_name in ['uvicorn', 'uvicorn.error', 'uvicorn.access']:
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
