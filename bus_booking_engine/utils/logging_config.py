"""
Logging configuration for the Bus Booking Engine.

Application logs go to stdout (and optionally a rotating file). Order
lifecycle and security events are emitted on the ``bus_booking_engine.audit``
logger tree so they can be shipped separately.
"""

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from pathlib import Path

from ..config import get_settings

AUDIT_LOGGER = "bus_booking_engine.audit"
MASK = "***MASKED***"

_FILTERS = ["request_id", "sensitive_data"]


def _rotating_file(filename: str, level: str, formatter: str, backups: int = 5) -> Dict[str, Any]:
    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": formatter,
        "filename": filename,
        "maxBytes": 10 * 1024 * 1024,
        "backupCount": backups,
        "filters": _FILTERS,
    }


def _logger(level: str, handlers: List[str]) -> Dict[str, Any]:
    return {"level": level, "handlers": list(handlers), "propagate": False}


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_json_logging: bool = False,
) -> None:
    """
    Set up logging for the API process and the Celery workers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path; audit and error files are placed beside it
        enable_json_logging: Enable JSON formatted logs
    """
    settings = get_settings()
    formatter = "json" if enable_json_logging else "detailed"

    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": formatter,
            "stream": sys.stdout,
            "filters": _FILTERS,
        }
    }
    app_handlers = ["console"]
    audit_handlers = ["console"]

    if log_file:
        handlers["file"] = _rotating_file(log_file, log_level, formatter)
        handlers["audit_file"] = _rotating_file(log_file.replace(".log", "_audit.log"), "INFO", "json", backups=20)
        app_handlers.append("file")
        audit_handlers.append("audit_file")

    if settings.environment == "production":
        error_file = log_file.replace(".log", "_errors.log") if log_file else "logs/errors.log"
        handlers["error_file"] = _rotating_file(error_file, "ERROR", formatter, backups=10)
        app_handlers.append("error_file")

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": (
                    "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d "
                    "[%(request_id)s] %(message)s"
                ),
                "datefmt": "%Y-%m-%d %H:%M:%S"
            },
            "json": {
                "()": "bus_booking_engine.utils.logging_config.JSONFormatter",
            }
        },
        "filters": {
            "request_id": {
                "()": "bus_booking_engine.utils.logging_config.RequestIDFilter"
            },
            "sensitive_data": {
                "()": "bus_booking_engine.utils.logging_config.SensitiveDataFilter"
            }
        },
        "handlers": handlers,
        "loggers": {
            "bus_booking_engine": _logger(log_level, app_handlers),
            AUDIT_LOGGER: _logger("INFO", audit_handlers),
            "uvicorn": _logger("INFO", app_handlers),
            "uvicorn.access": _logger("INFO", app_handlers),
            "sqlalchemy.engine": _logger("WARNING", app_handlers),
            "celery": _logger("INFO", app_handlers),
            # Gateway HTTP traffic carries signed payloads
            "httpx": _logger("WARNING", app_handlers),
        },
        "root": {
            "level": log_level,
            "handlers": app_handlers
        }
    }

    logging.config.dictConfig(config)


class RequestIDFilter(logging.Filter):
    """Attach the current request id; worker and sweeper records get "no-request-id"."""

    def filter(self, record):
        if not getattr(record, "request_id", None):
            from bus_booking_engine.middleware.logging import request_id_var
            record.request_id = request_id_var.get()
        return True


class SensitiveDataFilter(logging.Filter):
    """Mask gateway signatures, credentials and check-in tokens in log records."""

    SENSITIVE_KEYS = (
        "token", "secret", "signature", "securehash", "mac", "key1", "key2",
        "access_key", "accesskey", "authorization", "cookie",
    )

    # HMAC-SHA256/512 digests as hex
    DIGEST_PATTERN = re.compile(r"\b[A-Fa-f0-9]{64,}\b")

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = self.DIGEST_PATTERN.sub(MASK, record.msg)

        for key, value in list(record.__dict__.items()):
            if isinstance(value, dict):
                setattr(record, key, self._sanitize(value))

        return True

    def _is_sensitive(self, key: Any) -> bool:
        lowered = str(key).lower()
        return any(sensitive in lowered for sensitive in self.SENSITIVE_KEYS)

    def _sanitize(self, data):
        if isinstance(data, dict):
            return {
                key: MASK if self._is_sensitive(key) else self._sanitize(value)
                for key, value in data.items()
            }
        elif isinstance(data, str):
            return self.DIGEST_PATTERN.sub(MASK, data)
        elif isinstance(data, (list, tuple)):
            return type(data)(self._sanitize(item) for item in data)
        return data


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra`` fields nested under "extra"."""

    RESERVED_ATTRS = {
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "lineno", "funcName", "created",
        "msecs", "relativeCreated", "thread", "threadName", "taskName",
        "processName", "process", "getMessage", "exc_info",
        "exc_text", "stack_info", "request_id", "message", "asctime"
    }

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in self.RESERVED_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def log_business_event(event_type: str, details: Dict[str, Any], order_id: Optional[str] = None):
    """Record an order lifecycle event on the audit log."""
    logging.getLogger(f"{AUDIT_LOGGER}.orders").info(
        f"Order event: {event_type}",
        extra={
            "event_type": event_type,
            "order_id": order_id,
            "event_details": details,
        }
    )


def log_security_event(event_type: str, details: Dict[str, Any], severity: str = "WARNING"):
    """Record a rejected callback or check-in attempt on the audit log."""
    logger = logging.getLogger(f"{AUDIT_LOGGER}.security")
    logger.log(
        logging.getLevelName(severity.upper()),
        f"Security event: {event_type}",
        extra={
            "event_type": event_type,
            "severity": severity,
            "event_details": details,
        }
    )
