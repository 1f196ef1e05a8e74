"""
Structured Logging
==================

JSON-structured logging for the escalation service.

Every record carries a timestamp, the environment and, inside a request,
the correlation ID set by ``CorrelationIdMiddleware``. Gateway URLs and
credentials passed through ``extra`` are redacted.

Usage:
    from src.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Incident escalated", extra={"incident_id": incident.id, "level": 2})
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from pythonjsonlogger import jsonlogger

_environment = "unknown"

REDACTED = "***REDACTED***"
SENSITIVE_KEY_PARTS = ("password", "token", "api_key", "secret", "webhook_url", "gateway_url")

NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.ERROR,
    "sqlalchemy.engine": logging.WARNING,
    "apscheduler": logging.WARNING,
    "httpx": logging.WARNING,
    "watchdog": logging.WARNING,
}


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, environment and correlation_id."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        if hasattr(record, "correlation_id"):
            log_record["correlation_id"] = record.correlation_id
        log_record["environment"] = getattr(record, "environment", _environment)

        for key, value in list(log_record.items()):
            if isinstance(value, str) and any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
                log_record[key] = REDACTED


def setup_logging(level: str = "INFO", environment: str = "development") -> None:
    """
    Configure JSON logging on the root logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        environment: Environment name stamped on every record
    """
    global _environment
    _environment = environment

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    ))
    root_logger.addHandler(handler)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str) -> logging.Logger:
    """Module logger; call with ``__name__``."""
    return logging.getLogger(name)


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **extra_context: Any) -> Iterator[Dict[str, Any]]:
    """
    Log how long a block took.

    The yielded dict is merged into the log record, so the block can add
    its own results:

        with log_latency(logger, "escalation_sweep") as context:
            context.update(await sweep_service.sweep())
    """
    context: Dict[str, Any] = dict(extra_context)
    start = time.perf_counter()
    try:
        yield context
    finally:
        logger.info(
            f"{operation} completed",
            extra={
                "operation": operation,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                **context,
            },
        )
