"""Structured logging configuration.

Payment handling logs carry the intent and provider context as ``extra``
fields so a single confirmation can be followed across webhook, poll and
sweep processing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

# LogRecord attributes promoted to top-level JSON keys when present
CONTEXT_FIELDS = (
    "intent_id",
    "internal_reference",
    "external_reference",
    "provider",
    "loan_id",
    "payment_id",
    "outcome",
)


class JSONFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that keeps payment context at the top level."""

    def __init__(self) -> None:
        super().__init__("%(message)s", json_default=str)

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        # extras arrive merged; context passed as None is dropped
        for name in CONTEXT_FIELDS:
            if name in log_record and log_record[name] is None:
                del log_record[name]


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    logger_name: str = "loan_engine",
) -> logging.Logger:
    """Configure the package logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit one JSON object per line instead of plain text
        logger_name: Root of the logger hierarchy to configure

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates on reconfiguration
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger
