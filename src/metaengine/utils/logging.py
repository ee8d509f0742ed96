"""Structured logging for the analysis engine.

Records are written to stderr so the CLI can keep stdout for results.
Analysis context passed through ``extra=`` (operation, job id, study id,
number of studies, estimator) is lifted into the JSON payload.
"""

import json
import logging
import sys
from typing import Any, Dict

from ..config.settings import settings

CONTEXT_FIELDS = ("operation", "job_id", "study_id", "k", "method", "error_kind")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    return handler


def get_logger(name: str) -> logging.Logger:
    """Return a module logger configured from engine settings.

    Handlers are attached once per logger; repeated calls are cheap.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(_build_handler())
        logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
