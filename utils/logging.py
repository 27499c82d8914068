"""
Logging helpers for the bulk-job engine.

Provides:
    - StructuredFormatter: JSON formatter for machine-parseable log output.
    - configure_logging: Root logger setup used by the API lifespan.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

STRUCTURED_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for machine-parseable log output.

    Each log record is serialised as a single JSON line containing at minimum:
        timestamp, level, logger, message.
    If the record carries a ``job_id`` attribute (set via ``extra={"job_id": ...}``),
    it is included so lines can be grouped per job.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "job_id"):
            log_entry["job_id"] = record.job_id
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "structured") -> None:
    """Replace root handlers with one stderr handler in the chosen format.

    ``fmt`` is ``"structured"`` (pipe-separated text) or ``"json"``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(STRUCTURED_FORMAT, datefmt=DATE_FORMAT))
    logging.basicConfig(level=numeric_level, handlers=[handler], force=True)

