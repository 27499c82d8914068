"""Tests for utils/logging.py."""
import json
import logging

from catalog_jobs.utils.logging import StructuredFormatter, configure_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("catalog_jobs.test", logging.WARNING, __file__, 1, "lane %s stalled", ("bulk-price",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_emits_json_line():
    payload = json.loads(StructuredFormatter().format(_record()))
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "catalog_jobs.test"
    assert payload["message"] == "lane bulk-price stalled"
    assert "job_id" not in payload


def test_structured_formatter_includes_job_id():
    payload = json.loads(StructuredFormatter().format(_record(job_id="job_abc")))
    assert payload["job_id"] == "job_abc"


def test_configure_logging_json():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging("debug", "json")
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
