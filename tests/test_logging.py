"""Tests for structured logging.

Test Strategy:
1. JSON lines carry the correlation and sync run ids from context
2. Fields passed through extra= are nested under "extra"
3. The sync run id only appears inside a run
"""
import json
import logging

from app.core.logging import (
    ColoredFormatter, JSONFormatter, clear_correlation_id, set_correlation_id, sync_run_context
)


def make_record(message: str = "device synced", **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.services.sync", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_includes_context_ids(self):
        token = set_correlation_id("req-1")
        try:
            with sync_run_context("run-1"):
                line = json.loads(JSONFormatter().format(make_record()))
        finally:
            clear_correlation_id(token)

        assert line["message"] == "device synced"
        assert line["level"] == "INFO"
        assert line["correlation_id"] == "req-1"
        assert line["sync_run_id"] == "run-1"

    def test_no_run_id_outside_run(self):
        line = json.loads(JSONFormatter().format(make_record()))

        assert "sync_run_id" not in line
        assert "extra" not in line

    def test_extra_fields_nested(self):
        line = json.loads(JSONFormatter().format(make_record(status=202, elapsed_ms=3.5)))

        assert line["extra"] == {"status": 202, "elapsed_ms": 3.5}


class TestColoredFormatter:

    def test_appends_run_id(self):
        with sync_run_context("run-9"):
            line = ColoredFormatter().format(make_record())

        assert "device synced" in line
        assert line.endswith("sync_run_id=run-9")
