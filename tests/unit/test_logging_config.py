"""Unit tests for structured JSON logging."""

import json
import logging
import sys

from shared.logging_config import JSONFormatter


def _record(message="Pulled 3 change(s)", **extra):
    record = logging.LogRecord(
        name="agent.services.gcal_pull_service",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter output."""

    def test_base_fields(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "agent.services.gcal_pull_service"
        assert data["message"] == "Pulled 3 change(s)"
        assert "timestamp" in data

    def test_sync_context_fields_included(self):
        record = _record(source_id="src-1", calendar_id="primary", event_id="evt-1")

        data = json.loads(JSONFormatter().format(record))

        assert data["source_id"] == "src-1"
        assert data["calendar_id"] == "primary"
        assert data["event_id"] == "evt-1"
        assert "channel_id" not in data

    def test_exception_included(self):
        try:
            raise RuntimeError("listing failed")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: listing failed" in data["exception"]
