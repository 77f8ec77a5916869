"""
Unit Tests for structured logging and Sentry helpers

Tests:
- JSON log lines carry extra fields and exceptions
- Request context is attached to records
- Sensitive data is stripped before events leave the service
- Exceptions are captured with searchable tags

Run with: pytest backend/tests/test_logging_and_sentry.py -v
"""

import json
import logging
import sys
from unittest.mock import MagicMock, patch

from logging_config import JSONFormatter, RequestContextFilter
from sentry_integration import capture_exception, filter_sensitive_data, init_sentry


def _record(msg="hello", exc_info=None, **extra):
    record = logging.LogRecord(
        name="reconciliation.pipeline",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test the JSON log format."""

    def test_basic_fields(self):
        line = json.loads(JSONFormatter(service_name="recon-test").format(_record()))

        assert line["message"] == "hello"
        assert line["level"] == "INFO"
        assert line["logger"] == "reconciliation.pipeline"
        assert line["service"] == "recon-test"
        assert "extra" not in line

    def test_extra_fields(self):
        record = _record(session_id="s-1", match_id="m-1", actor=None)

        line = json.loads(JSONFormatter().format(record))

        assert line["extra"] == {"session_id": "s-1", "match_id": "m-1"}

    def test_exception_info(self):
        try:
            raise ValueError("bad amount")
        except ValueError:
            record = _record(exc_info=sys.exc_info())

        line = json.loads(JSONFormatter().format(record))

        assert line["exception"]["type"] == "ValueError"
        assert line["exception"]["message"] == "bad amount"


class TestRequestContextFilter:
    """Test request context propagation."""

    def test_sets_context(self):
        context = RequestContextFilter()
        context.set_request_context(request_id="req-1", actor="reviewer")
        record = _record()

        assert context.filter(record) is True
        assert record.request_id == "req-1"
        assert record.actor == "reviewer"

    def test_explicit_actor_wins(self):
        context = RequestContextFilter()
        context.set_request_context(request_id="req-1", actor="reviewer")
        record = _record(actor="system")

        context.filter(record)

        assert record.actor == "system"

    def test_clear(self):
        context = RequestContextFilter()
        context.set_request_context(request_id="req-1")
        context.clear_request_context()
        record = _record()

        context.filter(record)

        assert record.request_id is None


class TestSentry:
    """Test Sentry helpers without a DSN."""

    def test_init_without_dsn(self, monkeypatch):
        monkeypatch.delenv("SENTRY_DSN", raising=False)
        assert init_sentry(dsn=None) is False

    def test_filter_sensitive_data(self):
        event = {
            "request": {
                "headers": {"X-Internal-Api-Key": "k", "Accept": "application/json"},
                "data": {"description": "Payment from ABC Company"},
            },
            "extra": {"session_id": "s-1", "nested": {"counterparty": "ABC", "amount": "10.00"}},
        }

        filtered = filter_sensitive_data(event, {})

        assert filtered["request"]["headers"]["X-Internal-Api-Key"] == "[REDACTED]"
        assert filtered["request"]["headers"]["Accept"] == "application/json"
        assert filtered["request"]["data"] == "[REDACTED]"
        assert filtered["extra"]["session_id"] == "s-1"
        assert filtered["extra"]["nested"] == {"counterparty": "[REDACTED]", "amount": "10.00"}

    def test_capture_exception_with_tags(self):
        scope = MagicMock()
        scope_cm = MagicMock()
        scope_cm.__enter__.return_value = scope
        error = RuntimeError("store down")

        with patch("sentry_integration.sentry_sdk") as sdk:
            sdk.new_scope.return_value = scope_cm
            sdk.capture_exception.return_value = "event-1"

            event_id = capture_exception(error, tags={"session_id": "s-1"}, stage="pipeline")

        assert event_id == "event-1"
        scope.set_tag.assert_called_once_with("session_id", "s-1")
        scope.set_extra.assert_called_once_with("stage", "pipeline")
        sdk.capture_exception.assert_called_once_with(error)
