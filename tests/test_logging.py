"""
Tests for structured logging.
"""
import json
import logging
import pytest

from src.shared.infrastructure.logging import REDACTED, CustomJsonFormatter, log_latency


def format_record(**extra) -> dict:
    formatter = CustomJsonFormatter("%(name)s %(levelname)s %(message)s", environment="test")
    record = logging.LogRecord("sla", logging.INFO, __file__, 1, "hello", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


class TestCustomJsonFormatter:

    @pytest.mark.unit
    def test_service_fields(self):
        data = format_record(correlation_id="corr-1")
        assert data["message"] == "hello"
        assert data["environment"] == "test"
        assert data["correlation_id"] == "corr-1"
        assert data["timestamp"].endswith("+00:00")

    @pytest.mark.unit
    def test_secrets_redacted(self):
        data = format_record(slack_webhook_url="https://hooks.slack.test/x", api_key="abc", ticket_id="INC-1")
        assert data["slack_webhook_url"] == REDACTED
        assert data["api_key"] == REDACTED
        assert data["ticket_id"] == "INC-1"


class TestLogLatency:

    @pytest.mark.unit
    def test_logs_operation(self, caplog):
        logger = logging.getLogger("tests.latency")
        with caplog.at_level(logging.INFO, logger="tests.latency"):
            with log_latency(logger, "sweep", sweep_id="s-1"):
                pass

        record = caplog.records[-1]
        assert record.getMessage() == "sweep completed"
        assert record.operation == "sweep"
        assert record.sweep_id == "s-1"
        assert record.latency_ms >= 0
