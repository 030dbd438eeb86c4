"""Tests for structured JSON event logger."""

import io
import json
from unittest.mock import patch

import pytest

from cli.structured_log import StructuredEventLogger


@pytest.fixture
def buf() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(buf: io.StringIO) -> StructuredEventLogger:
    return StructuredEventLogger("run42", enabled=True, stream=buf)


class TestEmit:
    """Basic event emission and format."""

    def test_run_start_json(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.run_start(goal="Scan NIFTY", max_steps=10, live=False)
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "run_start"
        assert record["run_id"] == "run42"
        assert record["goal"] == "Scan NIFTY"
        assert record["live"] is False
        assert "ts" in record

    def test_step(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.step(2, "market.quote", True, "Quote retrieved for 13")
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "step"
        assert record["step"] == 2
        assert record["tool"] == "market.quote"
        assert record["ok"] is True

    def test_order_submitted(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.order_submitted("orders.place_bracket", "PAPER_1", "BRACKET_SIMULATED", True)
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "order_submitted"
        assert record["order_id"] == "PAPER_1"
        assert record["paper"] is True

    def test_order_rejected(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.order_rejected("orders.place", "Max concurrent positions reached (2)")
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "order_rejected"
        assert record["reason"] == "Max concurrent positions reached (2)"

    def test_critical_failure(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.critical_failure(3, "market.quote", "quote: 401 Unauthorized")
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "critical_failure"
        assert record["step"] == 3

    def test_market_closed(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.market_closed(next_open="2026-03-09T09:15:00+05:30", wait_hours=61.25)
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "market_closed"
        assert record["wait_hours"] == 61.2

    def test_run_complete(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.run_complete(True, 3, "stop_condition")
        record = json.loads(buf.getvalue().strip())
        assert record["steps_taken"] == 3
        assert record["stop_reason"] == "stop_condition"

    def test_error_event(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.error("run failed", detail="LLM error 500")
        record = json.loads(buf.getvalue().strip())
        assert record["event"] == "error"
        assert record["detail"] == "LLM error 500"


class TestDisabled:
    """When disabled, nothing is written but records are still returned."""

    def test_no_output_when_disabled(self, buf: io.StringIO) -> None:
        lg = StructuredEventLogger("run42", enabled=False, stream=buf)
        record = lg.step(1, "positions.list", True, "ok")
        assert buf.getvalue() == ""
        assert record["event"] == "step"


class TestMultipleEvents:
    def test_newline_delimited(self, logger: StructuredEventLogger, buf: io.StringIO) -> None:
        logger.run_start("g", 2, False)
        logger.step(1, "positions.list", True, "ok")
        logger.run_complete(True, 1, "stop_condition")
        lines = buf.getvalue().strip().split("\n")
        assert [json.loads(x)["event"] for x in lines] == ["run_start", "step", "run_complete"]


class TestWebhook:
    """Only trade-level events are posted, and a failed POST never raises."""

    def test_alert_events_are_posted(self, buf: io.StringIO) -> None:
        lg = StructuredEventLogger("run42", webhook_url=" https://hooks.example/x ", stream=buf)
        with patch("urllib.request.urlopen") as urlopen:
            lg.step(1, "positions.list", True, "ok")
            lg.order_rejected("orders.place", "Kill switch is ON - all trading disabled")
        assert urlopen.call_count == 1
        request = urlopen.call_args.args[0]
        assert request.full_url == "https://hooks.example/x"
        assert json.loads(request.data)["event"] == "order_rejected"

    def test_webhook_failure_is_logged(self, buf: io.StringIO, caplog: pytest.LogCaptureFixture) -> None:
        lg = StructuredEventLogger("run42", webhook_url="https://hooks.example/x", stream=buf)
        with patch("urllib.request.urlopen", side_effect=OSError("no route")):
            lg.error("boom")
        assert "Webhook POST failed" in caplog.text
        assert json.loads(buf.getvalue())["event"] == "error"
