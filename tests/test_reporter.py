"""Tests for the periodic status reporter."""

import logging
from unittest.mock import MagicMock

import pytest
import schedule as schedule_lib

from chatrelay.monitor.reporter import StatusReporter, _parse_schedule


class TestParseSchedule:
    def test_every_n_seconds(self):
        assert _parse_schedule(schedule_lib.Scheduler(), "every 30 seconds") is not None

    def test_every_n_minutes(self):
        assert _parse_schedule(schedule_lib.Scheduler(), "every 5 minutes") is not None

    def test_every_1_hour(self):
        assert _parse_schedule(schedule_lib.Scheduler(), "every 1 hour") is not None

    def test_case_insensitive(self):
        assert _parse_schedule(schedule_lib.Scheduler(), "Every 10 Seconds") is not None

    def test_invalid_expression(self):
        assert _parse_schedule(schedule_lib.Scheduler(), "run at noon") is None

    def test_zero_interval(self):
        assert _parse_schedule(schedule_lib.Scheduler(), "every 0 minutes") is None

    def test_unknown_unit(self):
        assert _parse_schedule(schedule_lib.Scheduler(), "every 2 fortnights") is None


def _registry(snapshot):
    registry = MagicMock()
    registry.snapshot.return_value = snapshot
    return registry


class TestStatusReporter:
    def test_invalid_schedule_rejected(self):
        with pytest.raises(ValueError):
            StatusReporter(_registry({}), "whenever")

    def test_fire_logs_each_session(self, caplog):
        snapshot = {"UC1": {"state": "polling", "subscribers": 2, "feed": "v1"}}
        reporter = StatusReporter(_registry(snapshot), "every 1 minutes")

        with caplog.at_level(logging.INFO, logger="chatrelay.monitor.reporter"):
            reporter._fire()

        assert "UC1" in caplog.text
        assert "polling" in caplog.text

    def test_fire_with_no_sessions(self, caplog):
        reporter = StatusReporter(_registry({}), "every 1 minutes")
        with caplog.at_level(logging.INFO, logger="chatrelay.monitor.reporter"):
            reporter._fire()
        assert "No active sessions" in caplog.text

    def test_fire_calls_on_report(self):
        snapshot = {"UC1": {"state": "rotating", "subscribers": 1, "feed": None}}
        on_report = MagicMock()
        reporter = StatusReporter(_registry(snapshot), "every 1 minutes", on_report=on_report)

        reporter._fire()

        on_report.assert_called_once_with(snapshot)

    def test_fire_handles_exception(self):
        registry = MagicMock()
        registry.snapshot.side_effect = RuntimeError("boom")
        reporter = StatusReporter(registry, "every 1 minutes")

        # Should not raise
        reporter._fire()

    def test_start_and_stop(self):
        reporter = StatusReporter(_registry({}), "every 1 minutes")
        reporter.start(check_interval=0.1)
        assert reporter.is_running
        reporter.stop()
        assert not reporter.is_running

    def test_start_idempotent(self):
        reporter = StatusReporter(_registry({}), "every 1 minutes")
        reporter.start(check_interval=0.1)
        reporter.start(check_interval=0.1)  # Should not spawn a second thread
        assert reporter.is_running
        reporter.stop()
