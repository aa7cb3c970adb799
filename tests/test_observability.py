"""
Tests for metrics and structured logging features.
"""

import asyncio
import contextlib
import io
import json
import os
import sys
import time

import pytest

# Add src to path for testing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from crosslink.core.channel import create_channel_pair
from crosslink.core.lock import LockDomain
from crosslink.core.logging import (
    LogEntry,
    LogEvent,
    LogLevel,
    StructuredLogger,
    default_json_handler,
    default_pretty_handler,
)
from crosslink.core.metrics import Metrics
from crosslink.core.receiver import Receiver
from crosslink.core.remote import Remote


class TestMetrics:
    """Test metrics collection."""

    def test_metrics_creation(self):
        metrics = Metrics()
        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 0
        assert snapshot.calls_success == 0
        assert snapshot.calls_failed == 0

    def test_record_call_success(self):
        """Test recording successful calls."""
        metrics = Metrics()

        start = metrics.start_call()
        time.sleep(0.01)  # 10ms
        latency = metrics.end_call(start, success=True)

        assert latency > 0

        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 1
        assert snapshot.calls_success == 1
        assert snapshot.calls_failed == 0
        assert snapshot.latency_avg_ms > 0

    def test_record_call_failure(self):
        metrics = Metrics()

        start = metrics.start_call()
        metrics.end_call(start, success=False)

        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 1
        assert snapshot.calls_success == 0
        assert snapshot.calls_failed == 1

    def test_cancelled_calls_have_no_latency(self):
        metrics = Metrics()

        start = metrics.start_call()
        metrics.end_call(start, success=True, cancelled=True)

        snapshot = metrics.snapshot()
        assert snapshot.calls_cancelled == 1
        assert snapshot.calls_success == 0
        assert snapshot.latency_max_ms == 0.0

    def test_latency_percentiles(self):
        """Test latency percentile calculations."""
        metrics = Metrics(max_latency_samples=100)

        for i in range(10):
            start = metrics.start_call()
            time.sleep(0.005 * (i + 1))  # 5ms, 10ms, 15ms, etc.
            metrics.end_call(start, success=True)

        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 10
        assert snapshot.latency_min_ms < snapshot.latency_p50_ms
        assert snapshot.latency_p50_ms < snapshot.latency_p95_ms
        assert snapshot.latency_p95_ms <= snapshot.latency_max_ms

    def test_inflight_tracking(self):
        metrics = Metrics()

        s1 = metrics.start_call()
        s2 = metrics.start_call()
        s3 = metrics.start_call()

        snapshot = metrics.snapshot()
        assert snapshot.inflight == 3
        assert snapshot.inflight_max == 3

        metrics.end_call(s1)
        metrics.end_call(s2)

        snapshot = metrics.snapshot()
        assert snapshot.inflight == 1
        assert snapshot.inflight_max == 3  # Max stays at 3

        metrics.end_call(s3)
        assert metrics.snapshot().inflight == 0

    def test_metrics_to_dict(self):
        metrics = Metrics()

        start = metrics.start_call()
        metrics.end_call(start, success=True)
        metrics.record_retry()

        data = metrics.to_dict()

        assert set(data) == {"calls", "latency_ms", "inflight"}
        assert data["calls"]["total"] == 1
        assert data["calls"]["success"] == 1
        assert data["calls"]["retries"] == 1
        assert data["calls"]["error_rate"] == 0.0

    def test_metrics_reset(self):
        metrics = Metrics()

        start = metrics.start_call()
        metrics.end_call(start, success=False)
        metrics.record_retry()

        metrics.reset()

        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 0
        assert snapshot.retries == 0


class TestStructuredLogger:
    """Test structured logging."""

    def test_logger_creation(self):
        entries = []
        logger = StructuredLogger(handler=lambda e: entries.append(e), component="remote")

        logger.info(LogEvent.REMOTE_CLOSE, "Closing remote")

        assert len(entries) == 1
        assert entries[0].event == "remote_close"
        assert entries[0].message == "Closing remote"
        assert entries[0].level == "info"
        assert entries[0].component == "remote"

    def test_log_levels(self):
        """Test different log levels."""
        entries = []
        logger = StructuredLogger(
            handler=lambda e: entries.append(e),
            level=LogLevel.WARN,  # Only warn and above
        )

        logger.debug(LogEvent.CALL_START, "Debug message")
        logger.info(LogEvent.CALL_START, "Info message")
        logger.warn(LogEvent.CALL_ERROR, "Warn message")
        logger.error(LogEvent.CALL_ERROR, "Error message")

        assert len(entries) == 2
        assert entries[0].level == "warn"
        assert entries[1].level == "error"

    def test_create_toggle(self):
        assert StructuredLogger.create().handler is None
        assert StructuredLogger.create(log=True).handler is default_pretty_handler

        handler = lambda e: None  # noqa: E731
        assert StructuredLogger.create(log=False, handler=handler).handler is handler

    def test_lock_events(self):
        entries = []
        logger = StructuredLogger(
            handler=entries.append, level=LogLevel.DEBUG, component="lock"
        )

        logger.lock_acquired("leader")
        logger.lock_released("leader")

        assert [e.event for e in entries] == ["lock_acquired", "lock_released"]
        assert entries[0].component == "lock"
        assert entries[0].lock_name == "leader"

    def test_ids_are_stringified(self):
        entries = []
        logger = StructuredLogger(handler=entries.append)

        logger.info(LogEvent.CALL_START, "x", call_id=7, key=("a", 1))

        assert entries[0].call_id == "7"
        assert entries[0].key == "('a', 1)"

    def test_log_entry_to_dict(self):
        entry = LogEntry(
            event="call_end",
            level="info",
            message="Completed add",
            call_id="abc",
            command="add",
            duration_ms=42.5,
            success=True,
        )

        data = entry.to_dict()

        assert data["event"] == "call_end"
        assert data["call_id"] == "abc"
        assert data["command"] == "add"
        assert data["duration_ms"] == 42.5
        assert data["success"] is True
        # None values should be omitted
        assert "error" not in data

    def test_log_entry_to_json(self):
        entry = LogEntry(
            event="call_start",
            level="debug",
            message="Calling add",
            call_id="abc",
            metadata={"when": object()},
        )

        data = json.loads(entry.to_json())

        assert data["event"] == "call_start"
        assert data["call_id"] == "abc"
        assert "object" in data["metadata"]["when"]

    def test_convenience_methods(self):
        entries = []
        logger = StructuredLogger(handler=entries.append, level=LogLevel.DEBUG)

        logger.call_start("c1", "add", (1, 2))
        assert entries[-1].event == "call_start"
        assert entries[-1].metadata == {"args": 2}

        logger.call_end("c1", "add", 15.5, success=True)
        assert entries[-1].event == "call_end"
        assert entries[-1].duration_ms == 15.5

        logger.call_end("c1", "add", 1.0, success=False, error=ValueError("bad"))
        assert entries[-1].event == "call_error"
        assert entries[-1].level == "warn"
        assert entries[-1].error_type == "ValueError"

        logger.call_retry("add", 2, ValueError("bad"))
        assert entries[-1].event == "call_retry"
        assert entries[-1].metadata == {"attempt": 2}

    def test_handler_exception_handling(self):
        """Handler exceptions don't break logging."""

        def bad_handler(entry):
            raise ValueError("Handler error")

        logger = StructuredLogger(handler=bad_handler)

        with contextlib.redirect_stdout(io.StringIO()) as out:
            logger.info(LogEvent.REMOTE_CLOSE, "Test")

        assert "Handler error" in out.getvalue()

    def test_default_handlers_print(self):
        entry = LogEntry(
            event="call_end",
            level="info",
            message="Completed add",
            call_id="abcdefghijk",
            command="add",
            duration_ms=3.0,
        )

        with contextlib.redirect_stdout(io.StringIO()) as out:
            default_json_handler(entry)
            default_pretty_handler(entry)

        json_line, pretty_line = out.getvalue().splitlines()
        assert json.loads(json_line)["command"] == "add"
        assert "id=abcdefgh " in pretty_line
        assert "cmd=add" in pretty_line
        assert "3.0ms" in pretty_line


class TestIntegration:
    """Logging and metrics wired through a Remote and a Receiver."""

    @pytest.mark.asyncio
    async def test_remote_and_receiver_log_calls(self):
        remote_entries = []
        receiver_entries = []

        caller, callee = create_channel_pair()

        class Service:
            def add(self, a, b):
                return a + b

        receiver = Receiver(
            callee,
            Service(),
            log_handler=receiver_entries.append,
            log_level=LogLevel.DEBUG,
        )
        receiver.start()
        remote = Remote(caller, log_handler=remote_entries.append, log_level=LogLevel.DEBUG)

        assert await remote.call.add(1, 2) == 3
        await asyncio.sleep(0.01)

        remote_events = [e.event for e in remote_entries]
        assert "call_start" in remote_events
        assert "call_end" in remote_events

        receiver_events = [e.event for e in receiver_entries]
        assert "receiver_start" in receiver_events
        assert "command_start" in receiver_events
        assert "command_end" in receiver_events

        await remote.close()
        await receiver.close()

    @pytest.mark.asyncio
    async def test_lock_domain_logging(self, tmp_path):
        entries = []
        domain = LockDomain(
            tmp_path, log_handler=entries.append, log_level=LogLevel.DEBUG
        )

        async with domain.hold("leader"):
            pass

        assert [e.event for e in entries] == ["lock_acquired", "lock_released"]
        assert {e.component for e in entries} == {"lock"}
