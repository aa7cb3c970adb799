"""
Tests for the caller side (Remote) against a Receiver over memory channels.

Tests cover:
- Single values and streams
- Remote command failures and missing commands
- Stop messages on early exit and cancellation
- Correlation ids
- Closing the remote and the connection
- Unmatched and invalid notifications
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from crosslink.core.channel import Connection, create_channel_pair
from crosslink.core.errors import (
    ChannelClosed,
    CommandNotFoundError,
    RemoteCallError,
    RemoteClosedError,
    RemoteError,
    RemoteErrorCode,
)
from crosslink.core.ids import incrementing_id_generator
from crosslink.core.message import APP_NAME, Message
from crosslink.core.receiver import Receiver
from crosslink.core.remote import Remote, wrap


class MathService:
    """Target used on the exposer side."""

    version = "1.0"

    def __init__(self):
        self.stopped = []

    def add(self, a, b):
        return a + b

    async def slow_add(self, a, b):
        await asyncio.sleep(0.01)
        return a + b

    def letters(self):
        yield from "abc"

    async def count(self, n):
        for i in range(n):
            yield i

    async def forever(self):
        i = 0
        try:
            while True:
                yield i
                i += 1
                await asyncio.sleep(0.001)
        finally:
            self.stopped.append("forever")

    async def wait_forever(self):
        try:
            await asyncio.Event().wait()
        finally:
            self.stopped.append("wait_forever")

    async def empty(self):
        return
        yield

    def fail(self):
        raise ValueError("Intentional error")

    def _private(self):
        return "secret"


class RecordingConnection(Connection):
    """Connection wrapper that records every outbound message."""

    def __init__(self, inner: Connection):
        self.inner = inner
        self.sent = []

    @property
    def closed(self):
        return self.inner.closed

    async def send(self, message):
        self.sent.append(message)
        await self.inner.send(message)

    def observe(self):
        return self.inner.observe()

    async def close(self):
        await self.inner.close()

    def kinds(self, kind):
        return [m for m in self.sent if m.kind == kind]


class FailingConnection(Connection):
    """Connection whose sends always fail."""

    closed = False

    async def send(self, message):
        raise ChannelClosed("broken pipe")

    async def observe(self):
        await asyncio.Event().wait()
        yield

    async def close(self):
        pass


class RemoteTestBase:
    """Wires a Remote to a Receiver serving MathService."""

    def setup_method(self):
        self.service = MathService()
        self.remote = None
        self.receiver = None

    def connect(self, **options):
        caller, callee = create_channel_pair()
        self.callee = callee
        self.recording = RecordingConnection(caller)
        self.receiver = Receiver(callee, self.service)
        self.receiver.start()
        self.remote = Remote(self.recording, **options)
        return self.remote

    async def shutdown(self):
        await self.remote.close()
        await self.receiver.close()


class TestSingleValue(RemoteTestBase):
    """Test awaiting one value."""

    @pytest.mark.asyncio
    async def test_plain_value(self):
        remote = self.connect()
        assert await remote.call.add(2, 3) == 5
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_async_value(self):
        remote = self.connect()
        assert await remote.call.slow_add(2, 3) == 5
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_attribute_value(self):
        remote = self.connect()
        assert await remote.call_once("version") == "1.0"
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_first_value_of_stream(self):
        remote = self.connect()
        assert await remote.call.count(3) == 0
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_empty_stream_is_an_error(self):
        remote = self.connect()
        with pytest.raises(RemoteCallError, match="without a value"):
            await remote.call.empty()
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_calls(self):
        remote = self.connect()
        results = await asyncio.gather(*(remote.call.slow_add(i, i) for i in range(10)))
        assert results == [i * 2 for i in range(10)]
        await self.shutdown()


class TestStreaming(RemoteTestBase):
    """Test iterating streams."""

    @pytest.mark.asyncio
    async def test_async_generator(self):
        remote = self.connect()
        values = [v async for v in remote.stream.count(3)]
        assert values == [0, 1, 2]
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_sync_generator(self):
        remote = self.connect()
        values = [v async for v in remote.stream.letters()]
        assert values == ["a", "b", "c"]
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_plain_value_is_one_element_stream(self):
        remote = self.connect()
        values = [v async for v in remote.stream.add(2, 3)]
        assert values == [5]
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_nothing_sent_before_iteration(self):
        remote = self.connect()
        stream = remote.stream.count(3)
        await asyncio.sleep(0.01)
        assert self.recording.sent == []
        await stream.aclose()
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_interleaved_streams(self):
        remote = self.connect()
        first = remote.call_stream("count", 3)
        second = remote.call_stream("letters")

        assert await first.__anext__() == 0
        assert await second.__anext__() == "a"
        assert await first.__anext__() == 1
        assert [v async for v in second] == ["b", "c"]
        assert [v async for v in first] == [2]
        await self.shutdown()


class TestErrors(RemoteTestBase):
    """Test failures crossing the channel."""

    @pytest.mark.asyncio
    async def test_remote_exception(self):
        remote = self.connect()
        with pytest.raises(RemoteCallError) as exc:
            await remote.call.fail()

        assert exc.value.error_type == "ValueError"
        assert "Intentional error" in str(exc.value)
        assert "Traceback" in exc.value.remote_traceback
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_stream_error(self):
        remote = self.connect()
        with pytest.raises(RemoteCallError):
            async for _ in remote.stream.fail():
                pass
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_command_not_found(self):
        remote = self.connect()
        with pytest.raises(CommandNotFoundError):
            await remote.call.missing()
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_private_command(self):
        remote = self.connect()
        with pytest.raises(CommandNotFoundError):
            await remote.call_once("_private")
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_non_string_command(self):
        remote = self.connect()
        with pytest.raises(TypeError):
            await remote.call_once(123)
        assert self.recording.sent == []
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_empty_command(self):
        remote = self.connect()
        with pytest.raises(ValueError):
            await remote.call_once("")
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_send_failure_propagates(self):
        remote = Remote(FailingConnection())
        with pytest.raises(ChannelClosed):
            await remote.call.add(1, 2)
        assert remote.open_calls == 0
        await remote.close()

    @pytest.mark.asyncio
    async def test_invalid_notification_kind(self):
        """A notification of unknown kind fails the call as invalid-message."""
        caller, callee = create_channel_pair()
        remote = Remote(caller)
        task = asyncio.create_task(remote.call.add(1, 2))

        inbound = callee.observe()
        start = await asyncio.wait_for(inbound.__anext__(), 1)
        await callee.send(Message(id=start.id, kind="X"))

        with pytest.raises(RemoteError) as exc:
            await asyncio.wait_for(task, 1)
        assert exc.value.code is RemoteErrorCode.INVALID_MESSAGE
        assert not exc.value.retryable

        await inbound.aclose()
        await remote.close()


class TestStop(RemoteTestBase):
    """Test Stop messages."""

    @pytest.mark.asyncio
    async def test_early_exit_sends_one_stop(self):
        remote = self.connect()
        stream = remote.stream.forever()
        assert await stream.__anext__() == 0
        assert await stream.__anext__() == 1
        await stream.aclose()
        await stream.aclose()

        stops = self.recording.kinds("U")
        starts = self.recording.kinds("S")
        assert len(stops) == 1
        assert stops[0].id == starts[0].id

        await asyncio.sleep(0.05)
        assert self.service.stopped == ["forever"]
        assert self.receiver.active_calls == 0
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_completed_stream_sends_no_stop(self):
        remote = self.connect()
        stream = remote.stream.count(2)
        assert [v async for v in stream] == [0, 1]
        await stream.aclose()
        assert self.recording.kinds("U") == []
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_failed_call_sends_no_stop(self):
        remote = self.connect()
        with pytest.raises(RemoteCallError):
            await remote.call.fail()
        assert self.recording.kinds("U") == []
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_cancelling_awaiting_task_sends_stop(self):
        remote = self.connect()
        task = asyncio.create_task(remote.call.wait_forever())
        await asyncio.sleep(0.02)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(self.recording.kinds("U")) == 1
        await asyncio.sleep(0.05)
        assert self.service.stopped == ["wait_forever"]
        assert remote.metrics.snapshot().calls_cancelled == 1
        await self.shutdown()


class TestCorrelationIds(RemoteTestBase):
    """Test id generation per call."""

    @pytest.mark.asyncio
    async def test_each_call_gets_fresh_id(self):
        remote = self.connect()
        await asyncio.gather(*(remote.call.add(i, 1) for i in range(20)))

        ids = [m.id for m in self.recording.kinds("S")]
        assert len(ids) == 20
        assert len(set(ids)) == 20
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_custom_generator(self):
        remote = self.connect(generate_id=incrementing_id_generator())
        await remote.call.add(1, 1)
        await remote.call.add(2, 2)
        assert [m.id for m in self.recording.kinds("S")] == [0, 1]
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_colliding_id_is_rejected(self):
        remote = self.connect(generate_id=lambda: "same")
        task = asyncio.create_task(remote.call.wait_forever())
        await asyncio.sleep(0.01)

        with pytest.raises(RemoteError) as exc:
            await remote.call.add(1, 2)
        assert exc.value.code is RemoteErrorCode.INVALID_MESSAGE

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await self.shutdown()


class TestProxies(RemoteTestBase):
    """Test attribute-based proxies."""

    def test_attribute_access_sends_nothing(self):
        caller, _ = create_channel_pair()
        recording = RecordingConnection(caller)
        remote = Remote(recording)

        method = remote.call.add
        stream_method = remote.stream.count
        assert method.__name__ == "add"
        assert stream_method.__name__ == "count"
        assert recording.sent == []

    def test_dunder_attributes_are_not_proxied(self):
        caller, _ = create_channel_pair()
        remote = wrap(caller)
        with pytest.raises(AttributeError):
            remote.call.__wrapped__
        with pytest.raises(AttributeError):
            remote.stream.__aiter__


class TestClose(RemoteTestBase):
    """Test closing the remote and its connection."""

    @pytest.mark.asyncio
    async def test_close_fails_outstanding_calls(self):
        remote = self.connect()
        task = asyncio.create_task(remote.call.wait_forever())
        await asyncio.sleep(0.01)

        await remote.close()
        with pytest.raises(RemoteClosedError):
            await asyncio.wait_for(task, 1)
        assert remote.open_calls == 0
        await self.receiver.close()

    @pytest.mark.asyncio
    async def test_calls_after_close_fail(self):
        remote = self.connect()
        await remote.close()
        await remote.close()

        with pytest.raises(RemoteClosedError):
            await remote.call.add(1, 2)
        await self.receiver.close()

    @pytest.mark.asyncio
    async def test_inbound_end_fails_outstanding_calls(self):
        remote = self.connect()
        task = asyncio.create_task(remote.call.wait_forever())
        await asyncio.sleep(0.01)

        await self.callee.close()
        with pytest.raises(RemoteClosedError):
            await asyncio.wait_for(task, 1)
        assert remote.closed
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_context_manager(self):
        caller, callee = create_channel_pair()
        async with Receiver(callee, MathService()):
            async with Remote(caller) as remote:
                assert await remote.call.add(1, 1) == 2
            assert remote.closed


class TestUnmatchedMessages(RemoteTestBase):
    """Test that stray inbound traffic is ignored."""

    @pytest.mark.asyncio
    async def test_unknown_ids_and_garbage_are_ignored(self):
        remote = self.connect()
        await self.callee.send(Message.create_next("nobody", 1))
        await self.callee.send("garbage")
        await self.callee.send({"app": "other_app", "id": "x", "kind": "N"})
        await self.callee.send(Message.create_start("x", "add", [1, 2]))

        assert await remote.call.add(2, 2) == 4
        assert remote.open_calls == 0
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_unhashable_id_keeps_remote_open(self):
        remote = self.connect()
        assert await remote.call.add(1, 1) == 2

        await self.callee.send({"app": APP_NAME, "id": [1], "kind": "N", "value": 0})
        await self.callee.send({"app": APP_NAME, "id": {"a": 1}, "kind": "C"})
        await asyncio.sleep(0.01)

        assert not remote.closed
        assert await remote.call.add(2, 3) == 5
        await self.shutdown()


class TestMetrics(RemoteTestBase):
    """Test metrics collected by the remote."""

    @pytest.mark.asyncio
    async def test_outcomes_are_counted(self):
        remote = self.connect()
        await remote.call.add(1, 2)
        with pytest.raises(RemoteCallError):
            await remote.call.fail()

        snapshot = remote.metrics.snapshot()
        assert snapshot.calls_total == 2
        assert snapshot.calls_success == 1
        assert snapshot.calls_failed == 1
        assert snapshot.inflight == 0
        await self.shutdown()

    @pytest.mark.asyncio
    async def test_metrics_disabled(self):
        remote = self.connect(enable_metrics=False)
        assert remote.metrics is None
        assert await remote.call.add(1, 2) == 3
        await self.shutdown()
