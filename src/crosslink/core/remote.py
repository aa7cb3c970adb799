"""
Caller side of the call-correlation protocol.
"""

import asyncio
import time
from typing import Any, AsyncIterator, Dict, Optional

from .channel import Connection
from .errors import RemoteCallError, RemoteClosedError, RemoteError, RemoteErrorCode
from .ids import IdGenerator, string_id_generator
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger
from .message import APP_NAME, Message, NotificationKind, coerce_message, dematerialize
from .metrics import Metrics


def validate_command(command: Any) -> str:
    """Only plain, non-empty string commands can be proxied."""
    if not isinstance(command, str):
        raise TypeError(
            f"Only string commands can be called remotely, got {type(command).__name__}"
        )
    if not command:
        raise ValueError("Command name must not be empty")
    return command


class Remote:
    """
    Caller-side handle for a target exposed on the other side of a connection.

    Every call gets a fresh correlation id, sends a Start message and reads
    the notifications carrying that id. Leaving a call before its terminal
    notification sends exactly one Stop message.

    Usage:
        remote = Remote(connection)

        result = await remote.call.add(1, 2)

        async for value in remote.stream.count(3):
            print(value)

        await remote.close()
    """

    def __init__(
        self,
        connection: Connection,
        generate_id: Optional[IdGenerator] = None,
        log: bool = False,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
        enable_metrics: bool = True,
    ):
        self._connection = connection
        self._generate_id = generate_id or string_id_generator()
        self._logger = StructuredLogger.create(
            log=log, handler=log_handler, level=log_level, component="remote"
        )
        self.enable_metrics = enable_metrics
        self._metrics = Metrics() if enable_metrics else None

        # Open calls: correlation id -> queue of notifications
        self._calls: Dict[Any, asyncio.Queue] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

        self._call_proxy: Optional[CallProxy] = None
        self._stream_proxy: Optional[StreamProxy] = None

    @property
    def metrics(self) -> Optional[Metrics]:
        """Get the metrics collector."""
        return self._metrics

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def open_calls(self) -> int:
        """Number of calls still waiting for notifications."""
        return len(self._calls)

    @property
    def call(self) -> "CallProxy":
        """
        Awaitable proxy interface.

        Usage:
            result = await remote.call.my_function(1, 2)
        """
        if self._call_proxy is None:
            self._call_proxy = CallProxy(self)
        return self._call_proxy

    @property
    def stream(self) -> "StreamProxy":
        """
        Streaming proxy interface.

        Usage:
            async for value in remote.stream.my_function(1, 2):
                ...
        """
        if self._stream_proxy is None:
            self._stream_proxy = StreamProxy(self)
        return self._stream_proxy

    async def call_once(self, command: str, *args) -> Any:
        """
        Call a command and return its first value.

        Raises:
            RemoteCallError: The command failed or completed without a value
            RemoteError: Protocol or backend lifecycle failure
            RemoteClosedError: The remote was closed
        """
        stream = self._call(command, args)
        try:
            async for value in stream:
                return value
        finally:
            await stream.aclose()
        raise RemoteCallError(f"Command '{command}' completed without a value")

    def call_stream(self, command: str, *args) -> AsyncIterator[Any]:
        """
        Call a command and yield every value it emits.

        Nothing is sent until iteration starts. Closing the generator before
        the stream ends (``aclose()``, ``contextlib.aclosing`` or cancelling
        the consuming task) sends a Stop message.
        """
        return self._call(command, args)

    async def _call(self, command: str, args: tuple) -> AsyncIterator[Any]:
        validate_command(command)
        self._check_open()

        call_id = self._generate_id()
        if call_id in self._calls:
            raise RemoteError(
                RemoteErrorCode.INVALID_MESSAGE,
                f"Correlation id {call_id!r} is already in use",
            )

        queue: asyncio.Queue = asyncio.Queue()
        self._calls[call_id] = queue
        self._ensure_reader()

        start_time = self._metrics.start_call() if self._metrics else None
        started_at = time.perf_counter()
        self._logger.call_start(call_id, command, args)

        started = False
        terminated = False
        cancelled = False
        values = 0
        error: Optional[BaseException] = None

        try:
            await self._connection.send(Message.create_start(call_id, command, args))
            started = True

            while True:
                item = await queue.get()
                if isinstance(item, BaseException):
                    terminated = True
                    raise item

                kind, payload = dematerialize(item)
                if kind is NotificationKind.NEXT:
                    values += 1
                    yield payload
                elif kind is NotificationKind.ERROR:
                    terminated = True
                    raise payload
                else:
                    terminated = True
                    return

        except GeneratorExit:
            # Stopping after the first value is how call_once finishes
            cancelled = values == 0
            raise
        except asyncio.CancelledError:
            cancelled = True
            raise
        except Exception as e:
            error = e
            raise
        finally:
            self._calls.pop(call_id, None)

            if started and not terminated and not self._closed:
                await self._send_stop(call_id, command)

            if self._metrics:
                self._metrics.end_call(
                    start_time, success=error is None, cancelled=cancelled
                )
            self._logger.call_end(
                call_id,
                command,
                (time.perf_counter() - started_at) * 1000,
                success=error is None,
                error=error,
            )

    async def _send_stop(self, call_id, command: str):
        """Tell the exposer to stop serving a call. Duplicates are tolerated."""
        self._logger.debug(
            LogEvent.CALL_STOP, f"Stopping {command}", call_id=call_id, command=command
        )
        try:
            await self._connection.send(Message.create_stop(call_id))
        except Exception as e:
            self._logger.warn(
                LogEvent.CALL_STOP,
                f"Failed to send stop for {command}: {e}",
                call_id=call_id,
                command=command,
                error=str(e),
            )

    def _check_open(self):
        if self._closed:
            raise RemoteClosedError("This remote is closed.")

    def _ensure_reader(self):
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._receive_loop())

    async def _receive_loop(self):
        """Demultiplex inbound notifications to the open calls."""
        try:
            async for raw in self._connection.observe():
                self._dispatch(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(
                LogEvent.REMOTE_CLOSE,
                f"Inbound stream failed: {e}",
                error=str(e),
                error_type=type(e).__name__,
            )

        if not self._closed:
            self._closed = True
            self._logger.info(LogEvent.REMOTE_CLOSE, "Inbound stream ended")
            self._fail_open_calls("The connection of this remote was closed.")

    def _dispatch(self, raw: Any):
        message = coerce_message(raw)
        if message is None or getattr(message, "app", APP_NAME) != APP_NAME:
            self._logger.debug(LogEvent.MESSAGE_IGNORED, "Ignoring malformed message")
            return
        if message.is_request:
            self._logger.debug(
                LogEvent.MESSAGE_IGNORED, "Ignoring request message", call_id=message.id
            )
            return

        queue = self._calls.get(message.id)
        if queue is None:
            self._logger.debug(
                LogEvent.MESSAGE_IGNORED,
                "Ignoring notification for unknown call",
                call_id=message.id,
            )
            return
        queue.put_nowait(message)

    def _fail_open_calls(self, reason: str):
        for queue in list(self._calls.values()):
            queue.put_nowait(RemoteClosedError(reason))

    async def close(self):
        """Fail every open call, stop reading and close the connection."""
        if self._closed:
            return
        self._closed = True
        self._logger.info(
            LogEvent.REMOTE_CLOSE,
            "Closing remote",
            metadata={"open_calls": len(self._calls)},
        )

        self._fail_open_calls("This remote is closed.")

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

        await self._connection.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.close()


class CallProxy:
    """
    Proxy object for awaitable method calls.

    Attribute lookup alone sends nothing; the message is sent when the
    returned coroutine runs.
    """

    def __init__(self, remote: Remote):
        self._remote = remote

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)

        async def remote_method(*args):
            return await self._remote.call_once(name, *args)

        remote_method.__name__ = name
        return remote_method


class StreamProxy:
    """Proxy object for streaming method calls."""

    def __init__(self, remote: Remote):
        self._remote = remote

    def __getattr__(self, name):
        if name.startswith("__"):
            raise AttributeError(name)

        def remote_method(*args):
            return self._remote.call_stream(name, *args)

        remote_method.__name__ = name
        return remote_method


def wrap(connection: Connection, **options) -> Remote:
    """Wrap a connection as a Remote."""
    return Remote(connection, **options)
