"""
Exposer side of the call-correlation protocol.

A Receiver binds a target object to a connection: every Start message runs
the named command on the target and streams the result back as
notifications tagged with the call's id, until the result ends or a Stop
message for that id arrives.
"""

import asyncio
import inspect
import time
from typing import Any, Dict, Optional, Set

from .channel import Connection
from .errors import ChannelClosed, CommandNotFoundError, RemoteError, RemoteErrorCode
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger
from .message import APP_NAME, Message, RequestKind, coerce_message


def call_on_target(target: Any, command: Any, data=()) -> Any:
    """
    Invoke ``command`` on ``target`` with ``data`` as positional arguments.

    Non-callable attributes are returned as they are.

    Raises:
        CommandNotFoundError: The name is missing, private or not a string
    """
    if not isinstance(command, str) or not command:
        raise CommandNotFoundError(f"Command {command!r} does not exist.")
    if command.startswith("_"):
        raise CommandNotFoundError(f"Cannot call private command '{command}'")
    if not hasattr(target, command):
        raise CommandNotFoundError(f"Command '{command}' does not exist.")

    attribute = getattr(target, command)
    if callable(attribute):
        return attribute(*data)
    return attribute


def is_stream(value: Any) -> bool:
    """Async iterables and generators are streamed; anything else is one value."""
    return hasattr(value, "__aiter__") or inspect.isgenerator(value)


class Receiver:
    """
    Serves calls from one connection against one target.

    Usage:
        receiver = Receiver(connection, MathService())
        receiver.start()
        ...
        await receiver.close()
    """

    def __init__(
        self,
        connection: Connection,
        target: Any,
        log: bool = False,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
        name: Optional[str] = None,
    ):
        self._connection = connection
        self._target = target
        self.name = name or type(target).__name__
        self._logger = StructuredLogger.create(
            log=log, handler=log_handler, level=log_level, component="receiver"
        )

        # Running commands: correlation id -> task
        self._tasks: Dict[Any, asyncio.Task] = {}
        self._side_tasks: Set[asyncio.Task] = set()
        self._serve_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def active_calls(self) -> int:
        return len(self._tasks)

    @property
    def running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    def start(self) -> asyncio.Task:
        """Start serving in a background task."""
        if self._closed:
            raise RuntimeError(f"Receiver {self.name} is closed")
        if self._serve_task is None:
            self._serve_task = asyncio.create_task(self.run())
        return self._serve_task

    async def run(self):
        """Serve until the inbound stream ends."""
        self._logger.info(LogEvent.RECEIVER_START, f"Serving {self.name}")
        try:
            async for raw in self._connection.observe():
                self._handle_message(raw)
        finally:
            await self._cancel_calls()
            self._logger.info(LogEvent.RECEIVER_STOP, f"Stopped serving {self.name}")

    def _handle_message(self, raw: Any):
        message = coerce_message(raw)
        if message is None or getattr(message, "app", APP_NAME) != APP_NAME:
            self._logger.debug(LogEvent.MESSAGE_IGNORED, "Ignoring malformed message")
            return
        if message.id is None:
            self._logger.debug(LogEvent.MESSAGE_IGNORED, "Ignoring message without id")
            return

        if message.kind == RequestKind.START.value:
            self._start_call(message)
        elif message.kind == RequestKind.STOP.value:
            self._stop_call(message.id)
        else:
            self._logger.debug(
                LogEvent.MESSAGE_IGNORED,
                f"Ignoring message of kind {message.kind!r}",
                call_id=message.id,
            )

    def _start_call(self, message: Message):
        call_id = message.id
        if call_id in self._tasks:
            error = RemoteError(
                RemoteErrorCode.INVALID_MESSAGE,
                f"Call id {call_id!r} is already in use",
            )
            self._logger.warn(
                LogEvent.COMMAND_ERROR, str(error), call_id=call_id, error=str(error)
            )
            task = asyncio.create_task(self._send_error(call_id, error))
            self._side_tasks.add(task)
            task.add_done_callback(self._side_tasks.discard)
            return

        task = asyncio.create_task(
            self._serve_call(
                call_id, getattr(message, "command", None), message.extract_call_args()
            )
        )
        self._tasks[call_id] = task
        task.add_done_callback(lambda t, cid=call_id: self._forget(cid, t))

    def _forget(self, call_id, task: asyncio.Task):
        if self._tasks.get(call_id) is task:
            del self._tasks[call_id]

    def _stop_call(self, call_id):
        task = self._tasks.pop(call_id, None)
        if task is None:
            # Already finished, or never started here
            self._logger.debug(
                LogEvent.MESSAGE_IGNORED, "Stop for unknown call", call_id=call_id
            )
            return
        task.cancel()

    async def _serve_call(self, call_id, command, args: tuple):
        started_at = time.perf_counter()
        self._logger.debug(
            LogEvent.COMMAND_START,
            f"Running {command}",
            call_id=call_id,
            command=str(command),
        )
        result = None
        try:
            result = call_on_target(self._target, command, args)

            if is_stream(result):
                if hasattr(result, "__aiter__"):
                    async for value in result:
                        await self._connection.send(Message.create_next(call_id, value))
                else:
                    for value in result:
                        await self._connection.send(Message.create_next(call_id, value))
            else:
                if inspect.isawaitable(result):
                    result = await result
                await self._connection.send(Message.create_next(call_id, result))

            await self._connection.send(Message.create_complete(call_id))
            self._logger.debug(
                LogEvent.COMMAND_END,
                f"Completed {command}",
                call_id=call_id,
                command=str(command),
                duration_ms=round((time.perf_counter() - started_at) * 1000, 2),
                success=True,
            )

        except asyncio.CancelledError:
            self._logger.debug(
                LogEvent.COMMAND_STOP,
                f"Stopped {command}",
                call_id=call_id,
                command=str(command),
            )
            raise
        except ChannelClosed as e:
            self._logger.warn(
                LogEvent.COMMAND_ERROR,
                f"Connection closed while serving {command}",
                call_id=call_id,
                command=str(command),
                error=str(e),
            )
        except Exception as e:
            self._logger.warn(
                LogEvent.COMMAND_ERROR,
                f"Failed {command}: {e}",
                call_id=call_id,
                command=str(command),
                error=str(e),
                error_type=type(e).__name__,
                success=False,
            )
            await self._send_error(call_id, e)
        finally:
            await _close_iterator(result)

    async def _send_error(self, call_id, error: BaseException):
        try:
            await self._connection.send(Message.create_error(call_id, error))
        except ChannelClosed:
            self._logger.warn(
                LogEvent.COMMAND_ERROR,
                "Connection closed before the error could be sent",
                call_id=call_id,
                error=str(error),
            )

    async def _cancel_calls(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self):
        """Stop serving and cancel every running command."""
        if self._closed:
            return
        self._closed = True

        if self._serve_task and not self._serve_task.done():
            self._serve_task.cancel()
            try:
                await self._serve_task
            except asyncio.CancelledError:
                pass
        await self._cancel_calls()

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.close()


async def _close_iterator(result: Any):
    """Close a generator left behind by a stopped or failed command."""
    aclose = getattr(result, "aclose", None)
    if aclose is not None and inspect.isasyncgen(result):
        await aclose()
    elif inspect.isgenerator(result) or inspect.iscoroutine(result):
        result.close()


def expose(connection: Connection, target: Any, **options) -> Receiver:
    """Bind ``target`` to ``connection`` and start serving."""
    receiver = Receiver(connection, target, **options)
    receiver.start()
    return receiver
