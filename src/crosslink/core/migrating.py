"""
Migration layer: exposing a target on a changing set of backends, and
calling it through one front-end connection with automatic retries.
"""

import asyncio
import functools
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
    Dict,
    Optional,
    Set,
    Union,
)

from .channel import Connection, MemoryConnection, create_channel_pair
from .errors import ChannelClosed, RemoteError, RemoteErrorCode
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger
from .message import Message, RequestKind, coerce_message
from .receiver import Receiver
from .remote import Remote


class BackendAction(Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class BackendEvent:
    """A backend appeared (with the connection its exposer serves) or went away."""

    action: BackendAction
    id: str
    connection: Optional[Connection] = None

    @classmethod
    def added(cls, backend_id: str, connection: Connection) -> "BackendEvent":
        return cls(BackendAction.ADDED, backend_id, connection)

    @classmethod
    def removed(cls, backend_id: str) -> "BackendEvent":
        return cls(BackendAction.REMOVED, backend_id)


class Coordinator(ABC):
    """
    Decides which backends exist.

    ``front_end`` is the caller-side connection, routed to whichever backend
    is live; ``backend_events()`` announces backends to the exposing side.
    """

    @property
    @abstractmethod
    def front_end(self) -> Connection:
        """Caller-side connection."""

    @abstractmethod
    def backend_events(self) -> AsyncIterator[BackendEvent]:
        """Stream of backend added/removed events."""


TargetFactory = Callable[[str], Any]


class MigratingExposer:
    """
    Runs one Receiver per live backend.

    Usage:
        exposer = expose_migrating(coordinator, target_factory=make_service)
        ...
        await exposer.close()
    """

    def __init__(
        self,
        events: AsyncIterable[BackendEvent],
        target: Any = None,
        target_factory: Optional[TargetFactory] = None,
        log: bool = False,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
    ):
        if (target is None) == (target_factory is None):
            raise ValueError("Pass exactly one of target or target_factory")

        self._events = events
        self._target = target
        self._target_factory = target_factory
        self._log_options = {"log": log, "log_handler": log_handler, "log_level": log_level}
        self._logger = StructuredLogger.create(
            log=log, handler=log_handler, level=log_level, component="exposer"
        )

        # Live exposers: backend id -> receiver
        self._receivers: Dict[str, Receiver] = {}
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def backends(self):
        """Ids of backends with a running exposer."""
        return list(self._receivers)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self):
        """Handle backend events until the event stream ends."""
        async for event in self._events:
            if event.action is BackendAction.ADDED:
                await self._backend_added(event)
            elif event.action is BackendAction.REMOVED:
                await self._backend_removed(event.id)

    async def _resolve_target(self, backend_id: str) -> Any:
        if self._target_factory is None:
            return self._target
        target = self._target_factory(backend_id)
        if inspect.isawaitable(target):
            target = await target
        return target

    async def _backend_added(self, event: BackendEvent):
        previous = self._receivers.pop(event.id, None)
        if previous is not None:
            self._logger.warn(
                LogEvent.BACKEND_REPLACED,
                f"Backend {event.id} added twice, replacing its exposer",
                backend_id=event.id,
            )
            await previous.close()

        try:
            target = await self._resolve_target(event.id)
        except Exception as e:
            self._logger.error(
                LogEvent.BACKEND_FAILED,
                f"Could not create target for backend {event.id}: {e}",
                backend_id=event.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        receiver = Receiver(
            event.connection, target, name=f"backend {event.id}", **self._log_options
        )
        self._receivers[event.id] = receiver
        task = receiver.start()
        task.add_done_callback(
            functools.partial(self._receiver_done, event.id, receiver)
        )
        self._logger.info(
            LogEvent.BACKEND_ADDED, f"Exposing on backend {event.id}", backend_id=event.id
        )

    async def _backend_removed(self, backend_id: str):
        receiver = self._receivers.pop(backend_id, None)
        if receiver is None:
            self._logger.debug(
                LogEvent.BACKEND_REMOVED,
                f"Ignoring removal of unknown backend {backend_id}",
                backend_id=backend_id,
            )
            return
        await receiver.close()
        self._logger.info(
            LogEvent.BACKEND_REMOVED,
            f"Stopped exposing on backend {backend_id}",
            backend_id=backend_id,
        )

    def _receiver_done(self, backend_id: str, receiver: Receiver, task: asyncio.Task):
        if self._receivers.get(backend_id) is receiver:
            del self._receivers[backend_id]
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            self._logger.error(
                LogEvent.BACKEND_FAILED,
                f"Exposer for backend {backend_id} failed: {error}",
                backend_id=backend_id,
                error=str(error),
                error_type=type(error).__name__,
            )

    async def close(self):
        """Stop handling events and tear down every live exposer."""
        if self._closed:
            return
        self._closed = True

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        receivers = list(self._receivers.values())
        self._receivers.clear()
        await asyncio.gather(*(receiver.close() for receiver in receivers))

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.close()


def expose_migrating(
    coordinator: Union[Coordinator, AsyncIterable[BackendEvent]],
    target: Any = None,
    target_factory: Optional[TargetFactory] = None,
    **options,
) -> MigratingExposer:
    """Expose a target on every backend announced by ``coordinator``."""
    if isinstance(coordinator, Coordinator):
        events = coordinator.backend_events()
    else:
        events = coordinator
    exposer = MigratingExposer(
        events, target=target, target_factory=target_factory, **options
    )
    exposer.start()
    return exposer


class MigratingRemote(Remote):
    """
    Remote that transparently re-issues calls failing with a retryable
    RemoteError (``timeout``, ``worker-disappeared``).

    Retries are configured separately for ``call_once`` and ``call_stream``.
    A retried stream starts over, so values delivered before the failure can
    be delivered again.
    """

    def __init__(
        self,
        connection: Connection,
        auto_retry_promises: bool = False,
        auto_retry_observables: bool = False,
        max_retries: Optional[int] = None,
        retry_delay: float = 0.0,
        **options,
    ):
        super().__init__(connection, **options)
        self.auto_retry_promises = auto_retry_promises
        self.auto_retry_observables = auto_retry_observables
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def _should_retry(self, error: BaseException, enabled: bool, attempt: int) -> bool:
        if not enabled or self._closed:
            return False
        if not isinstance(error, RemoteError) or not error.retryable:
            return False
        return self.max_retries is None or attempt < self.max_retries

    async def _before_retry(self, command: str, attempt: int, error: BaseException):
        if self._metrics:
            self._metrics.record_retry()
        self._logger.call_retry(command, attempt, error)
        if self.retry_delay > 0:
            await asyncio.sleep(self.retry_delay)

    async def call_once(self, command: str, *args) -> Any:
        attempt = 0
        while True:
            try:
                return await super().call_once(command, *args)
            except RemoteError as e:
                if not self._should_retry(e, self.auto_retry_promises, attempt):
                    raise
                attempt += 1
                await self._before_retry(command, attempt, e)

    def call_stream(self, command: str, *args) -> AsyncIterator[Any]:
        return self._call_with_retry(command, args)

    async def _call_with_retry(self, command: str, args: tuple) -> AsyncIterator[Any]:
        attempt = 0
        while True:
            stream = self._call(command, args)
            try:
                async for value in stream:
                    yield value
                return
            except RemoteError as e:
                if not self._should_retry(e, self.auto_retry_observables, attempt):
                    raise
                attempt += 1
                error = e
            finally:
                await stream.aclose()
            await self._before_retry(command, attempt, error)


def wrap_migrating(
    coordinator: Union[Coordinator, Connection], **options
) -> MigratingRemote:
    """Wrap the coordinator's front end as one logical remote."""
    if isinstance(coordinator, Coordinator):
        connection = coordinator.front_end
    else:
        connection = coordinator
    return MigratingRemote(connection, **options)


_CLOSED = object()


class _Backend:
    def __init__(self, backend_id: str, connection: MemoryConnection):
        self.id = backend_id
        self.connection = connection
        self.task: Optional[asyncio.Task] = None


class LocalCoordinator(Coordinator):
    """
    In-process coordinator for a pool of backends.

    Calls from the front end are routed to the most recently added live
    backend. A call arriving while no backend is live waits for one. When a
    backend is removed (or its connection closes) every call routed to it
    fails with ``worker-disappeared``. With ``response_timeout`` set, a call
    that gets no notification within that many seconds fails with
    ``timeout``.

    Usage:
        coordinator = LocalCoordinator()
        exposer = expose_migrating(coordinator, target_factory=make_service)
        remote = wrap_migrating(coordinator, auto_retry_promises=True)

        await coordinator.add_backend("w1")
        result = await remote.call.add(1, 2)
    """

    def __init__(
        self,
        response_timeout: Optional[float] = None,
        log: bool = False,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
    ):
        self.response_timeout = response_timeout
        self._logger = StructuredLogger.create(
            log=log, handler=log_handler, level=log_level, component="coordinator"
        )

        self._front_end, self._router_end = create_channel_pair(("front-end", "router"))
        self._events: asyncio.Queue = asyncio.Queue()
        self._backends: Dict[str, _Backend] = {}
        self._backend_added = asyncio.Event()

        # Routed calls: call id -> backend id
        self._routes: Dict[Any, str] = {}
        # Calls waiting for a live backend: call id -> task
        self._waiting: Dict[Any, asyncio.Task] = {}
        # Response timers: call id -> timer handle
        self._timers: Dict[Any, asyncio.TimerHandle] = {}
        self._side_tasks: Set[asyncio.Task] = set()

        self._router_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def front_end(self) -> Connection:
        self._ensure_started()
        return self._front_end

    @property
    def backends(self):
        return list(self._backends)

    async def backend_events(self) -> AsyncIterator[BackendEvent]:
        while True:
            event = await self._events.get()
            if event is _CLOSED:
                self._events.put_nowait(_CLOSED)
                return
            yield event

    def _ensure_started(self):
        if self._router_task is None and not self._closed:
            self._router_task = asyncio.create_task(self._route_requests())

    async def add_backend(self, backend_id: str) -> Connection:
        """Register a backend; returns the connection its exposer serves."""
        if self._closed:
            raise ChannelClosed("Coordinator is closed")
        self._ensure_started()
        if backend_id in self._backends:
            await self.remove_backend(backend_id)

        router_side, backend_side = create_channel_pair(
            (f"router:{backend_id}", f"backend:{backend_id}")
        )
        backend = _Backend(backend_id, router_side)
        backend.task = asyncio.create_task(self._forward_responses(backend))
        self._backends[backend_id] = backend

        self._events.put_nowait(BackendEvent.added(backend_id, backend_side))
        self._backend_added.set()
        self._logger.info(
            LogEvent.BACKEND_ADDED, f"Backend {backend_id} added", backend_id=backend_id
        )
        return backend_side

    async def remove_backend(self, backend_id: str):
        """Remove a backend, failing every call routed to it."""
        backend = self._backends.get(backend_id)
        if backend is None:
            return
        await self._drop_backend(backend)
        if backend.task is not None and not backend.task.done():
            backend.task.cancel()
            try:
                await backend.task
            except asyncio.CancelledError:
                pass

    async def _drop_backend(self, backend: _Backend):
        if self._backends.get(backend.id) is not backend:
            return
        del self._backends[backend.id]
        self._events.put_nowait(BackendEvent.removed(backend.id))
        self._logger.info(
            LogEvent.BACKEND_REMOVED,
            f"Backend {backend.id} removed",
            backend_id=backend.id,
        )

        for call_id, backend_id in list(self._routes.items()):
            if backend_id == backend.id:
                await self._fail_call(
                    call_id,
                    RemoteError(
                        RemoteErrorCode.WORKER_DISAPPEARED,
                        f"Backend {backend.id} disappeared",
                    ),
                )
        await backend.connection.close()

    def _live_backend(self) -> Optional[_Backend]:
        if not self._backends:
            return None
        return next(reversed(self._backends.values()))

    async def _route_requests(self):
        async for raw in self._router_end.observe():
            message = coerce_message(raw)
            if message is None or message.id is None:
                continue
            if message.kind == RequestKind.START.value:
                self._start_timer(message.id)
                if self._live_backend() is not None:
                    await self._dispatch(message)
                else:
                    self._waiting[message.id] = asyncio.create_task(
                        self._wait_and_dispatch(message)
                    )
            elif message.kind == RequestKind.STOP.value:
                await self._stop(message.id)

    async def _wait_and_dispatch(self, message: Message):
        try:
            while self._live_backend() is None:
                self._backend_added.clear()
                await self._backend_added.wait()
        finally:
            self._waiting.pop(message.id, None)
        await self._dispatch(message)

    async def _dispatch(self, message: Message):
        backend = self._live_backend()
        self._routes[message.id] = backend.id
        try:
            await backend.connection.send(message)
        except ChannelClosed:
            await self._fail_call(
                message.id,
                RemoteError(
                    RemoteErrorCode.WORKER_DISAPPEARED,
                    f"Backend {backend.id} disappeared",
                ),
            )

    async def _stop(self, call_id):
        self._cancel_timer(call_id)
        waiting = self._waiting.pop(call_id, None)
        if waiting is not None:
            waiting.cancel()
            return
        backend_id = self._routes.pop(call_id, None)
        backend = self._backends.get(backend_id) if backend_id else None
        if backend is not None:
            try:
                await backend.connection.send(Message.create_stop(call_id))
            except ChannelClosed:
                pass

    async def _forward_responses(self, backend: _Backend):
        async for raw in backend.connection.observe():
            message = coerce_message(raw)
            if message is None or not message.is_response:
                continue
            if self._routes.get(message.id) != backend.id:
                continue
            self._cancel_timer(message.id)
            if message.is_terminal:
                del self._routes[message.id]
            try:
                await self._router_end.send(message)
            except ChannelClosed:
                return

        # Connection closed by the backend itself
        await self._drop_backend(backend)

    async def _fail_call(self, call_id, error: RemoteError):
        self._cancel_timer(call_id)
        self._routes.pop(call_id, None)
        waiting = self._waiting.pop(call_id, None)
        if waiting is not None:
            waiting.cancel()
        try:
            await self._router_end.send(Message.create_error(call_id, error))
        except ChannelClosed:
            pass

    def _start_timer(self, call_id):
        if self.response_timeout is None:
            return
        loop = asyncio.get_running_loop()
        self._timers[call_id] = loop.call_later(
            self.response_timeout,
            self._spawn_expire,
            call_id,
        )

    def _spawn_expire(self, call_id):
        task = asyncio.ensure_future(self._expire(call_id))
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    def _cancel_timer(self, call_id):
        timer = self._timers.pop(call_id, None)
        if timer is not None:
            timer.cancel()

    async def _expire(self, call_id):
        self._timers.pop(call_id, None)
        backend_id = self._routes.get(call_id)
        await self._fail_call(
            call_id,
            RemoteError(
                RemoteErrorCode.TIMEOUT,
                f"No response within {self.response_timeout}s",
            ),
        )
        backend = self._backends.get(backend_id) if backend_id else None
        if backend is not None:
            try:
                await backend.connection.send(Message.create_stop(call_id))
            except ChannelClosed:
                pass

    async def close(self):
        """Remove every backend and close the front end."""
        if self._closed:
            return
        self._closed = True

        for backend_id in list(self._backends):
            await self.remove_backend(backend_id)
        for task in list(self._waiting.values()):
            task.cancel()
        self._waiting.clear()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        if self._router_task and not self._router_task.done():
            self._router_task.cancel()
            try:
                await self._router_task
            except asyncio.CancelledError:
                pass
        await self._router_end.close()
        self._events.put_nowait(_CLOSED)
