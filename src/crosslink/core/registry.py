"""
Dynamic registry: merges a changing set of keyed async streams into one
stream of ``(key, value)`` pairs.

Sources are added and removed at runtime through a stream of
RegistryAction values. Each key has at most one running source.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Dict, Generic, Optional, TypeVar

from .errors import RegistryError
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger

K = TypeVar("K")
V = TypeVar("V")


class RegistryActionKind(Enum):
    ADD = "add"
    DELETE = "delete"


@dataclass(frozen=True)
class RegistryAction(Generic[K, V]):
    """Add a source under a key, or delete the source registered under a key."""

    action: RegistryActionKind
    key: K
    source: Optional[AsyncIterable[V]] = None

    @classmethod
    def add(cls, key: K, source: AsyncIterable[V]) -> "RegistryAction[K, V]":
        return cls(RegistryActionKind.ADD, key, source)

    @classmethod
    def delete(cls, key: K) -> "RegistryAction[K, V]":
        return cls(RegistryActionKind.DELETE, key)


@dataclass(frozen=True)
class SourceFailure:
    """Emitted in place of a value when a registered source raises."""

    error: BaseException


class _Raise:
    def __init__(self, error: BaseException):
        self.error = error


_ACTIONS_DONE = object()
_SOURCE_DONE = object()


class Registry(Generic[K, V]):
    """
    Async-iterable merge of a dynamic set of keyed sources.

    Policies:
    - Deleting an unknown key raises RegistryError on the merged stream,
      unless ``allow_incorrect_ids`` is set, in which case it is ignored.
    - Adding a key that is still active raises RegistryError, unless
      ``allow_incorrect_ids`` is set, in which case the old source is
      cancelled and replaced.
    - A source that raises does not end the registry: its key yields a
      SourceFailure and the entry is removed.
    - The merged stream ends when the action stream is exhausted and every
      remaining source has finished. Leaving it early cancels all sources.

    Usage:
        async for key, value in Registry(actions):
            ...
    """

    def __init__(
        self,
        actions: AsyncIterable[RegistryAction[K, V]],
        allow_incorrect_ids: bool = False,
        log: bool = False,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
    ):
        self._actions = actions
        self.allow_incorrect_ids = allow_incorrect_ids
        self._logger = StructuredLogger.create(
            log=log, handler=log_handler, level=log_level, component="registry"
        )
        self._entries: Dict[K, asyncio.Task] = {}
        self._started = False

    @property
    def keys(self):
        """Keys with a running source."""
        return list(self._entries)

    def __aiter__(self) -> AsyncIterator[Any]:
        if self._started:
            raise RuntimeError("A registry can only be iterated once")
        self._started = True
        return self._merge()

    async def _merge(self):
        output: asyncio.Queue = asyncio.Queue()
        actions_task = asyncio.create_task(self._consume_actions(output))
        actions_done = False
        try:
            while True:
                item = await output.get()
                if item is _ACTIONS_DONE:
                    actions_done = True
                elif item is _SOURCE_DONE:
                    pass
                elif isinstance(item, _Raise):
                    raise item.error
                else:
                    yield item
                    continue

                if actions_done and not self._entries:
                    return
        finally:
            actions_task.cancel()
            tasks = [actions_task, *self._entries.values()]
            for task in tasks:
                task.cancel()
            self._entries.clear()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _consume_actions(self, output: asyncio.Queue):
        try:
            async for action in self._actions:
                if action.action is RegistryActionKind.ADD:
                    self._add(action.key, action.source, output)
                elif action.action is RegistryActionKind.DELETE:
                    self._delete(action.key)
                else:
                    raise RegistryError(f"Unknown registry action {action.action!r}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            output.put_nowait(_Raise(e))
            return
        output.put_nowait(_ACTIONS_DONE)

    def _add(self, key: K, source: AsyncIterable[V], output: asyncio.Queue):
        previous = self._entries.get(key)
        if previous is not None:
            if not self.allow_incorrect_ids:
                raise RegistryError(f"Tried to add {key!r} to a registry twice.")
            self._logger.warn(
                LogEvent.REGISTRY_ADD, f"Replacing source for {key!r}", key=key
            )
            previous.cancel()

        self._logger.debug(LogEvent.REGISTRY_ADD, f"Adding source {key!r}", key=key)
        self._entries[key] = asyncio.create_task(self._pump(key, source, output))

    def _delete(self, key: K):
        task = self._entries.pop(key, None)
        if task is None:
            if not self.allow_incorrect_ids:
                raise RegistryError(
                    f"Tried to remove a non existent source {key!r} from a registry."
                )
            self._logger.debug(
                LogEvent.REGISTRY_DELETE, f"Ignoring delete of unknown {key!r}", key=key
            )
            return
        self._logger.debug(LogEvent.REGISTRY_DELETE, f"Removing source {key!r}", key=key)
        task.cancel()

    async def _pump(self, key: K, source: AsyncIterable[V], output: asyncio.Queue):
        iterator = source.__aiter__()
        try:
            async for value in iterator:
                output.put_nowait((key, value))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.warn(
                LogEvent.REGISTRY_SOURCE_ERROR,
                f"Source {key!r} failed: {e}",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            output.put_nowait((key, SourceFailure(e)))
        finally:
            if self._entries.get(key) is asyncio.current_task():
                del self._entries[key]
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
            output.put_nowait(_SOURCE_DONE)


def registry(
    actions: AsyncIterable[RegistryAction[K, V]],
    allow_incorrect_ids: bool = False,
    **options,
) -> AsyncIterator[Any]:
    """Functional form of Registry."""
    return Registry(actions, allow_incorrect_ids=allow_incorrect_ids, **options).__aiter__()
