"""
Connection abstraction consumed by the remote and the receiver.

A connection is one side of a duplex channel of already-deserialized
messages. Each side has a single inbound consumer.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional, Tuple

from .errors import ChannelClosed

_CLOSED = object()


class Connection(ABC):
    """One side of a duplex message channel."""

    @abstractmethod
    async def send(self, message: Any) -> None:
        """Enqueue an outbound message. Raises ChannelClosed once closed."""

    @abstractmethod
    def observe(self) -> AsyncIterator[Any]:
        """Inbound messages, in send order, ending when the channel closes."""

    @abstractmethod
    async def close(self) -> None:
        """Release channel resources. Idempotent."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether this side can no longer send."""


class MemoryConnection(Connection):
    """
    In-process connection backed by asyncio queues.

    Usage:
        caller, callee = create_channel_pair()
        await caller.send(message)
        async for message in callee.observe():
            ...
    """

    def __init__(self, name: str = "memory"):
        self.name = name
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._peer: Optional["MemoryConnection"] = None
        self._closed = False

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"<MemoryConnection {self.name} {state}>"

    @property
    def closed(self) -> bool:
        return self._closed or self._peer is None or self._peer._closed

    async def send(self, message: Any) -> None:
        if self.closed:
            raise ChannelClosed(f"Connection {self.name} is closed")
        self._peer._inbound.put_nowait(message)

    async def observe(self) -> AsyncIterator[Any]:
        while True:
            message = await self._inbound.get()
            if message is _CLOSED:
                # Keep the marker for any later observe() call
                self._inbound.put_nowait(_CLOSED)
                return
            yield message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbound.put_nowait(_CLOSED)
        if self._peer is not None:
            self._peer._inbound.put_nowait(_CLOSED)


def create_channel_pair(
    names: Tuple[str, str] = ("caller", "callee")
) -> Tuple[MemoryConnection, MemoryConnection]:
    """Create two connected MemoryConnections."""
    left = MemoryConnection(names[0])
    right = MemoryConnection(names[1])
    left._peer = right
    right._peer = left
    return left, right
