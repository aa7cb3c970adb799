"""
ZeroMQ connections using zmq.asyncio and msgpack-packed messages.

The caller side uses a DEALER socket and the exposer side a ROUTER socket,
so one exposer can serve many callers. Frames are:
- DEALER: [empty_frame, message_data]
- ROUTER: [sender_id, empty_frame, message_data]
"""

from typing import Any, AsyncIterator, Optional

import zmq
import zmq.asyncio

from .channel import Connection
from .errors import ChannelClosed
from .message import Message, coerce_message


def _pack(message: Any) -> bytes:
    coerced = coerce_message(message)
    if coerced is None:
        raise ValueError(f"Cannot send {type(message).__name__} as a message")
    return coerced.pack()


class _ZmqConnection(Connection):
    socket_type = zmq.DEALER

    def __init__(
        self,
        endpoint: str,
        bind: bool = False,
        context: Optional[zmq.asyncio.Context] = None,
        socket: Optional[Any] = None,
    ):
        self.endpoint = endpoint
        self._owns_context = context is None and socket is None
        self.context = context
        self._closed = False

        if socket is not None:
            self.socket = socket
            return

        if self.context is None:
            self.context = zmq.asyncio.Context()
        try:
            self.socket = self.context.socket(self.socket_type)
            self.socket.setsockopt(zmq.LINGER, 1000)
            if bind:
                self.socket.bind(endpoint)
            else:
                self.socket.connect(endpoint)
        except zmq.ZMQError as e:
            if e.errno == zmq.EADDRINUSE:
                raise ChannelClosed(f"Endpoint {endpoint} is already in use")
            raise ChannelClosed(f"Failed to setup ZMQ socket: {e}")

    @property
    def closed(self) -> bool:
        return self._closed

    async def _recv_frames(self) -> AsyncIterator[list]:
        while not self._closed:
            try:
                frames = await self.socket.recv_multipart()
            except zmq.ZMQError:
                if self._closed:
                    return
                raise
            yield frames

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.socket.close(linger=0)
        if self._owns_context and self.context is not None:
            self.context.term()


class ZmqDealerConnection(_ZmqConnection):
    """
    Caller-side connection.

    Usage:
        connection = ZmqDealerConnection("tcp://localhost:5555")
        remote = Remote(connection)
    """

    socket_type = zmq.DEALER

    async def send(self, message: Any) -> None:
        if self._closed:
            raise ChannelClosed(f"Connection to {self.endpoint} is closed")
        await self.socket.send_multipart([b"", _pack(message)])

    async def observe(self) -> AsyncIterator[Message]:
        async for frames in self._recv_frames():
            if len(frames) < 2:
                continue
            try:
                yield Message.unpack(frames[-1])
            except ValueError:
                # Malformed messages are dropped
                continue


class ZmqRouterConnection(_ZmqConnection):
    """
    Exposer-side connection serving many DEALER peers.

    Inbound call ids are rewritten to ``(peer_identity, id)`` so that two
    peers using the same id never collide; outbound notifications carry that
    pair and are routed back to the peer with the original id.

    Usage:
        connection = ZmqRouterConnection("tcp://*:5555", bind=True)
        Receiver(connection, MathService()).start()
    """

    socket_type = zmq.ROUTER

    def __init__(self, endpoint: str, bind: bool = True, **kwargs):
        super().__init__(endpoint, bind=bind, **kwargs)

    async def send(self, message: Any) -> None:
        if self._closed:
            raise ChannelClosed(f"Connection on {self.endpoint} is closed")
        coerced = coerce_message(message)
        if coerced is None:
            raise ValueError(f"Cannot send {type(message).__name__} as a message")

        routed_id = coerced.id
        if not (isinstance(routed_id, tuple) and len(routed_id) == 2):
            raise ChannelClosed(f"No peer known for call {routed_id!r}")

        identity, call_id = routed_id
        outbound = Message(**{**coerced.to_dict(), "id": call_id})
        await self.socket.send_multipart([identity, b"", outbound.pack()])

    async def observe(self) -> AsyncIterator[Message]:
        async for frames in self._recv_frames():
            if len(frames) < 3:
                continue
            identity = frames[0]
            try:
                message = Message.unpack(frames[-1])
            except ValueError:
                continue
            if message.id is not None:
                message.id = (identity, message.id)
            yield message
