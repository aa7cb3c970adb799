"""
Example: a service exposed over ZeroMQ, with several callers.

This demonstrates the ROUTER/DEALER architecture where multiple
callers connect to a single exposed service.

Usage:
python zmq_service.py serve    # Terminal 1
python zmq_service.py call     # Terminal 2
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from crosslink import Receiver, Remote, ZmqDealerConnection, ZmqRouterConnection

ENDPOINT = "tcp://127.0.0.1:5555"


class MathService:
    def add(self, a: int, b: int) -> int:
        print(f"Adding {a} + {b}")
        return a + b

    async def squares(self, n: int):
        for i in range(n):
            yield i * i


async def serve():
    print(f"Serving MathService on {ENDPOINT}...")
    connection = ZmqRouterConnection(ENDPOINT.replace("127.0.0.1", "*"))
    async with Receiver(connection, MathService(), log=True) as receiver:
        try:
            await receiver.start()
        finally:
            await connection.close()


async def caller_task(caller_id: int):
    remote = Remote(ZmqDealerConnection(ENDPOINT))
    try:
        for i in range(3):
            result = await asyncio.wait_for(remote.call.add(caller_id * 10, i), 5)
            print(f"Caller {caller_id}: {caller_id * 10} + {i} = {result}")
        squares = [v async for v in remote.stream.squares(4)]
        print(f"Caller {caller_id}: squares = {squares}")
    finally:
        await remote.close()


async def call():
    await asyncio.gather(*(caller_task(i) for i in range(1, 4)))


if __name__ == "__main__":
    mode = sys.argv[1] if len(sys.argv) > 1 else "call"
    asyncio.run(serve() if mode == "serve" else call())
