"""
Example: calling a service through an in-process channel pair.

Shows single values, streams, early exit and remote errors.

python examples/memory_pair.py
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from crosslink import Receiver, Remote, RemoteCallError, create_channel_pair


class MathService:
    """A simple math service that can be called remotely."""

    def add(self, a: int, b: int) -> int:
        return a + b

    async def countdown(self, n: int):
        for i in range(n, 0, -1):
            await asyncio.sleep(0.1)
            yield i

    async def ticks(self):
        i = 0
        try:
            while True:
                await asyncio.sleep(0.05)
                yield i
                i += 1
        finally:
            print("  ticks stopped on the service side")

    def divide(self, a: int, b: int) -> float:
        return a / b


async def main():
    caller, callee = create_channel_pair()
    receiver = Receiver(callee, MathService(), log=True)
    receiver.start()

    async with Remote(caller) as remote:
        print(f"add(2, 3) = {await remote.call.add(2, 3)}")

        print("countdown(3):")
        async for value in remote.stream.countdown(3):
            print(f"  {value}")

        print("ticks, stopping after 3 values:")
        stream = remote.stream.ticks()
        async for value in stream:
            print(f"  {value}")
            if value == 2:
                break
        await stream.aclose()

        try:
            await remote.call.divide(1, 0)
        except RemoteCallError as e:
            print(f"divide(1, 0) failed remotely: {e.error_type}: {e}")

        print(f"metrics: {remote.metrics.to_dict()['calls']}")

    await receiver.close()


if __name__ == "__main__":
    asyncio.run(main())
