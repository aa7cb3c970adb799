"""
Example: calls survive a backend being replaced.

A LocalCoordinator routes calls to the most recent backend. When the
backend serving a call goes away, the call is retried on the next one.
A named lock makes sure only one process runs the demo at a time.

python examples/migrating_backends.py
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from crosslink import LocalCoordinator, LockDomain, expose_migrating, wrap_migrating


class Worker:
    def __init__(self, backend_id: str):
        self.backend_id = backend_id

    async def compute(self, x: int) -> str:
        await asyncio.sleep(0.5)
        return f"{x * x} (computed on {self.backend_id})"


async def main():
    async with LockDomain().hold("crosslink-migration-demo", timeout=5):
        coordinator = LocalCoordinator(log=True)
        exposer = expose_migrating(coordinator, target_factory=Worker)
        remote = wrap_migrating(coordinator, auto_retry_promises=True, log=True)

        await coordinator.add_backend("w1")
        pending = asyncio.create_task(remote.call.compute(7))

        await asyncio.sleep(0.1)
        print("Replacing backend w1 with w2 while the call is running...")
        await coordinator.remove_backend("w1")
        await coordinator.add_backend("w2")

        print(f"Result: {await pending}")
        print(f"Retries: {remote.metrics.snapshot().retries}")

        await remote.close()
        await exposer.close()
        await coordinator.close()


if __name__ == "__main__":
    asyncio.run(main())
