"""
Crosslink - correlated RPC over message channels

Call methods on an object living in another context (task, process or
machine) through any duplex channel of messages. Each call gets a
correlation id; many calls and their cancellations share one channel, and a
call can return one value or a stream of values.

## Quick Start

### Expose a target and call it
```python
from crosslink import Remote, Receiver, create_channel_pair

class MathService:
    def add(self, a, b):
        return a + b

    async def count(self, n):
        for i in range(n):
            yield i

caller, callee = create_channel_pair()
Receiver(callee, MathService()).start()

remote = Remote(caller)
result = await remote.call.add(1, 2)           # 3

async for value in remote.stream.count(3):     # 0, 1, 2
    print(value)

await remote.close()
```

### Over ZeroMQ
```python
from crosslink import Remote, Receiver, ZmqDealerConnection, ZmqRouterConnection

Receiver(ZmqRouterConnection("tcp://*:5555"), MathService()).start()
remote = Remote(ZmqDealerConnection("tcp://localhost:5555"))
```

### Migrating backends
```python
from crosslink import LocalCoordinator, expose_migrating, wrap_migrating

coordinator = LocalCoordinator()
exposer = expose_migrating(coordinator, target_factory=lambda id: MathService())
remote = wrap_migrating(coordinator, auto_retry_promises=True)

await coordinator.add_backend("w1")
result = await remote.call.add(1, 2)

# Calls running on w1 when it disappears are retried on the next backend
await coordinator.remove_backend("w1")
await coordinator.add_backend("w2")
```

### Dynamic registry and locks
```python
from crosslink import Registry, RegistryAction, LockDomain

async for key, value in Registry(actions):
    ...

async with LockDomain().hold("leader"):
    ...
```

## Exports

- Remote / MigratingRemote: caller-side handles
- Receiver / MigratingExposer: exposer side
- Registry: merge of a dynamic set of keyed streams
- LockDomain: named exclusive locks
- RemoteError: retryable/non-retryable protocol errors
- Metrics, StructuredLogger: observability
"""

from .core import *  # noqa: F401,F403
from .core import __all__

__version__ = "1.0.0"
