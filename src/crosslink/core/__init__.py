"""
Core modules for the asyncio call-correlation protocol.
"""

from .errors import (
    ChannelClosed,
    CommandNotFoundError,
    LockError,
    LockTimeoutError,
    RegistryError,
    RemoteCallError,
    RemoteClosedError,
    RemoteError,
    RemoteErrorCode,
)
from .ids import generate_id, incrementing_id_generator, string_id_generator
from .message import APP_NAME, Message, NotificationKind, RequestKind
from .channel import Connection, MemoryConnection, create_channel_pair
from .transport import ZmqDealerConnection, ZmqRouterConnection
from .remote import Remote, CallProxy, StreamProxy, wrap
from .receiver import Receiver, call_on_target, expose
from .registry import Registry, RegistryAction, SourceFailure, registry
from .lock import LockDomain, acquire_lock, observe_lock
from .migrating import (
    BackendAction,
    BackendEvent,
    Coordinator,
    LocalCoordinator,
    MigratingExposer,
    MigratingRemote,
    expose_migrating,
    wrap_migrating,
)
from .metrics import Metrics, MetricsSnapshot
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__all__ = [
    # Errors
    "ChannelClosed",
    "CommandNotFoundError",
    "LockError",
    "LockTimeoutError",
    "RegistryError",
    "RemoteCallError",
    "RemoteClosedError",
    "RemoteError",
    "RemoteErrorCode",
    # Ids
    "generate_id",
    "incrementing_id_generator",
    "string_id_generator",
    # Messages and channels
    "APP_NAME",
    "Message",
    "NotificationKind",
    "RequestKind",
    "Connection",
    "MemoryConnection",
    "create_channel_pair",
    "ZmqDealerConnection",
    "ZmqRouterConnection",
    # Calling and exposing
    "Remote",
    "CallProxy",
    "StreamProxy",
    "wrap",
    "Receiver",
    "call_on_target",
    "expose",
    # Registry
    "Registry",
    "RegistryAction",
    "SourceFailure",
    "registry",
    # Locks
    "LockDomain",
    "acquire_lock",
    "observe_lock",
    # Migration
    "BackendAction",
    "BackendEvent",
    "Coordinator",
    "LocalCoordinator",
    "MigratingExposer",
    "MigratingRemote",
    "expose_migrating",
    "wrap_migrating",
    # Metrics
    "Metrics",
    "MetricsSnapshot",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
]
