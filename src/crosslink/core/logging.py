"""
Structured logging with correlation IDs for observability.

Provides JSON-formatted logs with pluggable output handlers.
"""

import time
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional, Dict
from enum import Enum


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEvent(Enum):
    """Standard log events for protocol operations."""

    # Caller side
    CALL_START = "call_start"
    CALL_END = "call_end"
    CALL_ERROR = "call_error"
    CALL_STOP = "call_stop"
    CALL_RETRY = "call_retry"
    REMOTE_CLOSE = "remote_close"
    MESSAGE_IGNORED = "message_ignored"

    # Exposer side
    RECEIVER_START = "receiver_start"
    RECEIVER_STOP = "receiver_stop"
    COMMAND_START = "command_start"
    COMMAND_END = "command_end"
    COMMAND_ERROR = "command_error"
    COMMAND_STOP = "command_stop"

    # Migration
    BACKEND_ADDED = "backend_added"
    BACKEND_REMOVED = "backend_removed"
    BACKEND_REPLACED = "backend_replaced"
    BACKEND_FAILED = "backend_failed"

    # Registry
    REGISTRY_ADD = "registry_add"
    REGISTRY_DELETE = "registry_delete"
    REGISTRY_SOURCE_ERROR = "registry_source_error"

    # Locks
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    LOCK_BROKEN = "lock_broken"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Correlation
    call_id: Optional[str] = None

    # Context
    component: Optional[str] = None
    command: Optional[str] = None
    backend_id: Optional[str] = None
    key: Optional[str] = None
    lock_name: Optional[str] = None

    # Timing
    duration_ms: Optional[float] = None

    # Status
    success: Optional[bool] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        logger = StructuredLogger(
            handler=lambda entry: print(entry.to_json()),
            component="remote",
        )

        logger.info(LogEvent.CALL_START, "Calling add", call_id="abc123")
        logger.error(LogEvent.CALL_ERROR, "Call failed", error="Timeout")
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
        component: Optional[str] = None,
    ):
        self.handler = handler
        self.level = level
        self.component = component
        self._level_order = {
            LogLevel.DEBUG: 0,
            LogLevel.INFO: 1,
            LogLevel.WARN: 2,
            LogLevel.ERROR: 3,
        }

    @classmethod
    def create(
        cls,
        log: bool = False,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
        component: Optional[str] = None,
    ) -> "StructuredLogger":
        """
        Build a logger from the ``log`` toggle and an optional handler.

        An explicit handler always wins; ``log=True`` alone selects the
        pretty handler; otherwise the logger is silent.
        """
        if handler is None and log:
            handler = default_pretty_handler
        return cls(handler=handler, level=level, component=component)

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        return self._level_order.get(level, 0) >= self._level_order.get(self.level, 0)

    def log(
        self,
        event: LogEvent,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **kwargs,
    ):
        """
        Log an event with structured data.

        Args:
            event: The event type (from LogEvent enum)
            message: Human-readable message
            level: Log level (default: INFO)
            **kwargs: Additional fields for LogEntry
        """
        if not self.handler or not self._should_log(level):
            return

        for key in ("call_id", "backend_id", "key"):
            if kwargs.get(key) is not None:
                kwargs[key] = str(kwargs[key])

        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=message,
            component=self.component,
            **kwargs,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break the application
            print(f"Log handler error: {e}")

    def debug(self, event: LogEvent, message: str, **kwargs):
        """Log at DEBUG level."""
        self.log(event, message, level=LogLevel.DEBUG, **kwargs)

    def info(self, event: LogEvent, message: str, **kwargs):
        """Log at INFO level."""
        self.log(event, message, level=LogLevel.INFO, **kwargs)

    def warn(self, event: LogEvent, message: str, **kwargs):
        """Log at WARN level."""
        self.log(event, message, level=LogLevel.WARN, **kwargs)

    def error(self, event: LogEvent, message: str, **kwargs):
        """Log at ERROR level."""
        self.log(event, message, level=LogLevel.ERROR, **kwargs)

    # Convenience methods for common events

    def call_start(self, call_id, command: str, args: tuple = ()):
        """Log call start."""
        self.debug(
            LogEvent.CALL_START,
            f"Calling {command}",
            call_id=call_id,
            command=command,
            metadata={"args": len(args)},
        )

    def call_end(
        self,
        call_id,
        command: str,
        duration_ms: float,
        success: bool = True,
        error: Optional[BaseException] = None,
    ):
        """Log call completion."""
        event = LogEvent.CALL_END if success else LogEvent.CALL_ERROR
        level = LogLevel.DEBUG if success else LogLevel.WARN
        self.log(
            event,
            f"{'Completed' if success else 'Failed'} {command}",
            level=level,
            call_id=call_id,
            command=command,
            duration_ms=round(duration_ms, 2),
            success=success,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
        )

    def call_retry(self, command: str, attempt: int, error: BaseException):
        """Log a transparent retry."""
        self.info(
            LogEvent.CALL_RETRY,
            f"Retrying {command} (attempt {attempt})",
            command=command,
            error=str(error),
            error_type=type(error).__name__,
            metadata={"attempt": attempt},
        )

    def lock_acquired(self, name: str):
        self.debug(LogEvent.LOCK_ACQUIRED, f"Acquired lock {name}", lock_name=name)

    def lock_released(self, name: str):
        self.debug(LogEvent.LOCK_RELEASED, f"Released lock {name}", lock_name=name)


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stdout."""
    print(entry.to_json())


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event, entry.message]

    if entry.call_id:
        parts.append(f"id={entry.call_id[:8]}")
    if entry.command:
        parts.append(f"cmd={entry.command}")
    if entry.backend_id:
        parts.append(f"backend={entry.backend_id}")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms:.1f}ms")
    if entry.error:
        parts.append(f"error={entry.error}")

    print(" ".join(parts))
