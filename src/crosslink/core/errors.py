"""
Exception types shared by the caller side, the exposer side and the
migration layer.
"""

from enum import Enum
from typing import Optional


class RemoteErrorCode(Enum):
    """Codes carried by a RemoteError."""

    TIMEOUT = "timeout"
    WORKER_DISAPPEARED = "worker-disappeared"
    INVALID_MESSAGE = "invalid-message"


RETRYABLE_CODES = frozenset(
    {RemoteErrorCode.TIMEOUT, RemoteErrorCode.WORKER_DISAPPEARED}
)


class RemoteError(Exception):
    """
    Failure of a call caused by the protocol or the backend lifecycle.

    Only ``timeout`` and ``worker-disappeared`` are retryable; an
    ``invalid-message`` error is a protocol violation and is never retried.
    """

    def __init__(self, code, message: str):
        super().__init__(message)
        self.code = RemoteErrorCode(code)
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __repr__(self):
        return f"RemoteError({self.code.value!r}, {self.message!r})"


class RemoteCallError(Exception):
    """Exception for failures that occurred inside the remote command."""

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        remote_traceback: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.remote_traceback = remote_traceback


class CommandNotFoundError(RemoteCallError):
    """Raised when a command does not exist on the exposed target."""


class RemoteClosedError(Exception):
    """Raised for calls on a remote that has been closed."""


class ChannelClosed(Exception):
    """Raised when sending on a closed connection."""


class RegistryError(Exception):
    """Misuse of a dynamic registry (unknown or duplicate key)."""


class LockError(Exception):
    """Failure to acquire an exclusive lock."""


class LockTimeoutError(LockError, TimeoutError):
    """The lock was not granted within the requested time."""
