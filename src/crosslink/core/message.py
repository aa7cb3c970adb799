"""
Message handling for the call-correlation protocol.
"""

import math
import traceback
from enum import Enum
from typing import Any, Dict, Optional

import msgpack

from .errors import (
    CommandNotFoundError,
    RemoteCallError,
    RemoteError,
    RemoteErrorCode,
)


class RequestKind(Enum):
    """Messages sent by the caller."""

    START = "S"
    STOP = "U"


class NotificationKind(Enum):
    """Materialized stream events sent back by the exposer."""

    NEXT = "N"
    ERROR = "E"
    COMPLETE = "C"


APP_NAME = "crosslink_v1"

REQUEST_KINDS = frozenset(kind.value for kind in RequestKind)
NOTIFICATION_KINDS = frozenset(kind.value for kind in NotificationKind)


def _sanitize_for_msgpack(obj: Any) -> Any:
    """Sanitize object for msgpack interop safety across languages.

    Handles:
    - NaN/Infinity → null
    - Integer overflow → clamp to int64
    - Non-string keys → string conversion
    - Tuples → lists
    """
    INT64_MAX = 2**63 - 1
    INT64_MIN = -(2**63)

    if isinstance(obj, dict):
        return {str(k): _sanitize_for_msgpack(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_sanitize_for_msgpack(v) for v in obj]
    elif isinstance(obj, bool):
        return obj
    elif isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    elif isinstance(obj, int):
        return max(INT64_MIN, min(INT64_MAX, obj))
    return obj


def encode_error(error: BaseException) -> Dict[str, Any]:
    """Turn an exception into a payload that survives serialization."""
    if isinstance(error, RemoteError):
        return {
            "type": type(error).__name__,
            "message": error.message,
            "code": error.code.value,
        }
    payload = {"type": type(error).__name__, "message": str(error)}
    if isinstance(error, RemoteCallError):
        payload["type"] = error.error_type or type(error).__name__
        if error.remote_traceback:
            payload["traceback"] = error.remote_traceback
    elif error.__traceback__ is not None:
        payload["traceback"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return payload


def decode_error(payload: Any) -> Exception:
    """Rebuild an exception from an error payload."""
    if not isinstance(payload, dict):
        return RemoteCallError(str(payload))

    message = str(payload.get("message", "Unknown error"))
    code = payload.get("code")
    if code is not None:
        try:
            return RemoteError(RemoteErrorCode(code), message)
        except ValueError:
            pass

    error_type = payload.get("type")
    remote_traceback = payload.get("traceback")
    if error_type == CommandNotFoundError.__name__:
        return CommandNotFoundError(message, error_type, remote_traceback)
    return RemoteCallError(message, error_type, remote_traceback)


class Message:
    """
    Message container for the correlation protocol.

    Core fields (always present):
    - app: str = APP_NAME
    - id: str | int = correlation id of the call
    - kind: str = "S"|"U" (requests) or "N"|"E"|"C" (notifications)

    Start message fields:
    - command: str = name of the command to invoke
    - data: List = positional arguments

    Next notification fields:
    - value: Any = emitted value

    Error notification fields:
    - error: dict = encoded exception (see encode_error)
    """

    def __init__(self, **kwargs):
        self.app = APP_NAME
        self.id = None
        self.kind = None

        for key, value in kwargs.items():
            setattr(self, key, value)

    def __repr__(self):
        fields = ", ".join(f"{k}={v!r}" for k, v in self.to_dict().items())
        return f"Message({fields})"

    def __eq__(self, other):
        if not isinstance(other, Message):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    @classmethod
    def create_start(cls, msg_id, command: str, data=()):
        """Create a call start message."""
        return cls(
            id=msg_id,
            kind=RequestKind.START.value,
            command=command,
            data=list(data),
        )

    @classmethod
    def create_stop(cls, msg_id):
        """Create a call stop message."""
        return cls(id=msg_id, kind=RequestKind.STOP.value)

    @classmethod
    def create_next(cls, msg_id, value: Any):
        return cls(id=msg_id, kind=NotificationKind.NEXT.value, value=value)

    @classmethod
    def create_error(cls, msg_id, error: BaseException):
        return cls(
            id=msg_id,
            kind=NotificationKind.ERROR.value,
            error=encode_error(error),
        )

    @classmethod
    def create_complete(cls, msg_id):
        return cls(id=msg_id, kind=NotificationKind.COMPLETE.value)

    @property
    def is_request(self) -> bool:
        return self.kind in REQUEST_KINDS

    @property
    def is_response(self) -> bool:
        return self.kind in NOTIFICATION_KINDS

    @property
    def is_terminal(self) -> bool:
        return self.kind in (
            NotificationKind.ERROR.value,
            NotificationKind.COMPLETE.value,
        )

    def extract_call_args(self) -> tuple:
        """Extract args from simple list format."""
        data = getattr(self, "data", None)
        if data is None:
            return tuple()
        return tuple(data)

    def to_dict(self) -> dict:
        """Convert to plain dict."""
        return {
            key: value
            for key, value in self.__dict__.items()
            if not key.startswith("_")
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        if not isinstance(data, dict):
            raise ValueError(f"Expected dict, got {type(data)}")
        return cls(**{str(k): v for k, v in data.items()})

    def pack(self) -> bytes:
        """Pack message for transmission with interop safety."""
        return msgpack.packb(_sanitize_for_msgpack(self.to_dict()), use_bin_type=True)

    @classmethod
    def unpack(cls, data: bytes) -> "Message":
        """Unpack message with validation."""
        if not isinstance(data, bytes):
            raise ValueError(f"Expected bytes, got {type(data)}")

        if len(data) == 0:
            raise ValueError("Empty message data")

        try:
            # Size limits (DoS protection)
            unpacked = msgpack.unpackb(
                data,
                raw=False,
                max_bin_len=10 * 1024 * 1024,
                max_str_len=10 * 1024 * 1024,
                max_array_len=100_000,
                max_map_len=100_000,
            )
        except msgpack.exceptions.ExtraData as e:
            raise ValueError(f"Message contains extra data: {e}")
        except (msgpack.exceptions.UnpackException, ValueError) as e:
            raise ValueError(f"Failed to unpack message: {e}")

        if not isinstance(unpacked, dict):
            raise ValueError(f"Expected dict from msgpack, got {type(unpacked)}")

        return cls.from_dict(unpacked)


def dematerialize(message: Message):
    """
    Convert a notification into ``(kind, payload)``.

    Raises RemoteError(invalid-message) for anything that is not a
    notification.
    """
    if message.kind == NotificationKind.NEXT.value:
        return NotificationKind.NEXT, getattr(message, "value", None)
    if message.kind == NotificationKind.ERROR.value:
        return NotificationKind.ERROR, decode_error(getattr(message, "error", None))
    if message.kind == NotificationKind.COMPLETE.value:
        return NotificationKind.COMPLETE, None
    raise RemoteError(
        RemoteErrorCode.INVALID_MESSAGE,
        f"Unexpected notification kind {message.kind!r} for call {message.id!r}",
    )


def coerce_message(raw: Any) -> Optional[Message]:
    """
    Accept a Message, a plain dict or packed bytes; None if unusable.

    Messages whose id cannot key a call table (msgpack arrays decode to
    lists) are unusable.
    """
    if isinstance(raw, Message):
        message = raw
    else:
        try:
            if isinstance(raw, dict):
                message = Message.from_dict(raw)
            elif isinstance(raw, bytes):
                message = Message.unpack(raw)
            else:
                return None
        except (ValueError, TypeError):
            return None

    try:
        hash(message.id)
    except TypeError:
        return None
    return message
