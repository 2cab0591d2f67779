"""JSON wire frames exchanged over the hub WebSocket.

This module provides:
- Invocation: client -> server method call
- Completion: server -> client result of an invocation
- Event: server -> client pushed payload (ReceiveMessage, ...)
- decode_frame / encode_frame helpers

Every frame is a single JSON object in a WebSocket text message.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from hubrelay.errors import ProtocolError

__all__ = [
    "Completion",
    "Event",
    "Frame",
    "Invocation",
    "ProtocolError",
    "decode_frame",
    "encode_frame",
]

# Server-pushed event names
RECEIVE_MESSAGE = "ReceiveMessage"
RECEIVE_CONNECTION_ID = "ReceiveConnectionId"
RECEIVE_USER_SESSION = "ReceiveUserSession"


@dataclass
class Invocation:
    """Client call of a hub method.

    Attributes:
        target: Hub method name (e.g., "SendUserMessage").
        arguments: Positional arguments, primitives only.
        invocation_id: Correlates the Completion; None for fire-and-forget.
    """

    target: str
    arguments: list[Any] = field(default_factory=list)
    invocation_id: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "type": "invocation",
            "target": self.target,
            "arguments": self.arguments,
        }
        if self.invocation_id is not None:
            d["invocationId"] = self.invocation_id
        return d


@dataclass
class Completion:
    """Outcome of an invocation. Exactly one of result/error is meaningful."""

    invocation_id: str
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "type": "completion",
            "invocationId": self.invocation_id,
            "result": self.result,
            "error": self.error,
        }


@dataclass
class Event:
    """Server-pushed named payload."""

    target: str
    arguments: list[Any] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": "event",
            "target": self.target,
            "arguments": self.arguments,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
        }


Frame = Union[Invocation, Completion, Event]


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to a JSON string."""
    return json.dumps(frame.to_dict())


def _invocation_id(d: dict) -> Optional[str]:
    raw = d.get("invocationId")
    if raw is None:
        return None
    if not isinstance(raw, (str, int)) or isinstance(raw, bool):
        raise ProtocolError("invocationId must be a string")
    return str(raw)


def decode_frame(text: str) -> Frame:
    """Parse a JSON text frame.

    Args:
        text: Raw WebSocket text payload.

    Returns:
        Invocation, Completion or Event.

    Raises:
        ProtocolError: If the payload is not a well-formed frame.
    """
    try:
        d = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(d, dict):
        raise ProtocolError("Frame must be a JSON object")

    frame_type = d.get("type")
    if frame_type == "invocation":
        invocation_id = _invocation_id(d)
        target = d.get("target")
        if not isinstance(target, str) or not target:
            raise ProtocolError("Invocation target is required", invocation_id)
        arguments = d.get("arguments", [])
        if not isinstance(arguments, list):
            raise ProtocolError("Invocation arguments must be a list", invocation_id)
        return Invocation(target=target, arguments=arguments, invocation_id=invocation_id)

    if frame_type == "completion":
        invocation_id = _invocation_id(d)
        if invocation_id is None:
            raise ProtocolError("Completion invocationId is required")
        error = d.get("error")
        return Completion(
            invocation_id=invocation_id,
            result=d.get("result"),
            error=str(error) if error is not None else None,
        )

    if frame_type == "event":
        target = d.get("target")
        if not isinstance(target, str) or not target:
            raise ProtocolError("Event target is required")
        arguments = d.get("arguments", [])
        if not isinstance(arguments, list):
            raise ProtocolError("Event arguments must be a list")
        raw_timestamp = d.get("timestamp")
        if not isinstance(raw_timestamp, str):
            raise ProtocolError("Event timestamp is required")
        try:
            timestamp = datetime.fromisoformat(raw_timestamp)
        except ValueError as e:
            raise ProtocolError(f"Invalid event timestamp: {e}") from e
        return Event(target=target, arguments=arguments, timestamp=timestamp)

    raise ProtocolError(f"Unknown frame type: {frame_type!r}")
