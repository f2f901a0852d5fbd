"""
Wire format for the real-time chat socket: one JSON object per text frame.

    {"type": ..., "data": ..., "timestamp": "<ISO-8601>", "eventId": <int, optional>}
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator


class MessageType(str, Enum):
    CHAT_MESSAGE = "chat_message"
    JOIN_EVENT = "join_event"
    LEAVE_EVENT = "leave_event"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    SYSTEM_MESSAGE = "system_message"


WELCOME_TEXT = "Connected to EarthForUs chat server"


class WireProtocolError(ValueError):
    """Base class for frames that cannot be turned into a WireMessage."""


class MalformedFrameError(WireProtocolError):
    """Frame is not a JSON object or has invalid fields."""


class UnknownMessageTypeError(WireProtocolError):
    """Frame parsed but its type is missing or not recognised."""

    def __init__(self, message_type: Any):
        super().__init__(f"Unknown message type: {message_type!r}")
        self.message_type = message_type


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def room_id(value: Any) -> Optional[int]:
    """Return *value* as a room id if it is a positive integer, else None."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


class WireMessage(BaseModel):
    type: MessageType
    data: Any = None
    timestamp: str = Field(default_factory=utc_timestamp)
    eventId: Optional[int] = None

    @field_validator("eventId", mode="before")
    @classmethod
    def _drop_malformed_event_id(cls, value):
        # A malformed room id is treated as absent, never as an error
        return room_id(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _default_timestamp(cls, value):
        if value is None:
            return utc_timestamp()
        return value

    def data_value(self, name: str) -> Any:
        """Read a key from ``data`` when it is an object, else None."""
        if isinstance(self.data, dict):
            return self.data.get(name)
        return None

    def to_dict(self) -> dict:
        out = {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}
        if self.eventId is not None:
            out["eventId"] = self.eventId
        return out

    def encode(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)


def decode_message(raw: Union[str, bytes]) -> WireMessage:
    """Parse one inbound frame.

    Raises MalformedFrameError for anything that is not a valid JSON object and
    UnknownMessageTypeError when the object has no recognised ``type``.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrameError("Frame is not valid UTF-8") from e
    try:
        obj = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedFrameError("Frame is not valid JSON") from e
    if not isinstance(obj, dict):
        raise MalformedFrameError("Frame must be a JSON object")

    message_type = obj.get("type")
    if not isinstance(message_type, str) or message_type not in {
        t.value for t in MessageType
    }:
        raise UnknownMessageTypeError(message_type)

    try:
        return WireMessage.model_validate(obj)
    except ValidationError as e:
        raise MalformedFrameError(str(e)) from e


# ---- Outbound builders ----


def system_message(**data) -> WireMessage:
    return WireMessage(type=MessageType.SYSTEM_MESSAGE, data=data)


def error_message(error: str) -> WireMessage:
    return system_message(error=error)


def welcome() -> WireMessage:
    return system_message(message=WELCOME_TEXT)


def ping() -> WireMessage:
    return system_message(action="ping")


def pong() -> WireMessage:
    return system_message(action="pong")


def join_event(event_id: int) -> WireMessage:
    return WireMessage(
        type=MessageType.JOIN_EVENT, data={"eventId": event_id}, eventId=event_id
    )


def leave_event(event_id: int) -> WireMessage:
    return WireMessage(
        type=MessageType.LEAVE_EVENT, data={"eventId": event_id}, eventId=event_id
    )


def user_joined(event_id: int, user_id: Optional[int] = None) -> WireMessage:
    return WireMessage(
        type=MessageType.USER_JOINED,
        data={"userId": user_id, "eventId": event_id},
        eventId=event_id,
    )


def user_left(event_id: int, user_id: Optional[int] = None) -> WireMessage:
    return WireMessage(
        type=MessageType.USER_LEFT,
        data={"userId": user_id, "eventId": event_id},
        eventId=event_id,
    )


def chat_message(
    data: dict, event_id: int, timestamp: Optional[str] = None
) -> WireMessage:
    return WireMessage(
        type=MessageType.CHAT_MESSAGE,
        data=data,
        timestamp=timestamp,
        eventId=event_id,
    )
