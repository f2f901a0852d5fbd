"""
WebSocket Connection Registry – Track connected clients, event rooms and broadcast chat frames
"""

import itertools
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Union

from earthforus.services import wire
from earthforus.services.telemetry import ChatTelemetry
from earthforus.services.wire import MessageType, WireMessage


@dataclass
class ConnectionRecord:
    """One live socket and the event rooms it has joined."""

    client_id: str
    transport: Any
    user_id: Optional[int] = None
    joined_rooms: Set[int] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionRegistry:
    """Manage live connections, room membership and fan-out.

    Transports are duck-typed: they expose a ``writable`` flag and a
    non-blocking ``send_text(text)``. Every method here runs to completion
    synchronously, so a broadcast is never observed half-done.
    """

    def __init__(self, telemetry: Optional[ChatTelemetry] = None):
        self.telemetry = telemetry or ChatTelemetry()
        self._connections: Dict[str, ConnectionRecord] = {}  # client_id -> record
        self._sequence = itertools.count(1)
        self._handlers: Dict[MessageType, Callable[[ConnectionRecord, WireMessage], None]] = {
            MessageType.CHAT_MESSAGE: self._handle_chat_message,
            MessageType.JOIN_EVENT: self._handle_join_event,
            MessageType.LEAVE_EVENT: self._handle_leave_event,
            MessageType.SYSTEM_MESSAGE: self._handle_system_message,
            MessageType.USER_JOINED: self._ignore_server_message,
            MessageType.USER_LEFT: self._ignore_server_message,
        }

    # ---- Transport lifecycle ----

    def on_connect(self, transport: Any, user_id: Optional[int] = None) -> ConnectionRecord:
        """Register a new connection and greet it."""
        record = ConnectionRecord(
            client_id=self._generate_client_id(), transport=transport, user_id=user_id
        )
        self._connections[record.client_id] = record
        self.telemetry.info(
            "client_connected",
            clientId=record.client_id,
            totalClients=len(self._connections),
        )
        self.send_to_client(record, wire.welcome())
        return record

    def on_message(self, record: ConnectionRecord, raw: Union[str, bytes]) -> None:
        """Interpret one inbound frame from *record*."""
        try:
            message = wire.decode_message(raw)
        except wire.UnknownMessageTypeError as e:
            self.telemetry.warning(
                "unknown_message_type", type=e.message_type, clientId=record.client_id
            )
            return
        except wire.MalformedFrameError as e:
            self.telemetry.error("message_parse_error", e, clientId=record.client_id)
            self.send_error(record, "Invalid message format")
            return

        self.telemetry.debug(
            "message_received", clientId=record.client_id, type=message.type.value
        )
        self._handlers[message.type](record, message)

    def on_disconnect(self, record: ConnectionRecord) -> None:
        """Forget a connection and tell its rooms it left."""
        if self._connections.pop(record.client_id, None) is None:
            return

        rooms = sorted(record.joined_rooms)
        record.joined_rooms.clear()
        for room in rooms:
            self.broadcast_to_room(
                room, wire.user_left(room, record.user_id), record.client_id
            )

        self.telemetry.client_disconnected(record.client_id, len(self._connections))

    def on_transport_error(self, record: ConnectionRecord, error: BaseException) -> None:
        """Report a transport exception for *record*; membership is untouched."""
        self.telemetry.transport_error(record.client_id, error)

    # ---- Fan-out ----

    def broadcast_to_room(
        self,
        room_id: int,
        message: WireMessage,
        exclude_client_id: Optional[str] = None,
    ) -> int:
        """Send *message* to every member of *room_id*. Returns the delivered count."""
        delivered = 0
        for client_id, record in list(self._connections.items()):
            if client_id == exclude_client_id or room_id not in record.joined_rooms:
                continue
            if self.send_to_client(record, message):
                delivered += 1
        return delivered

    def broadcast_to_all(self, message: WireMessage) -> int:
        """Send *message* to every live connection regardless of rooms."""
        delivered = 0
        for record in list(self._connections.values()):
            if self.send_to_client(record, message):
                delivered += 1
        return delivered

    def send_to_client(self, record: ConnectionRecord, message: WireMessage) -> bool:
        """Best-effort delivery to one connection; failures are logged, not raised."""
        if not getattr(record.transport, "writable", False):
            return False
        try:
            record.transport.send_text(message.encode())
        except Exception as e:
            self.telemetry.error(
                "send_to_client_failed", e, clientId=record.client_id
            )
            return False
        return True

    def send_error(self, record: ConnectionRecord, error: str) -> None:
        self.send_to_client(record, wire.error_message(error))

    # ---- Message handlers ----

    def _handle_chat_message(self, record: ConnectionRecord, message: WireMessage) -> None:
        event_id = wire.room_id(message.data_value("event_id"))
        if event_id is None:
            self.send_error(record, "Event ID is required")
            return

        # Sender included
        self.broadcast_to_room(
            event_id,
            wire.chat_message(message.data, event_id, message.timestamp),
        )
        self.telemetry.info(
            "chat_message_broadcasted",
            clientId=record.client_id,
            eventId=event_id,
            messageId=message.data_value("id"),
        )

    def _handle_join_event(self, record: ConnectionRecord, message: WireMessage) -> None:
        event_id = wire.room_id(message.data_value("eventId"))
        if event_id is None or event_id in record.joined_rooms:
            return

        record.joined_rooms.add(event_id)
        self.broadcast_to_room(
            event_id, wire.user_joined(event_id, record.user_id), record.client_id
        )
        self.telemetry.info(
            "client_joined_event", clientId=record.client_id, eventId=event_id
        )

    def _handle_leave_event(self, record: ConnectionRecord, message: WireMessage) -> None:
        event_id = wire.room_id(message.data_value("eventId"))
        if event_id is None or event_id not in record.joined_rooms:
            return

        record.joined_rooms.discard(event_id)
        self.broadcast_to_room(
            event_id, wire.user_left(event_id, record.user_id), record.client_id
        )
        self.telemetry.info(
            "client_left_event", clientId=record.client_id, eventId=event_id
        )

    def _handle_system_message(self, record: ConnectionRecord, message: WireMessage) -> None:
        if message.data_value("action") == "ping":
            self.send_to_client(record, wire.pong())

    def _ignore_server_message(self, record: ConnectionRecord, message: WireMessage) -> None:
        # user_joined / user_left only flow server -> client
        self.telemetry.warning(
            "unexpected_message_type",
            type=message.type.value,
            clientId=record.client_id,
        )

    # ---- Queries ----

    def get_connection(self, client_id: str) -> Optional[ConnectionRecord]:
        return self._connections.get(client_id)

    def get_connection_count(self) -> int:
        return len(self._connections)

    def get_room_members(self, room_id: int) -> List[str]:
        """Client ids currently joined to *room_id*."""
        return [
            client_id
            for client_id, record in self._connections.items()
            if room_id in record.joined_rooms
        ]

    def set_user(self, client_id: str, user_id: Optional[int]) -> None:
        """Attach a user id once the transport-level identity is known."""
        record = self._connections.get(client_id)
        if record:
            record.user_id = user_id

    def get_stats(self) -> dict:
        rooms: Set[int] = set()
        for record in self._connections.values():
            rooms.update(record.joined_rooms)
        return {"total_connections": len(self._connections), "total_rooms": len(rooms)}

    def _generate_client_id(self) -> str:
        return f"client_{next(self._sequence)}_{secrets.token_hex(5)}"
