"""
Per-event chat session: HTTP persistence plus socket relay, with a polling
fallback while the socket is down.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from earthforus import config
from earthforus.models import ChatMessage
from earthforus.services import wire
from earthforus.services.telemetry import ChatTelemetry
from earthforus.services.wire import MessageType, WireMessage
from earthforus.services.ws_client import ClientHandlers, ReconnectingClient


def ws_url_from_api_base(api_base: str) -> str:
    """http://host:port -> ws://host:port/ws (https -> wss)."""
    if api_base.startswith("https://"):
        base = "wss://" + api_base[len("https://"):]
    elif api_base.startswith("http://"):
        base = "ws://" + api_base[len("http://"):]
    else:
        base = api_base
    return base.rstrip("/") + "/ws"


class EventChatSession:
    """Chat for one event as seen by one user.

    Messages are kept in arrival order and deduplicated by id, since a message
    can arrive both as a socket broadcast and in a later history fetch.
    """

    def __init__(
        self,
        event_id: int,
        user_id: int,
        user_name: str,
        *,
        api_base: str,
        ws_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        client: Optional[ReconnectingClient] = None,
        poll_interval: Optional[float] = None,
        on_messages: Optional[Callable[[List[ChatMessage]], Any]] = None,
        telemetry: Optional[ChatTelemetry] = None,
    ):
        self.event_id = event_id
        self.user_id = user_id
        self.user_name = user_name
        self.telemetry = telemetry or ChatTelemetry()
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.CHAT_POLL_INTERVAL_SECONDS
        )
        self.on_messages = on_messages

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=api_base)
        self.client = client or ReconnectingClient(
            ws_url or ws_url_from_api_base(api_base), telemetry=self.telemetry
        )
        self.client.handlers = ClientHandlers(
            on_message=self._on_socket_message,
            on_open=self._on_socket_open,
            on_close=self._on_socket_close,
            on_error=self._on_socket_error,
        )

        self._messages: Dict[int, ChatMessage] = {}
        self._poll_task: Optional[asyncio.Task] = None
        self._notify_tasks: Set[asyncio.Future] = set()

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages.values())

    @property
    def messages_path(self) -> str:
        return f"/api/events/{self.event_id}/messages"

    async def start(self) -> None:
        self.client.connect()
        try:
            await self.refresh()
        except (httpx.HTTPError, TypeError, ValueError) as e:
            self.telemetry.error("fetch_messages_error", e, eventId=self.event_id)
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    async def stop(self) -> None:
        try:
            await self._stop_polling()
            if self.client.is_connected:
                await self.client.send(wire.leave_event(self.event_id))
        finally:
            await self.client.disconnect()
            if self._owns_http:
                await self._http.aclose()

    async def refresh(self) -> List[ChatMessage]:
        """Fetch history over HTTP and merge it in. Returns the new messages."""
        response = await self._http.get(
            self.messages_path, params={"limit": config.CHAT_HISTORY_LIMIT}
        )
        response.raise_for_status()
        fresh = [m for m in (ChatMessage(**row) for row in response.json()) if self._ingest(m)]
        self.telemetry.info(
            "messages_fetched", eventId=self.event_id, count=len(fresh)
        )
        self._notify(fresh)
        return fresh

    async def send_message(self, text: str) -> ChatMessage:
        """Persist *text*, then relay the stored message to the room."""
        response = await self._http.post(
            self.messages_path,
            json={
                "message": text,
                "event_id": self.event_id,
                "user_id": self.user_id,
                "user_name": self.user_name,
            },
        )
        response.raise_for_status()
        message = ChatMessage(**response.json())
        if self._ingest(message):
            self._notify([message])

        via_socket = False
        if self.client.is_connected:
            via_socket = await self.client.send(
                wire.chat_message(message.model_dump(), self.event_id)
            )
        self.telemetry.info(
            "message_sent",
            eventId=self.event_id,
            messageId=message.id,
            viaWebSocket=via_socket,
        )
        return message

    # ---- Socket callbacks ----

    async def _on_socket_open(self) -> None:
        await self.client.send(wire.join_event(self.event_id))

    def _on_socket_message(self, message: WireMessage) -> None:
        if message.type is not MessageType.CHAT_MESSAGE:
            return
        if message.eventId not in (None, self.event_id):
            return
        try:
            chat = ChatMessage(**message.data)
        except (TypeError, ValueError) as e:
            self.telemetry.warning("chat_message_invalid", error=repr(e))
            return
        if chat.event_id == self.event_id and self._ingest(chat):
            self._notify([chat])

    def _on_socket_close(self) -> None:
        self.telemetry.info("chat_socket_closed", eventId=self.event_id)

    def _on_socket_error(self, error: BaseException) -> None:
        self.telemetry.error("chat_socket_error", error, eventId=self.event_id)

    # ---- Internals ----

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if self.client.is_connected:
                continue
            try:
                await self.refresh()
            except (httpx.HTTPError, TypeError, ValueError) as e:
                self.telemetry.error("fetch_messages_error", e, eventId=self.event_id)

    async def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self.telemetry.error("polling_failed", e, eventId=self.event_id)

    def _ingest(self, message: ChatMessage) -> bool:
        if message.id in self._messages:
            return False
        self._messages[message.id] = message
        return True

    def _notify(self, fresh: List[ChatMessage]) -> None:
        if not fresh or self.on_messages is None:
            return
        try:
            result = self.on_messages(fresh)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._notify_tasks.add(task)
                task.add_done_callback(self._notify_done)
        except Exception as e:
            self.telemetry.error("on_messages_failed", e)

    def _notify_done(self, task: asyncio.Future) -> None:
        self._notify_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.telemetry.error("on_messages_failed", task.exception())
