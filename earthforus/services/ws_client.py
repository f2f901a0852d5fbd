"""
Reconnecting chat socket client with heartbeat and exponential backoff.

One instance owns at most one socket. Callers interact through ``connect``,
``send``, ``disconnect`` and ``is_connected``; lifecycle events reach them only
through the ``ClientHandlers`` callbacks.
"""

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from earthforus import config
from earthforus.services import wire
from earthforus.services.telemetry import ChatTelemetry
from earthforus.services.wire import WireMessage

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
INTERNAL_ERROR = 1011


class ClientState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class ClientHandlers:
    """Callbacks for one client. Plain functions or coroutine functions."""

    on_message: Optional[Callable[[WireMessage], Any]] = None
    on_open: Optional[Callable[[], Any]] = None
    on_close: Optional[Callable[[], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None
    on_give_up: Optional[Callable[[int], Any]] = None


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before reconnect *attempt* (1-based): base, 2x base, 4x base, ..."""
    return base_delay * 2 ** (attempt - 1)


async def websockets_connector(url: str):
    return await websockets.connect(url)


class ReconnectingClient:
    def __init__(
        self,
        url: str,
        handlers: Optional[ClientHandlers] = None,
        *,
        heartbeat_interval: Optional[float] = None,
        base_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        telemetry: Optional[ChatTelemetry] = None,
    ):
        self.url = url
        self.handlers = handlers or ClientHandlers()
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else config.WS_HEARTBEAT_INTERVAL_SECONDS
        )
        self.base_delay = (
            base_delay if base_delay is not None else config.WS_RECONNECT_BASE_DELAY_SECONDS
        )
        self.max_attempts = (
            max_attempts if max_attempts is not None else config.WS_MAX_RECONNECT_ATTEMPTS
        )
        self.reconnect_attempts = 0
        self.telemetry = telemetry or ChatTelemetry()

        self._connector = connector or websockets_connector
        self._state = ClientState.IDLE
        self._socket = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._callback_tasks: Set[asyncio.Future] = set()
        self._closing = False

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ClientState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def connect(self, handlers: Optional[ClientHandlers] = None) -> None:
        """Open the socket unless one is already open or opening.

        Must be called from a running event loop. An explicit call starts a
        fresh retry cycle.
        """
        if handlers is not None:
            self.handlers = handlers
        if self._state in (ClientState.OPEN, ClientState.CONNECTING):
            self.telemetry.info("websocket_already_connected", state=self._state.value)
            return
        self._cancel_reconnect()
        self.reconnect_attempts = 0
        self._open()

    async def disconnect(self) -> None:
        """Close the socket and stop all timers. Safe to call repeatedly."""
        self.telemetry.info("websocket_disconnecting")
        self._closing = True
        self._cancel_reconnect()
        self._stop_heartbeat()

        socket, self._socket = self._socket, None
        if socket is not None:
            await self._close_socket(socket, NORMAL_CLOSURE)

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._handle_close(NORMAL_CLOSURE)
        self.reconnect_attempts = 0

    async def send(self, message: WireMessage) -> bool:
        """Write one frame. Returns False instead of raising when it cannot."""
        socket = self._socket
        if not self.is_connected or socket is None:
            self.telemetry.warning("websocket_not_connected", state=self._state.value)
            return False
        try:
            await socket.send(message.encode())
        except Exception as e:
            self.telemetry.error("websocket_send_failed", e, type=message.type.value)
            return False
        self.telemetry.debug("websocket_message_sent", type=message.type.value)
        return True

    # ---- Internals ----

    def _open(self) -> None:
        self._closing = False
        self._state = ClientState.CONNECTING
        self.telemetry.info("websocket_connecting", url=self.url)
        self._reader_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        try:
            socket = await self._connector(self.url)
        except Exception as e:
            self.telemetry.error("websocket_connection_failed", e, url=self.url)
            self._fire(self.handlers.on_error, e)
            self._handle_close(ABNORMAL_CLOSURE)
            return

        if self._closing:
            await self._close_socket(socket, NORMAL_CLOSURE)
            return

        self._socket = socket
        self._handle_open()
        try:
            async for frame in socket:
                self._handle_frame(frame)
        except ConnectionClosed:
            pass
        except Exception as e:
            self.telemetry.error("websocket_error", e)
            self._fire(self.handlers.on_error, e)
            # Release the broken socket before a retry opens another one
            await self._close_socket(socket, INTERNAL_ERROR)

        if self._socket is socket:
            self._socket = None
        code = getattr(socket, "close_code", None) or ABNORMAL_CLOSURE
        self._handle_close(code)

    def _handle_open(self) -> None:
        self.telemetry.info("websocket_connected", url=self.url)
        self.reconnect_attempts = 0
        self._state = ClientState.OPEN
        self._start_heartbeat()
        self._fire(self.handlers.on_open)

    def _handle_frame(self, frame: Any) -> None:
        try:
            message = wire.decode_message(frame)
        except wire.WireProtocolError as e:
            self.telemetry.error("websocket_message_parse_error", e)
            return
        self.telemetry.debug("websocket_message_received", type=message.type.value)
        self._fire(self.handlers.on_message, message)

    def _handle_close(self, code: int) -> None:
        if self._state not in (ClientState.CONNECTING, ClientState.OPEN):
            return
        self._stop_heartbeat()
        self._state = ClientState.CLOSED
        self.telemetry.info("websocket_closed", code=code)
        self._fire(self.handlers.on_close)

        if code != NORMAL_CLOSURE and not self._closing:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self.reconnect_attempts >= self.max_attempts:
            self.telemetry.warning(
                "websocket_max_reconnect_attempts_reached",
                attempts=self.reconnect_attempts,
            )
            self._fire(self.handlers.on_give_up, self.reconnect_attempts)
            return

        self.reconnect_attempts += 1
        delay = backoff_delay(self.reconnect_attempts, self.base_delay)
        self.telemetry.info(
            "websocket_reconnect_scheduled", attempt=self.reconnect_attempts, delay=delay
        )
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay, self._reconnect
        )

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._state in (ClientState.OPEN, ClientState.CONNECTING):
            return
        self._open()

    async def _close_socket(self, socket: Any, code: int) -> None:
        try:
            await socket.close(code=code)
        except Exception as e:
            self.telemetry.warning("websocket_close_failed", code=code, error=repr(e))

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.get_running_loop().create_task(self._heartbeat())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            if self._heartbeat_task is not asyncio.current_task():
                self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat(self) -> None:
        # Keep-alive only; a dead peer is detected by the transport's close
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self.is_connected:
                await self.send(wire.ping())

    def _fire(self, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)
        except Exception as e:
            self.telemetry.error("websocket_callback_failed", e)

    def _callback_done(self, task: asyncio.Future) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.telemetry.error("websocket_callback_failed", error)
