"""WebSocket endpoint bridging Starlette sockets to the connection registry."""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from earthforus import config
from earthforus.services.ws_manager import ConnectionRecord, ConnectionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat-websocket"])


class WebSocketTransport:
    """Queue outbound frames for one socket and write them from a pump task.

    ``send_text`` never awaits, which keeps registry fan-out synchronous.
    """

    def __init__(self, websocket: WebSocket, maxsize: int = 0):
        self.websocket = websocket
        self._outbox: "asyncio.Queue[str]" = asyncio.Queue(maxsize)
        self._open = True

    @property
    def writable(self) -> bool:
        return self._open and self.websocket.client_state == WebSocketState.CONNECTED

    def send_text(self, text: str) -> None:
        # Raises asyncio.QueueFull for a consumer that stopped reading
        self._outbox.put_nowait(text)

    def close(self) -> None:
        self._open = False

    async def pump(self, registry: ConnectionRegistry, record: ConnectionRecord) -> None:
        try:
            while True:
                text = await self._outbox.get()
                await self.websocket.send_text(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._open = False
            registry.on_transport_error(record, e)


def get_registry(websocket: WebSocket) -> ConnectionRegistry:
    return websocket.app.state.registry


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket, user_id: Optional[int] = None):
    """Real-time chat socket. See earthforus.services.wire for the frame format."""
    registry = get_registry(websocket)
    await websocket.accept()

    transport = WebSocketTransport(websocket, maxsize=config.WS_OUTBOX_SIZE)
    record = registry.on_connect(transport, user_id=user_id)
    pump = asyncio.create_task(transport.pump(registry, record))
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                raw = frame.get("bytes") or b""
            registry.on_message(record, raw)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        registry.on_transport_error(record, e)
    finally:
        transport.close()
        registry.on_disconnect(record)
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass
