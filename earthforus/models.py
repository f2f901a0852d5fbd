from pydantic import BaseModel
from typing import Optional


# ============ Chat Models ============


class ChatMessageCreate(BaseModel):
    message: Optional[str] = None
    event_id: Optional[int] = None
    user_id: Optional[int] = None
    user_name: Optional[str] = None


class ChatMessage(BaseModel):
    """A persisted chat message, as stored and as relayed over the socket."""

    id: int
    event_id: int
    user_id: int
    user_name: str
    message: str
    created_at: str
    is_system: bool = False


# ============ Logs Models ============


class ClientErrorReport(BaseModel):
    type: Optional[str] = None
    message: Optional[str] = None
    stack: Optional[str] = None
    context: Optional[dict] = None


class LogAckResponse(BaseModel):
    ok: bool


# ============ Health ============


class HealthResponse(BaseModel):
    ok: bool
    timestamp: str
    clients: int
    rooms: int = 0
