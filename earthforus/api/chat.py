from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
import logging
import sqlite3
from typing import List

from earthforus import config
from earthforus.database import db_session, dict_from_row
from earthforus.models import ChatMessage, ChatMessageCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


def _row_to_message(row) -> ChatMessage:
    data = dict_from_row(row)
    data["is_system"] = bool(data.get("is_system"))
    return ChatMessage(**data)


def _validate_event_id(event_id: int) -> int:
    if event_id <= 0:
        logger.warning("invalid_event_id %s", event_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event ID"
        )
    return event_id


@router.get("/events/{event_id}/messages", response_model=List[ChatMessage])
def get_chat_messages(
    request: Request,
    event_id: int,
    limit: int = Query(config.CHAT_HISTORY_LIMIT, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db=Depends(db_session),
):
    """List persisted messages of an event, oldest first."""
    _validate_event_id(event_id)
    try:
        rows = db.execute(
            """
            SELECT id, event_id, user_id, user_name, message, is_system, created_at
            FROM event_chat_messages
            WHERE event_id = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ? OFFSET ?
            """,
            (event_id, limit, offset),
        ).fetchall()
    except sqlite3.Error as e:
        logger.error("get_chat_messages_error event=%s: %s", event_id, e)
        request.app.state.error_log.chat_failed_to_load_messages(
            event_id, {"error": str(e)}
        )
        raise HTTPException(status_code=500, detail="Failed to load chat messages")

    messages = [_row_to_message(r) for r in rows]
    logger.debug("chat_messages_retrieved event=%s count=%d", event_id, len(messages))
    return messages


@router.post(
    "/events/{event_id}/messages",
    response_model=ChatMessage,
    status_code=status.HTTP_201_CREATED,
)
def create_chat_message(
    request: Request,
    event_id: int,
    payload: ChatMessageCreate,
    db=Depends(db_session),
):
    """Persist a chat message and return it with its id and creation time."""
    _validate_event_id(event_id)
    if payload.event_id is not None and payload.event_id != event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event ID in body does not match the URL",
        )

    text = (payload.message or "").strip()
    if not text:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message is required and cannot be empty",
        )
    if len(text) > config.CHAT_MESSAGE_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Message is too long (max {config.CHAT_MESSAGE_MAX_LENGTH} characters)",
        )
    if payload.user_id is None:
        logger.warning("unauthorized_chat_attempt event=%s", event_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required"
        )

    user_name = (payload.user_name or "").strip() or "Anonymous User"
    try:
        cur = db.execute(
            "INSERT INTO event_chat_messages (event_id, user_id, user_name, message) VALUES (?, ?, ?, ?)",
            (event_id, payload.user_id, user_name, text),
        )
        db.commit()
        row = db.execute(
            """
            SELECT id, event_id, user_id, user_name, message, is_system, created_at
            FROM event_chat_messages WHERE id = ?
            """,
            (cur.lastrowid,),
        ).fetchone()
    except sqlite3.Error as e:
        db.rollback()
        logger.error("create_chat_message_error event=%s: %s", event_id, e)
        request.app.state.error_log.log(
            "Chat Error",
            "Failed to create chat message",
            {"eventId": event_id, "error": str(e)},
        )
        raise HTTPException(status_code=500, detail="Failed to create chat message")

    message = _row_to_message(row)
    logger.info("chat_message_created id=%s event=%s", message.id, event_id)
    return message
