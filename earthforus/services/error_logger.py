"""
Error log sink – Append markdown entries to the shared error log file
"""

import json
import logging
import queue
import traceback
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def sanitize(value: Any) -> str:
    """Render a details/context value as a single string."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseException):
        return str(value)
    try:
        return json.dumps(value, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


class MarkdownEntryFormatter(logging.Formatter):
    """Format a record as one markdown entry terminated by ``---``."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, timezone.utc)
        lines = [
            f"[{timestamp.isoformat(timespec='milliseconds').replace('+00:00', 'Z')}] "
            f"{getattr(record, 'category', 'Error')}",
            record.getMessage(),
        ]
        stack = getattr(record, "stack", None)
        if stack:
            lines.append(f"Stack: {stack}")
        context = getattr(record, "context", None)
        if context:
            lines.append(f"Details: {sanitize(context)}")
        lines.append("---")
        return "\n".join(lines)


class ErrorLog:
    """Fire-and-forget writer for the error log file.

    Entries are handed to a queue and written by a background listener thread,
    so callers on the event loop never wait on file I/O.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(self.path, encoding="utf-8", delay=True)
        file_handler.setFormatter(MarkdownEntryFormatter())

        self._queue: "queue.Queue[logging.LogRecord]" = queue.Queue()
        self._listener = QueueListener(self._queue, file_handler)
        self._file_handler = file_handler

        # Unregistered logger so each sink owns its own handler
        self._logger = logging.Logger(f"earthforus.error_log[{self.path}]")
        self._logger.propagate = False
        self._logger.addHandler(QueueHandler(self._queue))

        self._listener.start()
        self._closed = False

    def log(self, category: str, message: str, details: Any = None) -> None:
        self._emit(category, message, None, details)

    def log_error(
        self, name: str, error: Any, context: Optional[dict] = None
    ) -> None:
        if isinstance(error, BaseException):
            message = str(error) or error.__class__.__name__
            stack = None
            if error.__traceback__ is not None:
                stack = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ).strip()
        elif isinstance(error, dict):
            message = str(error.get("message") or "")
            stack = error.get("stack")
        else:
            message = sanitize(error)
            stack = None
        self._emit(name, message, stack, context)

    def chat_disconnected(self, details: Optional[dict] = None) -> None:
        normal = bool(details and details.get("isNormalDisconnection") is True)
        if normal:
            self.log("Connection", "Disconnected from real-time chat", details)
        else:
            self.log(
                "Connection Error", "Abnormal disconnection from real-time chat", details
            )

    def chat_failed_to_load_messages(self, event_id: int, details: Any = None) -> None:
        context = {"eventId": event_id}
        if isinstance(details, dict):
            context.update(details)
        elif details is not None:
            context["error"] = sanitize(details)
        self.log("Chat Error", "Failed to load chat messages", context)

    def server_error(self, route: str, details: Any = None) -> None:
        context = {"route": route}
        if isinstance(details, dict):
            context.update(details)
        elif details is not None:
            context["error"] = sanitize(details)
        self.log("Server Error", "Unhandled server error", context)

    def close(self) -> None:
        """Flush pending entries and release the file."""
        if self._closed:
            return
        self._closed = True
        self._listener.stop()
        self._file_handler.close()

    def _emit(self, category: str, message: str, stack: Optional[str], context: Any):
        if self._closed:
            logger.warning("error log closed, dropping entry: %s %s", category, message)
            return
        self._logger.error(
            message,
            extra={"category": category, "stack": stack, "context": context},
        )
