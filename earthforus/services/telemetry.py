"""
Telemetry port – the single logging seam for the chat registry and client
"""

import logging
from typing import Any, Optional

from earthforus.services.error_logger import ErrorLog

logger = logging.getLogger("earthforus.chat")


class ChatTelemetry:
    """Route chat lifecycle events to the logger and the error log sink.

    The registry and the reconnecting client never call ``logging`` or the
    error log directly; tests swap this object for a recording one.
    """

    def __init__(
        self,
        error_log: Optional[ErrorLog] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.error_log = error_log
        self.log = log or logger

    def debug(self, event: str, **fields: Any) -> None:
        self.log.debug("%s %s", event, fields)

    def info(self, event: str, **fields: Any) -> None:
        self.log.info("%s %s", event, fields)

    def warning(self, event: str, **fields: Any) -> None:
        self.log.warning("%s %s", event, fields)

    def error(self, event: str, error: Optional[BaseException] = None, **fields: Any) -> None:
        if error is not None:
            fields["error"] = repr(error)
        self.log.error("%s %s", event, fields)

    def client_disconnected(self, client_id: str, total_clients: int) -> None:
        details = {"clientId": client_id, "totalClients": total_clients}
        self.info("client_disconnected", **details)
        if self.error_log is not None:
            self.error_log.chat_disconnected(details)

    def transport_error(self, client_id: str, error: BaseException) -> None:
        self.error("client_error", error, clientId=client_id)
        if self.error_log is not None:
            self.error_log.log_error(
                "WebSocket Client Error", error, {"clientId": client_id}
            )
