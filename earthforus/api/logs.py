from fastapi import APIRouter, Request, status
import logging

from earthforus.models import ClientErrorReport, LogAckResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/logs", tags=["logs"])


@router.post(
    "/error", response_model=LogAckResponse, status_code=status.HTTP_201_CREATED
)
def report_client_error(report: ClientErrorReport, request: Request):
    """Persist an error reported by a browser client."""
    error_type = report.type or "Client Error"
    message = report.message or ""
    logger.error("received_client_error type=%s message=%s", error_type, message)
    request.app.state.error_log.log_error(
        error_type, {"message": message, "stack": report.stack}, report.context
    )
    return {"ok": True}
