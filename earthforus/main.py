from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from earthforus import config
from earthforus.database import init_db
from earthforus.api import chat, logs, ws
from earthforus.models import HealthResponse
from earthforus.services.error_logger import ErrorLog
from earthforus.services.telemetry import ChatTelemetry
from earthforus.services.ws_manager import ConnectionRegistry

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic stderr handler at LOG_LEVEL (DEBUG when DEBUG=true)."""
    level = level or ("DEBUG" if config.DEBUG else config.LOG_LEVEL)
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


def create_app(
    registry: Optional[ConnectionRegistry] = None,
    error_log: Optional[ErrorLog] = None,
) -> FastAPI:
    """Build the API: chat persistence, client error sink and the chat socket."""
    init_db()
    error_log = error_log or ErrorLog(config.ERROR_LOG_PATH)
    registry = registry or ConnectionRegistry(telemetry=ChatTelemetry(error_log))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.error_log.close()

    app = FastAPI(
        title="EarthForUs API",
        description="Volunteer event coordination: chat persistence and real-time relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.error_log = error_log

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_errors_middleware(request: Request, call_next):
        """Log requests that result in 4xx/5xx responses."""
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception(
                "Exception handling request %s %s", request.method, request.url
            )
            request.app.state.error_log.server_error(
                request.url.path, {"error": str(exc)}
            )
            raise

        if response.status_code >= 400:
            logger.warning(
                "[HTTP %s] %s %s", response.status_code, request.method, request.url
            )
        return response

    # Include routers
    app.include_router(chat.router)
    app.include_router(logs.router)
    app.include_router(ws.router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        stats = app.state.registry.get_stats()
        return {
            "ok": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "clients": stats["total_connections"],
            "rooms": stats["total_rooms"],
        }

    return app


# Serve with: uvicorn earthforus.main:create_app --factory
if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(
        "earthforus.main:create_app",
        factory=True,
        host=config.API_HOST,
        port=config.API_PORT,
    )
