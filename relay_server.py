"""
Interview Session Relay Service

Real-time collaboration relay for live coding interviews. Participants of
one interview connect over WebSocket; code, notes, test-result and
AI-insight updates from one participant are forwarded to the others, and
proctoring screenshots are written to disk.

Endpoints:
    WS   /ws?interviewId=..&userId=..&role=..   - Join an interview room
    WS   /?interviewId=..&userId=..&role=..     - Same, for clients that connect at the root
    GET  /health                                 - Health check
    GET  /stats                                  - Statistics
    GET  /rooms/{interview_id}                   - Participants connected to a room
    GET  /api/interviews/{id}/screenshots        - List stored screenshots
    GET  /api/interviews/{id}/screenshots/{user_id}/{filename} - Serve one screenshot

Identity (interviewId, userId, role) is taken from the query string only and
is trusted as resolved by the upstream authentication gate.

Internal binding: configured by RELAY_HOST/RELAY_PORT (default 0.0.0.0:3001)
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, AsyncIterator, Optional, TypedDict

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import HTTPConnection
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from session_relay import (
    DEFAULT_SEND_TIMEOUT,
    HandshakeRejectedError,
    ScreenshotReadError,
    ScreenshotStore,
    SessionRelay,
    __version__,
)

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "Interview Session Relay"


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_CORS_ORIGINS = (
    "http://localhost:3000",  # React dev server
    "http://localhost:5173",  # Vite dev server
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class RuntimeConfig:
    """Runtime config for one relay process."""

    host: str
    port: int
    screenshot_dir: Path
    idle_timeout_seconds: float
    reap_interval_seconds: float
    presence_events: bool
    cors_origins: tuple[str, ...]
    send_timeout_seconds: float = DEFAULT_SEND_TIMEOUT


def _read_float(name: str, default: str) -> float:
    raw = (os.environ.get(name, default) or "").strip()
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number. Got: {raw}") from exc
    if value < 0:
        raise RuntimeError(f"{name} must be >= 0. Got: {value}.")
    return value


def load_runtime_config() -> RuntimeConfig:
    """Load runtime config from environment with strict validation."""
    host = (os.environ.get("RELAY_HOST", "0.0.0.0") or "").strip()
    if not host:
        raise RuntimeError("RELAY_HOST resolved to empty value.")

    port_raw = (os.environ.get("RELAY_PORT", "3001") or "").strip()
    if not port_raw:
        raise RuntimeError("RELAY_PORT resolved to empty value.")

    try:
        port = int(port_raw)
    except ValueError as exc:
        raise RuntimeError(f"RELAY_PORT must be an integer. Got: {port_raw}") from exc

    if port < 1 or port > 65535:
        raise RuntimeError(f"RELAY_PORT must be in range 1-65535. Got: {port}.")

    screenshot_override = (os.environ.get("SCREENSHOT_DIR") or "").strip()
    if screenshot_override:
        screenshot_dir = Path(screenshot_override).expanduser()
    else:
        screenshot_dir = Path.cwd() / "screenshots"

    idle_timeout_seconds = _read_float("RELAY_IDLE_TIMEOUT_SECONDS", "0")
    reap_interval_seconds = _read_float("RELAY_REAP_INTERVAL_SECONDS", "30")
    if idle_timeout_seconds > 0 and reap_interval_seconds <= 0:
        raise RuntimeError(
            "RELAY_REAP_INTERVAL_SECONDS must be > 0 when idle reaping is enabled."
        )

    send_timeout_seconds = _read_float("RELAY_SEND_TIMEOUT_SECONDS", str(DEFAULT_SEND_TIMEOUT))
    if send_timeout_seconds <= 0:
        raise RuntimeError("RELAY_SEND_TIMEOUT_SECONDS must be > 0.")

    presence_raw = (os.environ.get("RELAY_PRESENCE_EVENTS", "false") or "").strip().lower()
    if presence_raw in _TRUE_VALUES:
        presence_events = True
    elif presence_raw in _FALSE_VALUES:
        presence_events = False
    else:
        raise RuntimeError(
            f"RELAY_PRESENCE_EVENTS must be true or false. Got: {presence_raw}"
        )

    cors_raw = os.environ.get("CORS_ORIGINS")
    if cors_raw is None:
        cors_origins = DEFAULT_CORS_ORIGINS
    else:
        cors_origins = tuple(origin.strip() for origin in cors_raw.split(",") if origin.strip())

    return RuntimeConfig(
        host=host,
        port=port,
        screenshot_dir=screenshot_dir,
        idle_timeout_seconds=idle_timeout_seconds,
        reap_interval_seconds=reap_interval_seconds,
        presence_events=presence_events,
        cors_origins=cors_origins,
        send_timeout_seconds=send_timeout_seconds,
    )


# =============================================================================
# Response Models
# =============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    ok: bool = Field(default=False)
    error: str = Field(..., description="Error description")
    error_code: str | None = Field(default=None, description="Machine-readable error code")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: str = Field(..., description="Current server timestamp")
    connections: int = Field(..., description="Open relay connections")


class StatsResponse(BaseModel):
    """Statistics response."""

    stats: dict[str, Any] = Field(..., description="Relay counters")
    open_connections: int = Field(..., description="Open relay connections")
    active_rooms: dict[str, int] = Field(
        default_factory=dict, description="Open connections per interview id"
    )
    pending_screenshot_writes: int = Field(..., description="Screenshot writes in flight")
    screenshot_directory: str = Field(..., description="Screenshot root directory")
    presence_events: bool = Field(..., description="Whether presence events are emitted")
    idle_timeout_seconds: float = Field(..., description="Idle reaping threshold, 0 = off")
    send_timeout_seconds: float = Field(..., description="Per-send timeout before a recipient is dropped")


class Participant(BaseModel):
    """One connection in a room."""

    connectionId: str
    userId: str
    role: str
    connectedAt: str


class RoomResponse(BaseModel):
    """Participants currently connected to one interview."""

    interview_id: str
    participants: list[Participant] = Field(default_factory=list)


class ScreenshotEntry(BaseModel):
    """One stored screenshot."""

    filename: str
    userId: str
    url: str


# =============================================================================
# Application State (Type-safe Lifespan State)
# =============================================================================


class AppState(TypedDict):
    """Type-safe application state managed by lifespan."""

    relay: SessionRelay
    screenshot_store: ScreenshotStore
    config: RuntimeConfig
    reaper_task: asyncio.Task[None] | None


# =============================================================================
# Custom Exceptions
# =============================================================================


class RelayServiceError(Exception):
    """Base exception for relay HTTP errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class ScreenshotNotFoundError(RelayServiceError):
    """Raised when a requested screenshot does not exist."""

    def __init__(self, message: str = "Screenshot not found") -> None:
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="SCREENSHOT_NOT_FOUND",
        )


# =============================================================================
# Dependencies
# =============================================================================


def get_app_state(connection: HTTPConnection) -> AppState:
    """
    Dependency to retrieve application state from a request or websocket.

    Raises:
        RuntimeError: If state is not properly initialized.
    """
    state = getattr(connection, "state", None)
    if state is None or not hasattr(state, "relay"):
        raise RuntimeError("Application state not initialized")
    return AppState(
        relay=state.relay,
        screenshot_store=state.screenshot_store,
        config=state.config,
        reaper_task=state.reaper_task,
    )


AppStateDep = Annotated[AppState, Depends(get_app_state)]


# =============================================================================
# Background Tasks
# =============================================================================


async def idle_reaper_loop(relay: SessionRelay, interval_seconds: float) -> None:
    """
    Periodically close connections that have gone quiet.

    Args:
        relay: Relay whose connections are scanned.
        interval_seconds: Delay between scans.
    """
    logger.info(
        "Idle reaper started (timeout=%.1fs, interval=%.1fs)",
        relay.idle_timeout,
        interval_seconds,
    )
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            reaped = await relay.reap_idle()
            if reaped:
                logger.info("Idle reaper closed %d connection(s)", reaped)
        except asyncio.CancelledError:
            logger.info("Idle reaper cancelled")
            break
        except Exception as e:
            logger.error("Error in idle reaper loop: %s", e, exc_info=True)


# =============================================================================
# Exception Handlers
# =============================================================================


async def relay_service_error_handler(request: Request, exc: RelayServiceError) -> JSONResponse:
    """Render RelayServiceError as ErrorResponse."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            ok=False,
            error=exc.message,
            error_code=exc.error_code,
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            ok=False,
            error="Internal server error",
            error_code="INTERNAL_ERROR",
        ).model_dump(),
    )


# =============================================================================
# Endpoints
# =============================================================================


async def relay_websocket(
    websocket: WebSocket,
    state: AppStateDep,
    interview_id: Annotated[Optional[str], Query(alias="interviewId")] = None,
    user_id: Annotated[Optional[str], Query(alias="userId")] = None,
    role: Annotated[Optional[str], Query()] = None,
) -> None:
    """
    Join an interview room and relay messages until the socket closes.

    Frames are JSON objects of the form ``{"type": ..., "payload": {...}}``.
    Connections without ``interviewId`` or ``userId`` are closed with code
    1008 before the handshake completes.
    """
    relay = state["relay"]

    try:
        connection = await relay.accept(websocket, interview_id, user_id, role)
    except HandshakeRejectedError:
        return
    except Exception as e:
        logger.warning("Handshake for %s/%s failed: %r", interview_id, user_id, e)
        return

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                raw = frame.get("bytes") or b""
            await relay.handle_message(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.handle_close(connection)


async def health(state: AppStateDep) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        connections=state["relay"].connection_count,
    )


async def get_stats(state: AppStateDep) -> StatsResponse:
    """Get current relay statistics."""
    relay = state["relay"]
    config = state["config"]
    return StatsResponse(
        stats=dict(relay.stats),
        open_connections=relay.connection_count,
        active_rooms=relay.active_rooms(),
        pending_screenshot_writes=relay.pending_writes,
        screenshot_directory=str(state["screenshot_store"].root_dir),
        presence_events=relay.presence_events,
        idle_timeout_seconds=config.idle_timeout_seconds,
        send_timeout_seconds=relay.send_timeout,
    )


async def get_room(interview_id: str, state: AppStateDep) -> RoomResponse:
    """List the participants currently connected to one interview."""
    return RoomResponse(
        interview_id=interview_id,
        participants=[
            Participant(**participant)
            for participant in state["relay"].room_snapshot(interview_id)
        ],
    )


async def list_screenshots(interview_id: str, state: AppStateDep) -> list[ScreenshotEntry]:
    """List stored screenshots for an interview."""
    return [
        ScreenshotEntry(**info.to_dict())
        for info in state["screenshot_store"].list_screenshots(interview_id)
    ]


async def get_screenshot(
    interview_id: str,
    user_id: str,
    filename: str,
    state: AppStateDep,
) -> FileResponse:
    """
    Serve one stored screenshot.

    Raises:
        ScreenshotNotFoundError: If no such screenshot exists.
    """
    try:
        path = state["screenshot_store"].resolve(interview_id, user_id, filename)
    except ScreenshotReadError as e:
        logger.info("Screenshot lookup failed: %s", e)
        raise ScreenshotNotFoundError() from e
    return FileResponse(path, media_type="image/png")


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(config: RuntimeConfig | None = None) -> FastAPI:
    """
    Build the relay application.

    Args:
        config: Runtime config. Loaded from the environment when omitted.

    Returns:
        Configured FastAPI application. Relay state is created by the
        lifespan, so every app gets its own independent relay.
    """
    runtime_config = config if config is not None else load_runtime_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[dict[str, Any]]:
        logger.info("Starting %s v%s", SERVICE_NAME, __version__)
        logger.info(
            "Runtime: host=%s port=%d presence_events=%s idle_timeout=%.1fs",
            runtime_config.host,
            runtime_config.port,
            runtime_config.presence_events,
            runtime_config.idle_timeout_seconds,
        )

        runtime_config.screenshot_dir.mkdir(parents=True, exist_ok=True)
        screenshot_store = ScreenshotStore(runtime_config.screenshot_dir)
        logger.info("Screenshot directory: %s", runtime_config.screenshot_dir)

        relay = SessionRelay(
            screenshot_store,
            presence_events=runtime_config.presence_events,
            idle_timeout=runtime_config.idle_timeout_seconds,
            send_timeout=runtime_config.send_timeout_seconds,
        )

        reaper_task: asyncio.Task[None] | None = None
        if runtime_config.idle_timeout_seconds > 0:
            reaper_task = asyncio.create_task(
                idle_reaper_loop(relay, runtime_config.reap_interval_seconds)
            )

        yield {
            "relay": relay,
            "screenshot_store": screenshot_store,
            "config": runtime_config,
            "reaper_task": reaper_task,
        }

        # Shutdown
        logger.info("Shutting down...")
        if reaper_task is not None:
            reaper_task.cancel()
            try:
                await reaper_task
            except asyncio.CancelledError:
                pass
        await relay.wait_for_pending_writes()
        await relay.wait_for_pending_closes()

    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        description="Per-interview WebSocket relay for code, notes and proctoring updates",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(runtime_config.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        max_age=3600,
    )

    app.add_exception_handler(RelayServiceError, relay_service_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.add_api_websocket_route("/ws", relay_websocket)
    app.add_api_websocket_route("/", relay_websocket)
    app.add_api_route("/health", health, methods=["GET"], response_model=HealthResponse)
    app.add_api_route("/stats", get_stats, methods=["GET"], response_model=StatsResponse)
    app.add_api_route(
        "/rooms/{interview_id}", get_room, methods=["GET"], response_model=RoomResponse
    )
    app.add_api_route(
        "/api/interviews/{interview_id}/screenshots",
        list_screenshots,
        methods=["GET"],
        response_model=list[ScreenshotEntry],
    )
    app.add_api_route(
        "/api/interviews/{interview_id}/screenshots/{user_id}/{filename}",
        get_screenshot,
        methods=["GET"],
        response_class=FileResponse,
    )
    return app


RUNTIME_CONFIG = load_runtime_config()
app = create_app(RUNTIME_CONFIG)


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    logger.info("=" * 60)
    logger.info(SERVICE_NAME)
    logger.info("=" * 60)
    logger.info("Binding to: http://%s:%d", RUNTIME_CONFIG.host, RUNTIME_CONFIG.port)
    logger.info("")
    logger.info("Endpoints:")
    logger.info("  WS   /ws?interviewId=&userId=&role=  - Join interview room")
    logger.info("  GET  /health                         - Health check")
    logger.info("  GET  /stats                          - Statistics")
    logger.info("  GET  /rooms/{interview_id}           - Room participants")
    logger.info("  GET  /api/interviews/{id}/screenshots - Stored screenshots")
    logger.info("")
    logger.info("Screenshots saved to: %s", RUNTIME_CONFIG.screenshot_dir)
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=RUNTIME_CONFIG.host,
        port=RUNTIME_CONFIG.port,
        log_level="info",
    )
