"""FastAPI REST and WebSocket interface for the TCP sensor.

Single-process, single-sensor lifecycle with thread-safe access to:
- SensorController (TCP session, handshake supervision, polling)
- EventHub (event fan-out to WebSocket clients, latest reading)

Error mapping:
- NotConnectedError → 503
- Other TCPSensorError → 500
"""

import asyncio
import logging
import os
import queue
import subprocess
from pathlib import Path
from threading import RLock
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tcp_sensor_lib import SensorController, __version__
from tcp_sensor_lib import protocol
from tcp_sensor_lib.errors import NotConnectedError, TCPSensorError
from tcp_sensor_lib.events import EventHub
from tcp_sensor_lib.models import SessionConfig

# =============================================================================
# Environment Configuration
# =============================================================================

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "9150"))
SENSOR_HOST = os.getenv("SENSOR_HOST", protocol.DEFAULT_HOST)
SENSOR_PORT = int(os.getenv("SENSOR_PORT", str(protocol.DEFAULT_PORT)))
HANDSHAKE_TIMEOUT_S = float(os.getenv("HANDSHAKE_TIMEOUT_S", str(protocol.HANDSHAKE_TIMEOUT)))
POLL_DELAY_S = float(os.getenv("POLL_DELAY_S", str(protocol.DELAY_BEFORE_POLLING)))
POLL_INTERVAL_S = float(os.getenv("POLL_INTERVAL_S", str(protocol.POLLING_INTERVAL)))
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000"
).split(",")

# Version tracking
API_VERSION = __version__
try:
    GIT_COMMIT = subprocess.check_output(
        ["git", "rev-parse", "--short", "HEAD"],
        cwd=Path(__file__).parent.parent,
        stderr=subprocess.DEVNULL,
    ).decode().strip()
except (OSError, subprocess.CalledProcessError):
    GIT_COMMIT = "unknown"

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Global Singletons
# =============================================================================

_controller: Optional[SensorController] = None
_hub = EventHub()
_lock = RLock()  # Protects state-changing operations

# =============================================================================
# FastAPI App
# =============================================================================

app = FastAPI(
    title="TCP Sensor API",
    description="REST and WebSocket interface for the TCP environmental sensor",
    version=API_VERSION
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_404_requests(request: Request, call_next):
    """Log all 404 responses to help debug missing routes."""
    response = await call_next(request)
    if response.status_code == 404:
        logger.warning(f"404 NOT FOUND: {request.method} {request.url.path}")
    return response

# =============================================================================
# Request/Response Models
# =============================================================================


class StatusResponse(BaseModel):
    """Response for GET /status."""
    connected: bool
    polling: bool
    state: str
    host: str
    port: int


class StatusMessage(BaseModel):
    """Response for the command endpoints."""
    status: str


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(NotConnectedError)
async def not_connected_handler(request: Request, exc: NotConnectedError):
    """Map NotConnectedError to 503 Service Unavailable."""
    logger.error(f"NotConnectedError: {exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(TCPSensorError)
async def sensor_error_handler(request: Request, exc: TCPSensorError):
    """Map any other library error to 500."""
    logger.error(f"{type(exc).__name__}: {exc}")
    return JSONResponse(status_code=500, content={"detail": str(exc)})


def _session_config(host: str, port: int) -> SessionConfig:
    """Build the session config from the environment-backed settings."""
    try:
        return SessionConfig(
            host=host,
            port=port,
            handshake_timeout_s=HANDSHAKE_TIMEOUT_S,
            poll_delay_s=POLL_DELAY_S,
            poll_interval_s=POLL_INTERVAL_S,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# =============================================================================
# Read-Only Endpoints
# =============================================================================

@app.get("/status", response_model=StatusResponse)
async def get_status():
    """Get current connection and polling status."""
    controller = _controller

    if controller is None:
        return StatusResponse(
            connected=False,
            polling=False,
            state="disconnected",
            host=SENSOR_HOST,
            port=SENSOR_PORT,
        )

    return StatusResponse(
        connected=controller.is_connected(),
        polling=controller.is_polling(),
        state=controller.state.value,
        host=controller.config.host,
        port=controller.config.port,
    )


@app.get("/latest")
async def get_latest():
    """Get the most recent reading, or {} if none arrived yet."""
    latest = _hub.latest
    return latest.to_dict() if latest else {}


# =============================================================================
# Lifecycle Endpoints
# =============================================================================

@app.post("/connect", response_model=StatusMessage)
async def connect(
    host: Optional[str] = Query(None, description="Sensor address (default from SENSOR_HOST)"),
    port: Optional[int] = Query(None, description="Sensor port (default from SENSOR_PORT)"),
):
    """Start connecting to the sensor.

    Returns as soon as the connect attempt is under way. The outcome and
    every later event are pushed on WS /stream.

    Raises:
        400: If a session is already live or the parameters are invalid
    """
    global _controller

    with _lock:
        if _controller is not None and _controller.has_live_session():
            raise HTTPException(
                status_code=400,
                detail="Already connected. Disconnect first."
            )

        config = _session_config(host or SENSOR_HOST, port or SENSOR_PORT)
        logger.info(f"Connecting to {config.host}:{config.port}...")

        if _controller is not None:
            # Let the finished session's threads drain before a new one shares the hub
            _controller.wait_closed()

        _hub.clear_latest()
        _controller = SensorController(sink=_hub, config=config)
        _controller.connect()

        return StatusMessage(status="connecting")


@app.post("/disconnect", response_model=StatusMessage)
async def disconnect():
    """Stop polling and close the session. Safe when not connected."""
    global _controller

    with _lock:
        if _controller is not None:
            logger.info("Disconnecting from sensor...")
            _controller.disconnect()
            _controller.wait_closed()
            _controller = None

        return StatusMessage(status="disconnected")


@app.post("/polling/start", response_model=StatusMessage)
async def start_polling():
    """Start polling now, without waiting for the settling delay.

    Returns status "already_polling" when polling was already running.

    Raises:
        503: If no session is open
    """
    with _lock:
        if _controller is None or not _controller.is_connected():
            raise NotConnectedError("Not connected to device")

        if not _controller.start_polling():
            return StatusMessage(status="already_polling")
        return StatusMessage(status="polling")


@app.post("/polling/stop", response_model=StatusMessage)
async def stop_polling():
    """Stop polling. No-op when not polling."""
    with _lock:
        if _controller is not None:
            _controller.stop_polling()
        return StatusMessage(status="stopped")


# =============================================================================
# WebSocket Streaming
# =============================================================================

@app.websocket("/stream")
async def websocket_stream(websocket: WebSocket):
    """WebSocket endpoint pushing every engine event as JSON.

    Messages look like:
        {"event": "reading", "ts": "...", "reading": {...}}
        {"event": "connection_status", "ts": "...", "value": true}
        {"event": "error", "ts": "...", "message": "..."}
    """
    events = _hub.subscribe()
    try:
        await websocket.accept()
        logger.info(f"WebSocket client connected: {websocket.client}")

        while True:
            try:
                event = events.get_nowait()
            except queue.Empty:
                await asyncio.sleep(0.1)
                continue

            await websocket.send_json(event.to_dict())

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {websocket.client}")
    finally:
        _hub.unsubscribe(events)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "service": "TCP Sensor API",
        "version": API_VERSION,
        "status": "online"
    }


@app.get("/version")
async def version():
    """Version tracking endpoint for debugging and compatibility checks."""
    return {
        "api": API_VERSION,
        "git": GIT_COMMIT,
        "status": "online"
    }


# =============================================================================
# Startup/Shutdown Events
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Log startup configuration."""
    logger.info("=" * 60)
    logger.info("TCP Sensor API started")
    logger.info(f"Version: {API_VERSION}")
    logger.info(f"Git Commit: {GIT_COMMIT}")
    logger.info(f"Host: {API_HOST}")
    logger.info(f"Port: {API_PORT}")
    logger.info(f"Sensor: {SENSOR_HOST}:{SENSOR_PORT}")
    logger.info(
        f"Timing: handshake {HANDSHAKE_TIMEOUT_S}s, delay {POLL_DELAY_S}s, "
        f"interval {POLL_INTERVAL_S}s"
    )
    logger.info(f"CORS Origins: {CORS_ORIGINS}")
    logger.info(f"Log Level: {LOG_LEVEL}")
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    """Close the sensor session on shutdown."""
    global _controller

    logger.info("Shutting down TCP Sensor API...")

    with _lock:
        if _controller is not None:
            logger.info("Disconnecting controller...")
            _controller.disconnect()
            _controller.wait_closed()
            _controller = None


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
