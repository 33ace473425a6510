"""
Coin Duel Main Application Entry Point
FastAPI application serving the real-time multiplayer duel over WebSocket.
"""

import sys
from pathlib import Path

# Add parent directory to path so imports work when running directly
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

import time
import uuid
from collections import deque
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import orjson as json
import uvicorn

from coinduel.core.logger import init_logging, get_logger
from coinduel.config import settings
from coinduel.core.multiplayer.coordinator import coordinator
from coinduel.core.security import get_session_user
from coinduel.core.websocket import ws_manager, normalize_ws_close_code

# Initialize logging first
init_logging(
    level=settings.logging.level,
    log_to_file=settings.logging.log_to_file,
    formatter=settings.logging.formatter,
    log_file_path=settings.paths.get_log_path(),
)
logger = get_logger("main")
ws_logger = get_logger("websocket")


# WebSocket Rate Limiting
WS_MAX_MESSAGES = settings.server.ws_max_messages  # Max messages per connection
WS_RATE_LIMIT_SECONDS = settings.server.ws_rate_limit_seconds  # In this time window


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; connect-src 'self' ws: wss:; frame-ancestors 'none'"
        )

        return response


# ==================== UVLoop Integration =====================

try:
    import uvloop

    uvloop.install()
    logger.info("uvloop installed and enabled.")
except ImportError:
    logger.info("uvloop not found, using default asyncio event loop.")

# ==================== Application Setup ====================


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    coordinator.shutdown()
    logger.info("Pending duel timers cancelled")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.server.name,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if settings.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_websocket_route("/ws", websocket_endpoint)
    app.add_exception_handler(Exception, global_exception_handler)

    return app


async def health():
    return {
        "status": "ok",
        "connections": ws_manager.get_connection_count(),
        "online_players": len(coordinator.registry),
        "active_matches": coordinator.engine.active_count(),
    }


# ==================== WebSocket Endpoint ====================


async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for the multiplayer duel.
    Every frame is a JSON object with a "type" field; see the coordinator
    for the accepted message types.
    """
    client_ip = websocket.client.host if websocket.client else "unknown"
    username = await get_session_user(websocket)

    if not username:
        # Deny connection if user is not authenticated
        ws_logger.warning(
            "WebSocket connection denied due to invalid auth",
            extra={"client_ip": client_ip},
        )
        await websocket.accept()
        await websocket.send_bytes(json.dumps({"type": "error", "message": "Authentication failed"}))
        await websocket.close(code=1008)
        return

    connection_ref = uuid.uuid4().hex
    await ws_manager.connect(websocket, connection_ref)
    await coordinator.attach(connection_ref, username)
    ws_logger.info(
        "WebSocket connected", extra={"username": username, "client_ip": client_ip}
    )

    timestamps = deque()

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            data = frame.get("text") or frame.get("bytes") or b""

            # --- WebSocket Rate Limiting ---
            current_time = time.monotonic()
            while timestamps and timestamps[0] < current_time - WS_RATE_LIMIT_SECONDS:
                timestamps.popleft()

            if len(timestamps) >= WS_MAX_MESSAGES:
                ws_logger.warning(
                    "WebSocket rate limit exceeded",
                    extra={"username": username, "client_ip": client_ip},
                )
                # Silently drop the message
                continue

            timestamps.append(current_time)
            # --- End WebSocket Rate Limiting ---

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await ws_manager.notify(connection_ref, "error", {"message": "Malformed message"})
                continue

            await coordinator.handle(connection_ref, message)

    except WebSocketDisconnect as e:
        ws_logger.info(
            "WebSocket disconnected",
            extra={
                "username": username,
                "client_ip": client_ip,
                "ws_disconnect_code": e.code,
                "ws_disconnect_reason": normalize_ws_close_code(e.code),
            },
        )
    except Exception as e:
        ws_logger.error(
            "WebSocket error",
            extra={"username": username, "client_ip": client_ip, "error": str(e)},
        )
    finally:
        ws_manager.disconnect(connection_ref)
        await coordinator.detach(connection_ref)


# ==================== Global Exception Handler ====================


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions gracefully."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.server.debug else None,
        },
    )


app = create_app()

logger.info(f"Application '{settings.server.name}' initialized")
logger.info(f"Debug mode: {settings.server.debug}")


# ==================== Main Entry Point ====================

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "coinduel.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )
