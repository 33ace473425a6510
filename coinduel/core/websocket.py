"""
WebSocket manager for real-time duel updates.
Owns the socket for every attached connection and delivers outbound events.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from fastapi import WebSocket
import orjson

from coinduel.core.logger import get_logger

logger = get_logger("websocket")

# RFC 6455 close codes worth naming in logs
WS_CLOSE_CODES = {
    1000: "normal_closure",
    1001: "going_away",
    1002: "protocol_error",
    1003: "unsupported_data",
    1005: "no_status_received",
    1006: "abnormal_closure",
    1008: "policy_violation",
    1009: "message_too_big",
    1011: "internal_error",
    1012: "service_restart",
}


def normalize_ws_close_code(code: Optional[int]) -> str:
    if code is None:
        return "unknown"
    return WS_CLOSE_CODES.get(code, f"code_{code}")


@dataclass(frozen=True)
class Notification:
    """One outbound event addressed to one connection."""

    target: str
    event: str
    payload: Dict = field(default_factory=dict)

    def frame(self) -> Dict:
        return {"type": self.event, **self.payload}


class ConnectionManager:
    """
    Maps connection handles to live sockets.

    Delivery is best effort: a missing or closed socket is logged and
    skipped so one player's drop never blocks the other player's update.
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def _send_json(self, websocket: WebSocket, data: dict):
        """orjson.dumps returns bytes, so we use send_bytes."""
        await websocket.send_bytes(orjson.dumps(data))

    async def connect(self, websocket: WebSocket, connection_ref: str):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections[connection_ref] = websocket
        logger.info(
            f"WebSocket connected: ref={connection_ref}, total={len(self.active_connections)}"
        )

    def disconnect(self, connection_ref: str):
        """Forget a connection. Safe to call twice."""
        self.active_connections.pop(connection_ref, None)
        logger.info(f"WebSocket disconnected: total={len(self.active_connections)}")

    async def notify(self, connection_ref: str, event: str, payload: dict = None) -> bool:
        """Send one event. Returns False when the connection could not be reached."""
        websocket = self.active_connections.get(connection_ref)
        if websocket is None:
            logger.warning(f"Dropping '{event}' for unknown connection {connection_ref}")
            return False
        try:
            await self._send_json(websocket, {"type": event, **(payload or {})})
            return True
        except Exception as e:
            logger.warning(f"Failed to send '{event}' to {connection_ref}: {e}")
            return False

    async def _deliver_in_order(self, connection_ref: str, notifications: List[Notification]):
        for n in notifications:
            if not await self.notify(connection_ref, n.event, n.payload):
                break

    async def deliver(self, notifications: Iterable[Notification]):
        """
        Send a batch of notifications. Events for one connection keep their
        order; different connections are served independently.
        """
        by_target: Dict[str, List[Notification]] = {}
        for n in notifications:
            by_target.setdefault(n.target, []).append(n)
        if not by_target:
            return
        await asyncio.gather(
            *(self._deliver_in_order(ref, batch) for ref, batch in by_target.items()),
            return_exceptions=True,
        )

    def get_connection_count(self) -> int:
        """Get number of active connections."""
        return len(self.active_connections)


# Global WebSocket manager instance
ws_manager = ConnectionManager()
