"""
WebSocket Channel Manager

Keeps the local WebSocket subscribers of each logical channel
(``staff_12``, ``manager_m1``, ``branch_b1`` ...) and pushes published
events to them. Transports hand their deliveries to the process-wide
``ws_manager``.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import WebSocket, status

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket connections per logical channel."""

    MAX_CONNECTIONS_PER_CHANNEL = 1000

    def __init__(self):
        self.active_connections: dict[str, list[WebSocket]] = {}
        self.connection_metadata: dict[int, dict[str, Any]] = {}

    async def connect(
        self,
        websocket: WebSocket,
        channel: str,
        accept: bool = True,
    ) -> bool:
        """Subscribe a WebSocket to a channel.

        Returns True if the subscription was accepted, False if the channel
        is full.
        """
        if len(self.active_connections.get(channel, [])) >= self.MAX_CONNECTIONS_PER_CHANNEL:
            logger.warning(f"WebSocket connection rejected: channel '{channel}' at capacity")
            if accept:
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return False

        if accept:
            await websocket.accept()

        self.active_connections.setdefault(channel, []).append(websocket)
        self.connection_metadata[id(websocket)] = {
            "connected_at": datetime.now(timezone.utc),
            "channel": channel,
        }

        logger.debug(f"WebSocket subscribed to channel '{channel}'")
        return True

    def disconnect(self, websocket: WebSocket, channel: str) -> None:
        """Drop a WebSocket from a channel."""
        connections = self.active_connections.get(channel)
        if connections and websocket in connections:
            connections.remove(websocket)
            if not connections:
                del self.active_connections[channel]

        self.connection_metadata.pop(id(websocket), None)
        logger.debug(f"WebSocket unsubscribed from channel '{channel}'")

    async def broadcast(self, channel: str, message: dict[str, Any]) -> int:
        """Send a message to every subscriber of a channel.

        Returns the number of subscribers that received it.
        """
        connections = self.active_connections.get(channel)
        if not connections:
            return 0

        delivered = 0
        disconnected = []
        for connection in list(connections):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"WebSocket send failed on '{channel}': {e}")
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn, channel)

        return delivered

    def get_connection_count(self, channel: Optional[str] = None) -> int:
        """Get the number of active connections."""
        if channel:
            return len(self.active_connections.get(channel, []))
        return sum(len(conns) for conns in self.active_connections.values())


# Global connection manager instance
ws_manager = ConnectionManager()
