"""
Process-local registry of connected chat sockets.
One connection per user; a newer connection replaces the older one.
"""
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

REPLACED_CLOSE_CODE = 4000


@dataclass
class ConnectionInfo:
    websocket: WebSocket
    user_id: str
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionManager:
    def __init__(self) -> None:
        # user_id -> ConnectionInfo
        self._connections: Dict[str, ConnectionInfo] = {}
        self._total_connections: int = 0
        self._total_events_sent: int = 0

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    def is_online(self, user_id: Any) -> bool:
        return str(user_id) in self._connections

    async def connect(self, websocket: WebSocket, user_id: Any) -> None:
        """Accept the socket and register it, closing any previous socket of the same user"""
        key = str(user_id)
        previous = self._connections.get(key)
        if previous is not None:
            await self._close(previous, REPLACED_CLOSE_CODE)

        await websocket.accept()
        self._connections[key] = ConnectionInfo(websocket=websocket, user_id=key)
        self._total_connections += 1
        logger.info(f"User {key} connected to chat ({self.active_connections} online)")

    def disconnect(self, user_id: Any, websocket: Optional[WebSocket] = None) -> None:
        """
        Forget a user's socket. When `websocket` is given, only that exact socket is removed,
        so a stale handler cannot unregister a newer connection.
        """
        key = str(user_id)
        conn = self._connections.get(key)
        if conn is None:
            return
        if websocket is not None and conn.websocket is not websocket:
            return
        del self._connections[key]
        logger.info(f"User {key} disconnected from chat")

    async def send_event(self, user_id: Any, event: str, data: Any) -> bool:
        """
        Push an event to a user if they are online.

        Returns:
            True if delivered, False if the user is offline or the socket failed
        """
        key = str(user_id)
        conn = self._connections.get(key)
        if conn is None:
            return False

        try:
            await conn.websocket.send_json({"event": event, "data": jsonable_encoder(data)})
            self._total_events_sent += 1
            return True
        except Exception as e:
            logger.warning(f"Dropping broken socket for user {key}: {str(e)}")
            self.disconnect(key, conn.websocket)
            return False

    async def _close(self, conn: ConnectionInfo, code: int) -> None:
        try:
            await conn.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Closing socket for user {conn.user_id} failed: {str(e)}")

    def get_stats(self) -> Dict[str, int]:
        return {
            "active_connections": self.active_connections,
            "total_connections_ever": self._total_connections,
            "total_events_sent": self._total_events_sent,
        }


manager = ConnectionManager()
