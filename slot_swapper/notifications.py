# notifications.py
import json
import logging
from typing import Dict, List

import fastapi

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Live WebSocket sessions grouped by user id.

    Delivery is best effort: users with no open session simply miss the
    message, and sockets that fail on send are dropped.
    """

    def __init__(self):
        self.active_connections: Dict[str, List[fastapi.WebSocket]] = {}

    async def connect(self, user_id: str, websocket: fastapi.WebSocket):
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)
        logger.info(f"User {user_id} connected ({len(self.active_connections[user_id])} session(s))")

    def disconnect(self, user_id: str, websocket: fastapi.WebSocket):
        connections = self.active_connections.get(user_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self.active_connections.pop(user_id, None)
        logger.info(f"User {user_id} disconnected")

    async def notify(self, user_id: str, message: str, kind: str = "notification") -> int:
        """Send ``message`` to every live session of ``user_id``; returns how many got it."""
        payload = json.dumps({"type": kind, "data": {"message": message}})
        delivered = 0
        for connection in list(self.active_connections.get(user_id, [])):
            try:
                await connection.send_text(payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead session of user {user_id}: {e}")
                self.disconnect(user_id, connection)
        return delivered


manager = ConnectionManager()
