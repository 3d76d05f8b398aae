"""
Notification Bus
One WebSocket connection per authenticated user, used to push small JSON
events (new appointments, low stock alerts). Delivery is best-effort and
at-most-once: events for users without a live connection are dropped.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Notification event types"""
    NEW_APPOINTMENT = "new_appointment"
    LOW_STOCK_ALERT = "low_stock_alert"
    CONNECTED = "connected"
    PONG = "pong"


@dataclass
class NotificationEvent:
    """Structure for pushed events"""
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class ConnectedUser:
    """A user with a live notification socket"""
    user_id: str
    user_name: str
    websocket: WebSocket
    connected_at: datetime = field(default_factory=datetime.utcnow)


class NotificationBus:
    """
    Per-process registry of user connections.

    Connection state lives in memory only: it is created at start-up, dropped
    at shutdown and lost on restart. Clients reconnect.
    """

    def __init__(self):
        # user_id -> ConnectedUser
        self.active_connections: Dict[str, ConnectedUser] = {}
        self._lock: Optional[asyncio.Lock] = None

    @property
    def lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def connect(self, websocket: WebSocket, user_id: str, user_name: str) -> ConnectedUser:
        """Accept a connection, replacing any previous one of the same user"""
        await websocket.accept()

        async with self.lock:
            previous = self.active_connections.get(user_id)
            connection = ConnectedUser(user_id=user_id, user_name=user_name, websocket=websocket)
            self.active_connections[user_id] = connection

        if previous is not None:
            try:
                await previous.websocket.close()
            except RuntimeError as e:
                logger.debug(f"Previous socket of user {user_id} already closed: {e}")

        logger.info(f"User {user_id} ({user_name}) connected to notifications")
        return connection

    async def disconnect(self, user_id: str, websocket: Optional[WebSocket] = None):
        """Forget a user's connection; a stale socket never evicts its replacement"""
        async with self.lock:
            current = self.active_connections.get(user_id)
            if current is None:
                return
            if websocket is not None and current.websocket is not websocket:
                return
            del self.active_connections[user_id]
        logger.info(f"User {user_id} disconnected from notifications")

    def is_user_online(self, user_id: str) -> bool:
        return user_id in self.active_connections

    def get_online_users(self) -> List[str]:
        return list(self.active_connections.keys())

    async def send_notification(self, user_id: str, event: NotificationEvent) -> bool:
        """Push ``event`` to ``user_id``; False when it was dropped"""
        connection = self.active_connections.get(user_id)
        if connection is None:
            return False
        try:
            await connection.websocket.send_text(event.to_json())
            return True
        except Exception as e:
            logger.error(f"Failed to notify user {user_id}: {e}")
            await self.disconnect(user_id, connection.websocket)
            return False

    async def send_to_users(self, user_ids: Iterable[str], event: NotificationEvent) -> int:
        delivered = 0
        for user_id in user_ids:
            if await self.send_notification(user_id, event):
                delivered += 1
        return delivered

    async def shutdown(self):
        """Close every socket (application shutdown)"""
        connections = list(self.active_connections.values())
        self.active_connections.clear()
        for connection in connections:
            try:
                await connection.websocket.close()
            except RuntimeError as e:
                logger.debug(f"Socket of user {connection.user_id} already closed: {e}")
        logger.info(f"Notification bus closed {len(connections)} connection(s)")


# Global instance
notification_bus = NotificationBus()
