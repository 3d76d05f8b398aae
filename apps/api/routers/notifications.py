"""WebSocket endpoint of the notification bus"""
import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from sqlmodel import Session

from auth import decode_token
from database import engine
from models import User
from services.notification_bus import EventType, NotificationEvent, notification_bus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Notifications"])


def _is_ping(message: str) -> bool:
    if message.strip().lower() == "ping":
        return True
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        return False
    return isinstance(data, dict) and data.get("type") == "ping"


@router.websocket("/ws")
async def notifications_socket(
    websocket: WebSocket,
    token: str = Query(""),
):
    """
    One socket per user, authenticated by an access token in the query string.
    A newer connection of the same user replaces the older one.
    """
    payload = decode_token(token) if token else None
    if not payload or payload.get("type") != "access":
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    # The session is closed before the receive loop starts
    with Session(engine) as session:
        user = session.get(User, payload.get("sub"))
        user_id = user.id if user and user.is_active else None
        user_name = user.name if user_id else None

    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await notification_bus.connect(websocket, user_id, user_name)
    await notification_bus.send_notification(
        user_id,
        NotificationEvent(type=EventType.CONNECTED, data={"userId": user_id}),
    )

    try:
        while True:
            message = await websocket.receive_text()
            if _is_ping(message):
                await websocket.send_text(NotificationEvent(type=EventType.PONG).to_json())
    except WebSocketDisconnect:
        logger.debug(f"Notification socket of user {user_id} closed by client")
    finally:
        await notification_bus.disconnect(user_id, websocket)
