"""
WebSocket Manager for Real-Time Notifications
Pushes freshly dispatched notifications to connected users as toasts.
The persisted notification list stays authoritative; a missed push is never
an error.
"""

import json
import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Any
from fastapi import BackgroundTasks, WebSocket
from dataclasses import dataclass, field
from enum import Enum
import logging

from sqlmodel import Session

from models import Notification, UserRole
from services.notification_dispatcher import pop_dispatched

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """WebSocket message types"""
    CONNECTED = "connected"
    NOTIFICATION = "notification"
    PONG = "pong"


@dataclass
class WebSocketMessage:
    """Structure for WebSocket messages"""
    type: MessageType
    payload: Optional[Dict[str, Any]] = None
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, MessageType) else self.type,
            "payload": self.payload or {},
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


def notification_payload(notification: Notification) -> dict:
    """Plain dict snapshot, safe to push after the session has closed"""
    return {
        "id": notification.id,
        "recipient_id": notification.recipient_id,
        "recipient_role": notification.recipient_role.value if notification.recipient_role else None,
        "notification_type": notification.notification_type.value,
        "priority": notification.priority.value,
        "title": notification.title,
        "message": notification.message,
        "reference_type": notification.reference_type,
        "reference_id": notification.reference_id,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


@dataclass
class ConnectedUser:
    """Represents a connected WebSocket user"""
    user_id: int
    user_role: UserRole
    websocket: WebSocket
    connected_at: datetime = field(default_factory=datetime.utcnow)


class NotificationConnectionManager:
    """
    Manages WebSocket connections for notification delivery.
    A user may hold several connections (one per open tab).
    """

    def __init__(self):
        # user_id -> connections
        self.active_connections: Dict[int, List[ConnectedUser]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: int, user_role: UserRole) -> ConnectedUser:
        """Accept a new WebSocket connection"""
        await websocket.accept()
        user = ConnectedUser(user_id=user_id, user_role=user_role, websocket=websocket)
        async with self._lock:
            self.active_connections.setdefault(user_id, []).append(user)
        logger.info(f"User {user_id} ({user_role.value}) connected for notifications")
        return user

    async def disconnect(self, user: ConnectedUser):
        async with self._lock:
            connections = self.active_connections.get(user.user_id, [])
            if user in connections:
                connections.remove(user)
            if not connections:
                self.active_connections.pop(user.user_id, None)
        logger.info(f"User {user.user_id} disconnected from notifications")

    def _targets(self, payload: dict) -> List[ConnectedUser]:
        if payload.get("recipient_id") is not None:
            return list(self.active_connections.get(payload["recipient_id"], []))

        role = UserRole(payload["recipient_role"])
        roles = {role}
        if role == UserRole.PHARMACIST:
            roles.add(UserRole.ADMIN)
        return [
            user
            for connections in self.active_connections.values()
            for user in connections
            if user.user_role in roles
        ]

    async def send(self, user: ConnectedUser, message: WebSocketMessage) -> bool:
        try:
            await user.websocket.send_text(message.to_json())
            return True
        except Exception as e:
            logger.error(f"Error sending notification to user {user.user_id}: {e}")
            await self.disconnect(user)
            return False

    async def push(self, payload: dict) -> int:
        """Deliver one notification payload to every live connection that may see it"""
        message = WebSocketMessage(type=MessageType.NOTIFICATION, payload=payload)
        delivered = 0
        for user in self._targets(payload):
            if await self.send(user, message):
                delivered += 1
        return delivered

    async def push_many(self, payloads: Iterable[dict]) -> int:
        delivered = 0
        for payload in payloads:
            delivered += await self.push(payload)
        return delivered


# Global instance
ws_manager = NotificationConnectionManager()


def queue_delivery(background_tasks: BackgroundTasks, session: Session) -> int:
    """Snapshot notifications committed on this session and push them after the response"""
    payloads = [notification_payload(n) for n in pop_dispatched(session)]
    if payloads:
        background_tasks.add_task(ws_manager.push_many, payloads)
    return len(payloads)
