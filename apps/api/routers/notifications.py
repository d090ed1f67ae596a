"""In-app notification endpoints and the real-time notification feed"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlmodel import Session
from typing import List, Optional
import json
import logging

from database import get_session
from models import Actor, NotificationPriority, NotificationType
from schemas import (
    BulkNotificationIds, BulkResult, MarkAllReadResult, MarkReadByContent,
    NotificationEventCreate, NotificationResponse, UnreadCount,
)
from dependencies import actor_from_token, get_current_user, require_admin
from services import notification_dispatcher
from services.notification_dispatcher import DomainEvent
from services.websocket_manager import MessageType, WebSocketMessage, queue_delivery, ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

# Event types other subsystems may raise directly
EXTERNAL_EVENT_TYPES = (NotificationType.USER_REGISTRATION, NotificationType.SYSTEM_ALERT)


@router.get("", response_model=List[NotificationResponse])
def list_notifications(
    notification_type: Optional[NotificationType] = None,
    priority: Optional[NotificationPriority] = None,
    is_read: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Notifications visible to the current user, newest first"""
    return notification_dispatcher.list_for_user(
        session, current_user,
        notification_type=notification_type, priority=priority, is_read=is_read,
        skip=skip, limit=limit,
    )


@router.get("/unread-count", response_model=UnreadCount)
def get_unread_count(
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return UnreadCount(unread_count=notification_dispatcher.unread_count(session, current_user))


@router.post("/mark-read-by-content", response_model=Optional[NotificationResponse])
def mark_read_by_content(
    match: MarkReadByContent,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Dismiss a toast: marks the newest matching unread notification. Returns null when none matches."""
    return notification_dispatcher.mark_read_by_content(
        session, current_user, match.notification_type, match.keyword
    )


@router.post("/mark-all-read", response_model=MarkAllReadResult)
def mark_all_read(
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return MarkAllReadResult(updated=notification_dispatcher.mark_all_read(session, current_user))


@router.post("/bulk/mark-read", response_model=BulkResult)
def bulk_mark_read(
    ids: BulkNotificationIds,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return notification_dispatcher.bulk_mark_read(session, ids.notification_ids, actor=current_user)


@router.post("/bulk/delete", response_model=BulkResult)
def bulk_delete(
    ids: BulkNotificationIds,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return notification_dispatcher.bulk_delete(session, ids.notification_ids, actor=current_user)


@router.post("/events", response_model=NotificationResponse, status_code=status.HTTP_201_CREATED)
def raise_event(
    event: NotificationEventCreate,
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(require_admin),
    session: Session = Depends(get_session)
):
    """Accept a domain event from another subsystem (Admin only)"""
    if event.notification_type not in EXTERNAL_EVENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{event.notification_type.value} notifications are raised by the pharmacy core only"
        )
    notification = notification_dispatcher.dispatch(
        session,
        DomainEvent(
            event_type=event.notification_type,
            recipient_id=event.recipient_id,
            recipient_role=event.recipient_role,
            context=event.context,
            reference_type=event.reference_type,
            reference_id=event.reference_id,
            priority=event.priority,
        ),
        auto_commit=True,
    )
    logger.info(f"External {event.notification_type.value} event accepted from user {current_user.user_id}")
    queue_delivery(background_tasks, session)
    return notification


@router.put("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: int,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return notification_dispatcher.mark_read(session, notification_id, actor=current_user)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
    notification_id: int,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    notification_dispatcher.delete(session, notification_id, actor=current_user)


# WebSocket endpoint for real-time delivery

@router.websocket("/ws")
async def notifications_websocket(websocket: WebSocket, token: str):
    """Push feed of new notifications. Clients may send "ping" to keep the connection alive."""
    actor = actor_from_token(token)
    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user = await ws_manager.connect(websocket, actor.user_id, actor.role)
    await ws_manager.send(user, WebSocketMessage(
        type=MessageType.CONNECTED,
        payload={"user_id": actor.user_id, "role": actor.role.value},
    ))

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except ValueError:
                message = {"type": data}
            if isinstance(message, dict) and message.get("type") == "ping":
                await ws_manager.send(user, WebSocketMessage(type=MessageType.PONG))
    except WebSocketDisconnect:
        await ws_manager.disconnect(user)
