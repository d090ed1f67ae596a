"""
Notification dispatcher.

Turns domain events into persisted Notification rows and manages their read
state. A notification is addressed either to one user (recipient_id) or to a
role inbox (recipient_role); admins also see the pharmacist inbox.

dispatch() never commits on its own by default: the notification is written in
the same transaction as the state change that produced the event.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import inspect, or_
from sqlmodel import Session, select, func

from models import (
    Actor, Notification, NotificationPriority, NotificationType, UserRole,
)
from services.errors import NotFound, PharmacyError, ValidationError
from utils.notification_service import (
    render_bill_generated,
    render_expiry_alert,
    render_low_stock,
    render_payment_received,
    render_prescription_approved,
    render_prescription_rejected,
    render_prescription_uploaded,
    render_user_registration,
)

logger = logging.getLogger(__name__)

DISPATCHED_KEY = "dispatched_notifications"


@dataclass
class DomainEvent:
    """Something that happened in the core and should reach a user"""
    event_type: NotificationType
    recipient_id: Optional[int] = None
    recipient_role: Optional[UserRole] = None
    context: Dict[str, Any] = field(default_factory=dict)
    reference_type: Optional[str] = None
    reference_id: Optional[int] = None
    priority: Optional[NotificationPriority] = None


def _render_system_alert(title: str, message: str, **_) -> Tuple[str, str]:
    return title, message


# event type -> (renderer, default priority)
EVENT_TEMPLATES: Dict[NotificationType, Tuple[Callable[..., Tuple[str, str]], NotificationPriority]] = {
    NotificationType.PRESCRIPTION_UPLOADED: (render_prescription_uploaded, NotificationPriority.MEDIUM),
    NotificationType.PRESCRIPTION_APPROVED: (render_prescription_approved, NotificationPriority.MEDIUM),
    NotificationType.PRESCRIPTION_REJECTED: (render_prescription_rejected, NotificationPriority.HIGH),
    NotificationType.BILL_GENERATED: (render_bill_generated, NotificationPriority.MEDIUM),
    NotificationType.PAYMENT_RECEIVED: (render_payment_received, NotificationPriority.LOW),
    NotificationType.LOW_STOCK: (render_low_stock, NotificationPriority.MEDIUM),
    NotificationType.EXPIRY_ALERT: (render_expiry_alert, NotificationPriority.HIGH),
    NotificationType.SYSTEM_ALERT: (_render_system_alert, NotificationPriority.HIGH),
    NotificationType.USER_REGISTRATION: (render_user_registration, NotificationPriority.LOW),
}


# ==================== DISPATCH ====================

def dispatch(session: Session, event: DomainEvent, auto_commit: bool = False) -> Notification:
    if event.recipient_id is None and event.recipient_role is None:
        raise ValidationError("Notification needs a recipient user or role")

    renderer, default_priority = EVENT_TEMPLATES[event.event_type]
    try:
        title, message = renderer(**event.context)
    except TypeError as e:
        raise ValidationError(f"Incomplete context for {event.event_type.value}: {e}")

    notification = Notification(
        recipient_id=event.recipient_id,
        recipient_role=event.recipient_role,
        notification_type=event.event_type,
        priority=event.priority or default_priority,
        title=title,
        message=message,
        is_read=False,
        reference_type=event.reference_type,
        reference_id=event.reference_id,
        created_at=datetime.utcnow(),
    )
    session.add(notification)
    if auto_commit:
        session.commit()
        session.refresh(notification)
    else:
        session.flush()

    session.info.setdefault(DISPATCHED_KEY, []).append(notification)
    logger.info(
        f"Dispatched {event.event_type.value} notification {notification.id} "
        f"to {'user ' + str(event.recipient_id) if event.recipient_id is not None else event.recipient_role.value}"
    )
    return notification


def pop_dispatched(session: Session) -> List[Notification]:
    """Notifications dispatched on this session that survived commit"""
    dispatched = session.info.pop(DISPATCHED_KEY, [])
    return [n for n in dispatched if inspect(n).persistent]


# ==================== QUERIES ====================

def _visible_to(actor: Actor):
    roles = [actor.role]
    if actor.role == UserRole.ADMIN:
        roles.append(UserRole.PHARMACIST)
    return or_(
        Notification.recipient_id == actor.user_id,
        Notification.recipient_role.in_(roles),
    )


def _get_visible(session: Session, notification_id: int, actor: Optional[Actor]) -> Notification:
    notification = session.get(Notification, notification_id)
    if not notification:
        raise NotFound("Notification", notification_id)
    if actor is not None:
        visible = session.exec(
            select(Notification.id)
            .where(Notification.id == notification_id)
            .where(_visible_to(actor))
        ).first()
        if visible is None:
            # Same answer as a missing id so other inboxes cannot be enumerated
            raise NotFound("Notification", notification_id)
    return notification


def list_for_user(
    session: Session,
    actor: Actor,
    notification_type: Optional[NotificationType] = None,
    priority: Optional[NotificationPriority] = None,
    is_read: Optional[bool] = None,
    skip: int = 0,
    limit: int = 50,
) -> List[Notification]:
    query = select(Notification).where(_visible_to(actor))

    if notification_type:
        query = query.where(Notification.notification_type == notification_type)
    if priority:
        query = query.where(Notification.priority == priority)
    if is_read is not None:
        query = query.where(Notification.is_read == is_read)

    query = query.order_by(Notification.created_at.desc(), Notification.id.desc())
    return list(session.exec(query.offset(skip).limit(limit)).all())


def unread_count(session: Session, actor: Actor) -> int:
    return session.exec(
        select(func.count(Notification.id))
        .where(_visible_to(actor))
        .where(Notification.is_read == False)  # noqa: E712
    ).one()


# ==================== READ STATE ====================

def mark_read(session: Session, notification_id: int, actor: Optional[Actor] = None) -> Notification:
    """Idempotent: marking an already read notification is a no-op"""
    notification = _get_visible(session, notification_id, actor)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.utcnow()
        session.add(notification)
        session.commit()
        session.refresh(notification)
    return notification


def mark_read_by_content(
    session: Session,
    actor: Actor,
    notification_type: NotificationType,
    keyword: str,
) -> Optional[Notification]:
    """
    Resolve an ephemeral toast back to its persisted notification.

    Marks only the newest unread notification of the given type whose title or
    message contains keyword (case-insensitive). No match is not an error: the
    toast may belong to a notification from another session. A blank keyword
    matches nothing.
    """
    needle = (keyword or "").strip().lower()
    if not needle:
        return None

    candidates = session.exec(
        select(Notification)
        .where(_visible_to(actor))
        .where(Notification.notification_type == notification_type)
        .where(Notification.is_read == False)  # noqa: E712
        .order_by(Notification.created_at.desc(), Notification.id.desc())
    ).all()

    for notification in candidates:
        if needle in notification.title.lower() or needle in notification.message.lower():
            return mark_read(session, notification.id)

    logger.debug(f"No unread {notification_type.value} notification matches '{keyword}'")
    return None


def mark_all_read(session: Session, actor: Actor) -> int:
    unread = session.exec(
        select(Notification)
        .where(_visible_to(actor))
        .where(Notification.is_read == False)  # noqa: E712
    ).all()
    now = datetime.utcnow()
    for notification in unread:
        notification.is_read = True
        notification.read_at = now
        session.add(notification)
    session.commit()
    return len(unread)


def delete(session: Session, notification_id: int, actor: Optional[Actor] = None) -> None:
    notification = _get_visible(session, notification_id, actor)
    session.delete(notification)
    session.commit()


# ==================== BULK OPERATIONS ====================

def _apply_each(
    session: Session,
    ids: Sequence[int],
    operation: Callable[[int], Any],
) -> Dict[str, list]:
    """Run operation per id; one failure never aborts the others"""
    succeeded: List[int] = []
    failed: List[Dict[str, Any]] = []
    for notification_id in dict.fromkeys(ids):
        try:
            operation(notification_id)
            succeeded.append(notification_id)
        except PharmacyError as e:
            session.rollback()
            failed.append({"id": notification_id, "error": e.error_code, "detail": e.detail})
    return {"succeeded": succeeded, "failed": failed}


def bulk_mark_read(session: Session, ids: Sequence[int], actor: Optional[Actor] = None) -> Dict[str, list]:
    return _apply_each(session, ids, lambda nid: mark_read(session, nid, actor))


def bulk_delete(session: Session, ids: Sequence[int], actor: Optional[Actor] = None) -> Dict[str, list]:
    return _apply_each(session, ids, lambda nid: delete(session, nid, actor))
