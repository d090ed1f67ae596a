"""
Alert evaluator.

Scans the inventory ledger and open bills for threshold breaches and turns
them into notifications for the pharmacist inbox. Every run is safe to
repeat: an alert is recorded in AlertDedupe under
``<type>:<entity>:<id>:<day>`` and suppressed while a marker for the same
entity is younger than the debounce window. The markers live in the database
so runs from different workers share them.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, func

from models import (
    AlertDedupe, Bill, Medicine, Notification, NotificationPriority,
    NotificationType, PaymentStatus, UserRole,
)
from services import billing_service, inventory_ledger
from services.errors import PharmacyError
from services.notification_dispatcher import DomainEvent, dispatch
from validators.business_rules import get_business_rules

logger = logging.getLogger(__name__)


def dedupe_key(alert_type: NotificationType, entity_type: str, entity_id: int, day) -> str:
    return f"{alert_type.value}:{entity_type}:{entity_id}:{day.isoformat()}"


def _recently_alerted(
    session: Session,
    alert_type: NotificationType,
    entity_type: str,
    entity_id: int,
    since: datetime,
) -> bool:
    marker = session.exec(
        select(AlertDedupe.id)
        .where(AlertDedupe.alert_type == alert_type)
        .where(AlertDedupe.entity_type == entity_type)
        .where(AlertDedupe.entity_id == entity_id)
        .where(AlertDedupe.created_at > since)
    ).first()
    return marker is not None


def _raise_alert(
    session: Session,
    event: DomainEvent,
    entity_type: str,
    entity_id: int,
    now: datetime,
    window: timedelta,
) -> Optional[Notification]:
    """Record the dedupe marker and the notification together, or neither"""
    if _recently_alerted(session, event.event_type, entity_type, entity_id, now - window):
        return None

    session.add(AlertDedupe(
        dedupe_key=dedupe_key(event.event_type, entity_type, entity_id, now.date()),
        alert_type=event.event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        created_at=now,
    ))
    try:
        notification = dispatch(session, event)
        session.commit()
    except IntegrityError:
        # Another worker recorded the same key first
        session.rollback()
        logger.debug(f"{event.event_type.value} for {entity_type} {entity_id} already raised today")
        return None
    return notification


# ==================== EVALUATORS ====================

def evaluate_low_stock(session: Session, now: Optional[datetime] = None) -> List[Notification]:
    """LOW_STOCK per medicine at or below its reorder level; HIGH when out of stock"""
    now = now or datetime.utcnow()
    window = timedelta(hours=get_business_rules().LOW_STOCK_DEBOUNCE_HOURS)
    created = []

    for medicine in inventory_ledger.query_below_threshold(session):
        event = DomainEvent(
            event_type=NotificationType.LOW_STOCK,
            recipient_role=UserRole.PHARMACIST,
            context={
                "medicine_name": medicine.name,
                "quantity": medicine.quantity,
                "reorder_level": medicine.reorder_level,
            },
            reference_type="medicine",
            reference_id=medicine.id,
            priority=NotificationPriority.HIGH if medicine.quantity == 0 else NotificationPriority.MEDIUM,
        )
        notification = _raise_alert(session, event, "medicine", medicine.id, now, window)
        if notification:
            created.append(notification)

    logger.info(f"Low stock evaluation raised {len(created)} alert(s)")
    return created


def evaluate_expiry(
    session: Session,
    horizon_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Notification]:
    """EXPIRY_ALERT for stock expiring within the horizon; CRITICAL once expired"""
    rules = get_business_rules()
    horizon_days = horizon_days if horizon_days is not None else rules.EXPIRY_HORIZON_DAYS
    now = now or datetime.utcnow()
    today = now.date()
    window = timedelta(hours=rules.LOW_STOCK_DEBOUNCE_HOURS)
    created = []

    for medicine in inventory_ledger.query_expiring_within(
        session, horizon_days, include_expired=True, today=today
    ):
        expired = medicine.expiry_date < today
        event = DomainEvent(
            event_type=NotificationType.EXPIRY_ALERT,
            recipient_role=UserRole.PHARMACIST,
            context={
                "medicine_name": medicine.name,
                "expiry_date": medicine.expiry_date,
                "batch_number": medicine.batch_number,
                "expired": expired,
            },
            reference_type="medicine",
            reference_id=medicine.id,
            priority=NotificationPriority.CRITICAL if expired else NotificationPriority.HIGH,
        )
        notification = _raise_alert(session, event, "medicine", medicine.id, now, window)
        if notification:
            created.append(notification)

    logger.info(f"Expiry evaluation raised {len(created)} alert(s)")
    return created


def evaluate_overdue_bills(
    session: Session,
    max_age_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[Bill]:
    """
    Expire every PENDING bill older than max_age_days.

    mark_expired moves the bill to CANCELLED, so a second run finds nothing
    left to alert on.
    """
    max_age_days = max_age_days if max_age_days is not None else get_business_rules().BILL_EXPIRY_DAYS
    now = now or datetime.utcnow()
    expired = []

    for bill in billing_service.find_overdue_bills(session, max_age_days, now=now):
        try:
            expired.append(billing_service.mark_expired(session, bill.id, max_age_days, now=now))
        except PharmacyError as e:
            # Paid or cancelled by someone else since the scan
            logger.warning(f"Skipping overdue bill {bill.id}: {e.detail}")

    logger.info(f"Overdue bill evaluation expired {len(expired)} bill(s)")
    return expired


def run_all(session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """One full evaluator pass, as run by the scheduler"""
    return {
        "low_stock_alerts": len(evaluate_low_stock(session, now=now)),
        "expiry_alerts": len(evaluate_expiry(session, now=now)),
        "expired_bills": len(evaluate_overdue_bills(session, now=now)),
    }


# ==================== SNAPSHOT ====================

def count_low_stock(session: Session) -> int:
    return session.exec(
        select(func.count(Medicine.id))
        .where(Medicine.is_active == True)  # noqa: E712
        .where(Medicine.quantity <= Medicine.reorder_level)
    ).one()


def count_expiring(session: Session, horizon_days: Optional[int] = None) -> int:
    horizon_days = horizon_days if horizon_days is not None else get_business_rules().EXPIRY_HORIZON_DAYS
    return len(inventory_ledger.query_expiring_within(session, horizon_days, include_expired=True))


def count_overdue_bills(session: Session, max_age_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
    max_age_days = max_age_days if max_age_days is not None else get_business_rules().BILL_EXPIRY_DAYS
    cutoff = (now or datetime.utcnow()) - timedelta(days=max_age_days)
    return session.exec(
        select(func.count(Bill.id))
        .where(Bill.payment_status == PaymentStatus.PENDING)
        .where(Bill.created_at < cutoff)
    ).one()


def snapshot(session: Session, horizon_days: Optional[int] = None, max_age_days: Optional[int] = None) -> dict:
    """Current alert conditions without raising anything"""
    rules = get_business_rules()
    horizon_days = horizon_days if horizon_days is not None else rules.EXPIRY_HORIZON_DAYS
    max_age_days = max_age_days if max_age_days is not None else rules.BILL_EXPIRY_DAYS

    low_stock = inventory_ledger.query_below_threshold(session)
    expiring = inventory_ledger.query_expiring_within(session, horizon_days, include_expired=True)
    overdue = billing_service.find_overdue_bills(session, max_age_days)

    return {
        "low_stock": low_stock,
        "expiring": expiring,
        "overdue_bills": overdue,
        "counts": {
            "low_stock": len(low_stock),
            "expiring": len(expiring),
            "overdue_bills": len(overdue),
        },
        "horizon_days": horizon_days,
        "max_age_days": max_age_days,
        "generated_at": datetime.utcnow(),
    }
