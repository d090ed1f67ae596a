"""
Prescription lifecycle: PENDING -> APPROVED | REJECTED, APPROVED -> DISPENSED -> COMPLETED.

Approval generates the bill in the same transaction. Dispensing normally
happens inside bill settlement (see billing_service._settle); the standalone
dispense() command only covers a bill that is already PAID.
"""
from datetime import date, datetime
from typing import List, Optional
import uuid
import logging

from sqlalchemy import or_
from sqlmodel import Session, select

from models import (
    Actor, Bill, PaymentStatus, Prescription, PrescriptionItem,
    PrescriptionStatus, NotificationType, UserRole,
)
from services import billing_service
from services.billing_service import LineItem
from services.errors import InvalidQuantity, InvalidStateTransition, NotFound, ValidationError
from services.locks import entity_locks
from services.notification_dispatcher import DomainEvent, dispatch
from services.state_machine import PRESCRIPTION_TRANSITIONS, claim_transition, ensure_transition

logger = logging.getLogger(__name__)


def generate_prescription_number() -> str:
    date_part = datetime.utcnow().strftime("%Y%m%d")
    unique_id = uuid.uuid4().hex[:6].upper()
    return f"RX-{date_part}-{unique_id}"


def _load(session: Session, prescription_id: int) -> Prescription:
    prescription = session.get(Prescription, prescription_id, populate_existing=True)
    if not prescription:
        raise NotFound("Prescription", prescription_id)
    return prescription


def get_prescription(session: Session, prescription_id: int) -> Prescription:
    return _load(session, prescription_id)


def list_prescriptions(
    session: Session,
    customer_id: Optional[int] = None,
    status: Optional[PrescriptionStatus] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    skip: int = 0,
    limit: int = 50,
) -> List[Prescription]:
    """search matches prescription number, doctor name or notes; dates filter uploaded_at"""
    query = select(Prescription)
    if customer_id is not None:
        query = query.where(Prescription.customer_id == customer_id)
    if status:
        query = query.where(Prescription.status == status)

    term = (search or "").strip()
    if term:
        pattern = f"%{term}%"
        query = query.where(or_(
            Prescription.prescription_number.ilike(pattern),
            Prescription.doctor_name.ilike(pattern),
            Prescription.notes.ilike(pattern),
        ))

    start, end = billing_service.day_range(date_from, date_to)
    if start:
        query = query.where(Prescription.uploaded_at >= start)
    if end:
        query = query.where(Prescription.uploaded_at < end)

    query = query.order_by(Prescription.uploaded_at.desc(), Prescription.id.desc())
    return list(session.exec(query.offset(skip).limit(limit)).all())


def can_view(actor: Actor, prescription: Prescription) -> bool:
    return actor.is_staff or prescription.customer_id == actor.user_id


# ==================== COMMANDS ====================

def upload(
    session: Session,
    actor: Actor,
    doctor_name: str,
    notes: Optional[str] = None,
    file_reference: Optional[str] = None,
    customer_id: Optional[int] = None,
) -> Prescription:
    """
    Record a new PENDING prescription and alert the pharmacists.

    Customers always upload for themselves; staff may upload on behalf of a
    customer by passing customer_id.
    """
    if not doctor_name or not doctor_name.strip():
        raise ValidationError("Doctor name is required")

    owner_id = actor.user_id
    if actor.is_staff and customer_id is not None:
        owner_id = customer_id

    try:
        prescription = Prescription(
            prescription_number=generate_prescription_number(),
            customer_id=owner_id,
            doctor_name=doctor_name.strip(),
            notes=notes,
            file_reference=file_reference,
        )
        session.add(prescription)
        session.flush()

        dispatch(session, DomainEvent(
            event_type=NotificationType.PRESCRIPTION_UPLOADED,
            recipient_role=UserRole.PHARMACIST,
            context={
                "prescription_number": prescription.prescription_number,
                "doctor_name": prescription.doctor_name,
            },
            reference_type="prescription",
            reference_id=prescription.id,
        ))
        session.commit()
        session.refresh(prescription)
    except Exception:
        session.rollback()
        raise

    logger.info(f"Prescription {prescription.prescription_number} uploaded for customer {owner_id}")
    return prescription


def approve(
    session: Session,
    prescription_id: int,
    items: List[LineItem],
    reviewer: Optional[Actor] = None,
    discount: float = 0.0,
    tax: float = 0.0,
) -> Bill:
    """
    Approve a PENDING prescription with its medicine lines and generate the bill.

    Returns the new bill. Stock is not touched here: it is deducted when the
    bill is paid.
    """
    if not items:
        raise ValidationError("At least one medicine item is required for approval")
    for item in items:
        if item.quantity is None or item.quantity <= 0:
            raise InvalidQuantity(f"Quantity for medicine {item.medicine_id} must be positive")

    with entity_locks.hold("prescription", prescription_id):
        try:
            prescription = _load(session, prescription_id)
            ensure_transition(
                PRESCRIPTION_TRANSITIONS, "Prescription", prescription_id,
                prescription.status, PrescriptionStatus.APPROVED,
            )
            now = datetime.utcnow()
            claim_transition(
                session, Prescription, prescription_id, "status", [PrescriptionStatus.PENDING],
                {
                    "status": PrescriptionStatus.APPROVED,
                    "reviewed_at": now,
                    "reviewed_by": reviewer.user_id if reviewer else None,
                },
            )

            for item in items:
                session.add(PrescriptionItem(
                    prescription_id=prescription_id,
                    medicine_id=item.medicine_id,
                    quantity=item.quantity,
                    instructions=item.instructions,
                ))

            dispatch(session, DomainEvent(
                event_type=NotificationType.PRESCRIPTION_APPROVED,
                recipient_id=prescription.customer_id,
                context={"prescription_number": prescription.prescription_number},
                reference_type="prescription",
                reference_id=prescription_id,
            ))

            bill = billing_service.create_bill(
                session,
                customer_id=prescription.customer_id,
                lines=items,
                prescription=prescription,
                discount=discount,
                tax=tax,
                auto_commit=False,
            )
            session.commit()
            session.refresh(bill)
        except Exception:
            session.rollback()
            raise

    logger.info(f"Prescription {prescription_id} approved; bill {bill.bill_number} generated")
    return bill


def reject(session: Session, prescription_id: int, reason: str, reviewer: Optional[Actor] = None) -> Prescription:
    if not reason or not reason.strip():
        raise ValidationError("Rejection reason is required")

    with entity_locks.hold("prescription", prescription_id):
        try:
            prescription = _load(session, prescription_id)
            ensure_transition(
                PRESCRIPTION_TRANSITIONS, "Prescription", prescription_id,
                prescription.status, PrescriptionStatus.REJECTED,
            )
            claim_transition(
                session, Prescription, prescription_id, "status", [PrescriptionStatus.PENDING],
                {
                    "status": PrescriptionStatus.REJECTED,
                    "rejection_reason": reason.strip(),
                    "reviewed_at": datetime.utcnow(),
                    "reviewed_by": reviewer.user_id if reviewer else None,
                },
            )
            dispatch(session, DomainEvent(
                event_type=NotificationType.PRESCRIPTION_REJECTED,
                recipient_id=prescription.customer_id,
                context={
                    "prescription_number": prescription.prescription_number,
                    "reason": reason.strip(),
                },
                reference_type="prescription",
                reference_id=prescription_id,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise

    logger.info(f"Prescription {prescription_id} rejected")
    return _load(session, prescription_id)


def apply_dispense(session: Session, prescription: Prescription, now: Optional[datetime] = None) -> None:
    """APPROVED -> DISPENSED inside the caller's transaction"""
    ensure_transition(
        PRESCRIPTION_TRANSITIONS, "Prescription", prescription.id,
        prescription.status, PrescriptionStatus.DISPENSED,
    )
    claim_transition(
        session, Prescription, prescription.id, "status", [PrescriptionStatus.APPROVED],
        {"status": PrescriptionStatus.DISPENSED, "dispensed_at": now or datetime.utcnow()},
    )


def dispense(session: Session, prescription_id: int) -> Prescription:
    """Dispense an APPROVED prescription whose bill is already PAID"""
    with entity_locks.hold("prescription", prescription_id):
        try:
            prescription = _load(session, prescription_id)
            bill = billing_service.get_bill_for_prescription(session, prescription_id)
            if bill is None or bill.payment_status != PaymentStatus.PAID:
                raise InvalidStateTransition(
                    f"Prescription {prescription_id} cannot be dispensed before its bill is paid",
                    entity="Prescription",
                    entity_id=prescription_id,
                )
            apply_dispense(session, prescription)
            session.commit()
        except Exception:
            session.rollback()
            raise

    logger.info(f"Prescription {prescription_id} dispensed")
    return _load(session, prescription_id)


def complete(session: Session, prescription_id: int) -> Prescription:
    with entity_locks.hold("prescription", prescription_id):
        try:
            prescription = _load(session, prescription_id)
            ensure_transition(
                PRESCRIPTION_TRANSITIONS, "Prescription", prescription_id,
                prescription.status, PrescriptionStatus.COMPLETED,
            )
            claim_transition(
                session, Prescription, prescription_id, "status", [PrescriptionStatus.DISPENSED],
                {"status": PrescriptionStatus.COMPLETED, "completed_at": datetime.utcnow()},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

    logger.info(f"Prescription {prescription_id} completed")
    return _load(session, prescription_id)
