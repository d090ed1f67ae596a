"""
Bill & payment state machine.

A bill starts UNSET/PENDING. It reaches PAID only through pay_online or
collect_pickup_payment, and each of those is one unit of work: claim the
bill, deduct every line from the ledger, dispense the linked prescription,
notify the customer and, for online bills, charge the payment collaborator.
Any failure rolls the whole unit back.
"""
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable, List, Mapping, NamedTuple, Optional
import uuid
import logging

from sqlalchemy import or_
from sqlmodel import Session, func, select

from models import (
    Actor, Bill, BillItem, Medicine, NotificationPriority, NotificationType,
    PaymentStatus, PaymentType, PickupPaymentMethod, Prescription, UserRole,
)
from services import inventory_ledger
from services.errors import (
    InvalidQuantity, InvalidStateTransition, NotFound, ValidationError,
)
from services.locks import entity_locks
from services.notification_dispatcher import DomainEvent, dispatch
from services.payment_gateway import PaymentGateway, get_payment_gateway, validate_card_details
from services.state_machine import BILL_TRANSITIONS, claim_transition, ensure_transition
from utils.notification_service import render_bill_expired
from validators.business_rules import get_business_rules

logger = logging.getLogger(__name__)


class LineItem(NamedTuple):
    medicine_id: int
    quantity: int
    instructions: Optional[str] = None


def generate_bill_number() -> str:
    """Generate unique bill number"""
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    unique_id = uuid.uuid4().hex[:6].upper()
    return f"BILL-{timestamp}-{unique_id}"


# ==================== TOTALS ====================

def recompute_totals(bill: Bill, items: Iterable[BillItem]) -> Bill:
    """
    Re-derive every amount on the bill from its items.

    total_price = round(quantity * unit_price, 2) per item; the discount is
    capped at subtotal + tax so total_amount never goes negative while
    total_amount == subtotal - discount + tax still holds.
    """
    if bill.discount is None or bill.discount < 0:
        raise ValidationError("Discount cannot be negative")
    if bill.tax is None or bill.tax < 0:
        raise ValidationError("Tax cannot be negative")

    subtotal = 0.0
    for item in items:
        item.total_price = round(item.quantity * item.unit_price, 2)
        subtotal += item.total_price

    bill.subtotal = round(subtotal, 2)
    bill.tax = round(bill.tax, 2)
    bill.discount = round(min(bill.discount, bill.subtotal + bill.tax), 2)
    bill.total_amount = round(bill.subtotal - bill.discount + bill.tax, 2)
    bill.updated_at = datetime.utcnow()
    return bill


# ==================== CREATION ====================

def _validate_lines(lines: List[LineItem]) -> None:
    if not lines:
        raise ValidationError("At least one item is required")
    for line in lines:
        if line.medicine_id is None:
            raise ValidationError("Every item needs a medicine reference")
        if line.quantity is None or line.quantity <= 0:
            raise InvalidQuantity(f"Quantity for medicine {line.medicine_id} must be positive")


def create_bill(
    session: Session,
    customer_id: Optional[int],
    lines: List[LineItem],
    prescription: Optional[Prescription] = None,
    discount: float = 0.0,
    tax: float = 0.0,
    auto_commit: bool = True,
) -> Bill:
    """Create a PENDING bill priced from the current medicine catalog"""
    _validate_lines(lines)

    bill = Bill(
        bill_number=generate_bill_number(),
        prescription_id=prescription.id if prescription else None,
        customer_id=customer_id,
        discount=discount,
        tax=tax,
    )

    items = []
    for line in lines:
        medicine = session.get(Medicine, line.medicine_id)
        if not medicine:
            raise NotFound("Medicine", line.medicine_id)
        items.append(BillItem(
            medicine_id=medicine.id,
            medicine_name=medicine.name,
            quantity=line.quantity,
            unit_price=medicine.unit_price,
            total_price=0.0,
        ))

    recompute_totals(bill, items)
    session.add(bill)
    session.flush()
    for item in items:
        item.bill_id = bill.id
        session.add(item)
    session.flush()

    if customer_id is not None:
        dispatch(session, DomainEvent(
            event_type=NotificationType.BILL_GENERATED,
            recipient_id=customer_id,
            context={
                "bill_number": bill.bill_number,
                "amount": bill.total_amount,
                "prescription_number": prescription.prescription_number if prescription else None,
            },
            reference_type="bill",
            reference_id=bill.id,
        ))

    if auto_commit:
        session.commit()
        session.refresh(bill)

    logger.info(f"Bill {bill.bill_number} created: total {bill.total_amount:.2f}")
    return bill


def create_manual_bill(
    session: Session,
    customer_id: Optional[int],
    lines: List[LineItem],
    discount: float = 0.0,
    tax: float = 0.0,
) -> Bill:
    """Counter sale without a prescription"""
    try:
        return create_bill(session, customer_id, lines, discount=discount, tax=tax)
    except Exception:
        session.rollback()
        raise


# ==================== QUERIES ====================

def _load_bill(session: Session, bill_id: int) -> Bill:
    bill = session.get(Bill, bill_id, populate_existing=True)
    if not bill:
        raise NotFound("Bill", bill_id)
    return bill


def get_bill(session: Session, bill_id: int) -> Bill:
    return _load_bill(session, bill_id)


def get_bill_for_prescription(session: Session, prescription_id: int) -> Optional[Bill]:
    return session.exec(
        select(Bill)
        .where(Bill.prescription_id == prescription_id)
        .order_by(Bill.created_at.desc(), Bill.id.desc())
    ).first()


def day_range(date_from: Optional[date] = None, date_to: Optional[date] = None):
    """Inclusive calendar days -> (start, end) datetimes, end exclusive"""
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")
    start = datetime.combine(date_from, time.min) if date_from else None
    end = datetime.combine(date_to + timedelta(days=1), time.min) if date_to else None
    return start, end


def list_bills(
    session: Session,
    customer_id: Optional[int] = None,
    payment_status: Optional[PaymentStatus] = None,
    payment_type: Optional[PaymentType] = None,
    payment_method: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    skip: int = 0,
    limit: int = 50,
) -> List[Bill]:
    """
    Bills newest first.

    search matches the bill number (case-insensitive substring) or, when it
    is a number, the customer id. The date range applies to created_at.
    """
    query = select(Bill)
    if customer_id is not None:
        query = query.where(Bill.customer_id == customer_id)
    if payment_status:
        query = query.where(Bill.payment_status == payment_status)
    if payment_type:
        query = query.where(Bill.payment_type == payment_type)
    if payment_method:
        query = query.where(func.upper(Bill.payment_method) == payment_method.strip().upper())

    term = (search or "").strip()
    if term:
        condition = Bill.bill_number.ilike(f"%{term}%")
        if term.isdigit():
            condition = or_(condition, Bill.customer_id == int(term))
        query = query.where(condition)

    start, end = day_range(date_from, date_to)
    if start:
        query = query.where(Bill.created_at >= start)
    if end:
        query = query.where(Bill.created_at < end)

    query = query.order_by(Bill.created_at.desc(), Bill.id.desc()).offset(skip).limit(limit)
    return list(session.exec(query).all())


def revenue_summary(
    session: Session,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> dict:
    """Revenue and number of PAID bills, by payment date"""
    start, end = day_range(date_from, date_to)
    query = (
        select(func.coalesce(func.sum(Bill.total_amount), 0.0), func.count(Bill.id))
        .where(Bill.payment_status == PaymentStatus.PAID)
    )
    if start:
        query = query.where(Bill.paid_at >= start)
    if end:
        query = query.where(Bill.paid_at < end)

    revenue, bill_count = session.exec(query).one()
    return {
        "date_from": date_from,
        "date_to": date_to,
        "revenue": round(float(revenue), 2),
        "bill_count": bill_count,
    }


def find_overdue_bills(session: Session, max_age_days: int, now: Optional[datetime] = None) -> List[Bill]:
    cutoff = (now or datetime.utcnow()) - timedelta(days=max_age_days)
    return list(session.exec(
        select(Bill)
        .where(Bill.payment_status == PaymentStatus.PENDING)
        .where(Bill.created_at < cutoff)
        .order_by(Bill.created_at, Bill.id)
    ).all())


def payment_details(bill: Bill) -> dict:
    return {
        "bill_id": bill.id,
        "bill_number": bill.bill_number,
        "total_amount": bill.total_amount,
        "payment_status": bill.payment_status,
        "payment_type": bill.payment_type,
        "payment_method": bill.payment_method,
        "transaction_id": bill.transaction_id,
        "paid_at": bill.paid_at,
        "created_at": bill.created_at,
    }


# ==================== PENDING-STATE COMMANDS ====================

def _require_pending(bill: Bill) -> None:
    if bill.payment_status != PaymentStatus.PENDING:
        raise InvalidStateTransition(
            f"Bill {bill.id} is {bill.payment_status.value}, expected PENDING",
            entity="Bill",
            entity_id=bill.id,
        )


def set_payment_type(session: Session, bill_id: int, payment_type: PaymentType) -> Bill:
    if payment_type not in (PaymentType.ONLINE, PaymentType.PAY_ON_PICKUP):
        raise ValidationError("Payment type must be ONLINE or PAY_ON_PICKUP")

    with entity_locks.hold("bill", bill_id):
        try:
            bill = _load_bill(session, bill_id)
            _require_pending(bill)
            claim_transition(
                session, Bill, bill_id, "payment_status", [PaymentStatus.PENDING],
                {"payment_type": payment_type, "updated_at": datetime.utcnow()},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

    logger.info(f"Bill {bill_id} payment type set to {payment_type.value}")
    return _load_bill(session, bill_id)


def adjust_bill(session: Session, bill_id: int, discount: Optional[float] = None, tax: Optional[float] = None) -> Bill:
    """Change discount/tax on a PENDING bill and recompute its totals"""
    with entity_locks.hold("bill", bill_id):
        try:
            bill = _load_bill(session, bill_id)
            _require_pending(bill)
            if discount is not None:
                bill.discount = discount
            if tax is not None:
                bill.tax = tax
            recompute_totals(bill, bill.items)
            session.add(bill)
            session.commit()
        except Exception:
            session.rollback()
            raise
    return _load_bill(session, bill_id)


def cancel(session: Session, bill_id: int, reason: Optional[str] = None) -> Bill:
    """Cancel a PENDING bill. The linked prescription stays APPROVED."""
    with entity_locks.hold("bill", bill_id):
        try:
            bill = _load_bill(session, bill_id)
            ensure_transition(BILL_TRANSITIONS, "Bill", bill_id, bill.payment_status, PaymentStatus.CANCELLED)
            claim_transition(
                session, Bill, bill_id, "payment_status", [PaymentStatus.PENDING],
                {
                    "payment_status": PaymentStatus.CANCELLED,
                    "cancellation_reason": reason,
                    "updated_at": datetime.utcnow(),
                },
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

    logger.info(f"Bill {bill_id} cancelled")
    return _load_bill(session, bill_id)


def mark_expired(
    session: Session,
    bill_id: int,
    max_age_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Bill:
    """Cancel a bill left PENDING beyond max_age_days and raise a SYSTEM_ALERT"""
    max_age_days = max_age_days if max_age_days is not None else get_business_rules().BILL_EXPIRY_DAYS
    now = now or datetime.utcnow()

    with entity_locks.hold("bill", bill_id):
        try:
            bill = _load_bill(session, bill_id)
            _require_pending(bill)
            age = now - bill.created_at
            if age < timedelta(days=max_age_days):
                raise InvalidStateTransition(
                    f"Bill {bill_id} is only {age.days} days old; expires after {max_age_days}",
                    entity="Bill",
                    entity_id=bill_id,
                )
            claim_transition(
                session, Bill, bill_id, "payment_status", [PaymentStatus.PENDING],
                {
                    "payment_status": PaymentStatus.CANCELLED,
                    "cancellation_reason": f"Expired after {max_age_days} days unpaid",
                    "updated_at": now,
                },
            )
            title, message = render_bill_expired(bill.bill_number, age.days)
            dispatch(session, DomainEvent(
                event_type=NotificationType.SYSTEM_ALERT,
                recipient_role=UserRole.PHARMACIST,
                context={"title": title, "message": message},
                reference_type="bill",
                reference_id=bill_id,
                priority=NotificationPriority.HIGH,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise

    logger.info(f"Bill {bill_id} expired after {age.days} days")
    return _load_bill(session, bill_id)


# ==================== SETTLEMENT ====================

def _settle(
    session: Session,
    bill_id: int,
    expected_type: PaymentType,
    method: str,
    charge: Optional[Callable[[Bill], str]] = None,
) -> Bill:
    """
    Claim the bill, deduct stock for every line, dispense, then take payment.

    The bill and medicine locks are all taken before the first write. The
    claim is the first write, so a losing concurrent request fails with
    InvalidStateTransition before touching stock. The charge runs last so
    nothing but the commit can fail after money has moved.
    """
    from services.prescription_workflow import apply_dispense

    with entity_locks.hold("bill", bill_id):
        bill = _load_bill(session, bill_id)
        lines = [(item.medicine_id, item.quantity) for item in bill.items]

        with entity_locks.hold_many("medicine", [medicine_id for medicine_id, _ in lines]):
            transaction_id = None
            try:
                _require_pending(bill)
                if bill.payment_type != expected_type:
                    raise InvalidStateTransition(
                        f"Bill {bill_id} payment type is {bill.payment_type.value}, expected {expected_type.value}",
                        entity="Bill",
                        entity_id=bill_id,
                    )
                now = datetime.utcnow()
                claim_transition(
                    session, Bill, bill_id, "payment_status",
                    [PaymentStatus.PENDING],
                    {
                        "payment_status": PaymentStatus.PAID,
                        "payment_method": method,
                        "paid_at": now,
                        "updated_at": now,
                    },
                    extra_conditions=[Bill.payment_type == expected_type],
                )

                inventory_ledger.deduct_many(session, lines, auto_commit=False)

                if bill.prescription_id is not None:
                    prescription = session.get(Prescription, bill.prescription_id)
                    apply_dispense(session, prescription, now=now)

                if bill.customer_id is not None:
                    dispatch(session, DomainEvent(
                        event_type=NotificationType.PAYMENT_RECEIVED,
                        recipient_id=bill.customer_id,
                        context={"bill_number": bill.bill_number, "amount": bill.total_amount, "method": method},
                        reference_type="bill",
                        reference_id=bill_id,
                    ))

                if charge is not None:
                    transaction_id = charge(bill)
                    bill.transaction_id = transaction_id
                    session.add(bill)

                session.commit()
            except Exception:
                session.rollback()
                if transaction_id is not None:
                    logger.error(
                        f"Bill {bill_id} was charged as {transaction_id} but settlement failed; "
                        f"the payment needs a manual refund"
                    )
                raise

    logger.info(f"Bill {bill_id} paid via {method}")
    return _load_bill(session, bill_id)


def pay_online(
    session: Session,
    bill_id: int,
    details: Mapping[str, Optional[str]],
    gateway: Optional[PaymentGateway] = None,
) -> Bill:
    validate_card_details(details)
    gateway = gateway or get_payment_gateway()

    def charge(bill: Bill) -> str:
        return gateway.charge(bill.total_amount, details, reference=bill.bill_number)

    return _settle(session, bill_id, PaymentType.ONLINE, "ONLINE_CARD", charge=charge)


def collect_pickup_payment(session: Session, bill_id: int, method: PickupPaymentMethod) -> Bill:
    """The only path by which a PAY_ON_PICKUP bill becomes PAID; dispenses in the same unit"""
    try:
        method = PickupPaymentMethod(method)
    except ValueError:
        raise ValidationError(f"Unknown pickup payment method: {method}")
    return _settle(session, bill_id, PaymentType.PAY_ON_PICKUP, method.value)


def can_view(actor: Actor, bill: Bill) -> bool:
    return actor.is_staff or bill.customer_id == actor.user_id
