"""Inventory ledger: medicine stock records, deductions and threshold queries.

Stock changes are applied with conditional UPDATE statements so that two
writers can never jointly drive a quantity below zero, even when they run in
different processes.
"""
from collections import OrderedDict
from datetime import datetime, date, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import update
from sqlmodel import Session, select

from models import Medicine
from services.errors import InsufficientStock, InvalidQuantity, NotFound
from services.locks import entity_locks

logger = logging.getLogger(__name__)


# ==================== CATALOG ====================

def create_medicine(session: Session, auto_commit: bool = True, **fields) -> Medicine:
    quantity = fields.get("quantity", 0)
    if quantity is None or quantity < 0:
        raise InvalidQuantity("Initial quantity cannot be negative")
    if fields.get("reorder_level", 0) < 0:
        raise InvalidQuantity("Reorder level cannot be negative")

    medicine = Medicine(**fields)
    session.add(medicine)
    if auto_commit:
        session.commit()
        session.refresh(medicine)
    else:
        session.flush()
    logger.info(f"Medicine {medicine.id} ({medicine.name}) added with quantity {medicine.quantity}")
    return medicine


def get_medicine(session: Session, medicine_id: int) -> Medicine:
    medicine = session.get(Medicine, medicine_id)
    if not medicine:
        raise NotFound("Medicine", medicine_id)
    return medicine


def list_medicines(
    session: Session,
    search: Optional[str] = None,
    active_only: bool = True,
    skip: int = 0,
    limit: int = 100,
) -> List[Medicine]:
    query = select(Medicine)
    if active_only:
        query = query.where(Medicine.is_active == True)  # noqa: E712
    if search:
        query = query.where(
            (Medicine.name.ilike(f"%{search}%")) |
            (Medicine.generic_name.ilike(f"%{search}%"))
        )
    query = query.order_by(Medicine.name).offset(skip).limit(limit)
    return list(session.exec(query).all())


def update_medicine(session: Session, medicine_id: int, **changes) -> Medicine:
    """Update catalog fields. Quantity only moves through deduct/restock."""
    medicine = get_medicine(session, medicine_id)
    changes.pop("quantity", None)
    if changes.get("reorder_level") is not None and changes["reorder_level"] < 0:
        raise InvalidQuantity("Reorder level cannot be negative")

    for key, value in changes.items():
        if value is not None:
            setattr(medicine, key, value)
    medicine.updated_at = datetime.utcnow()
    session.add(medicine)
    session.commit()
    session.refresh(medicine)
    return medicine


# ==================== STOCK MOVEMENTS ====================

def _apply_deduction(session: Session, medicine_id: int, quantity: int) -> int:
    result = session.execute(
        update(Medicine)
        .where(Medicine.id == medicine_id, Medicine.quantity >= quantity)
        .values(quantity=Medicine.quantity - quantity, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    medicine = session.get(Medicine, medicine_id, populate_existing=True)
    if result.rowcount == 0:
        if not medicine:
            raise NotFound("Medicine", medicine_id)
        raise InsufficientStock(
            f"Insufficient stock for {medicine.name}. "
            f"Available: {medicine.quantity}, requested: {quantity}",
            entity="Medicine",
            entity_id=medicine_id,
        )
    return medicine.quantity


def deduct(session: Session, medicine_id: int, quantity: int, auto_commit: bool = True) -> int:
    """Decrement stock and return the new quantity."""
    if quantity is None or quantity <= 0:
        raise InvalidQuantity("Quantity to deduct must be positive")

    with entity_locks.hold("medicine", medicine_id):
        try:
            new_quantity = _apply_deduction(session, medicine_id, quantity)
            if auto_commit:
                session.commit()
        except Exception:
            if auto_commit:
                session.rollback()
            raise

    logger.info(f"Deducted {quantity} from medicine {medicine_id}; now {new_quantity}")
    return new_quantity


def deduct_many(
    session: Session,
    lines: Iterable[Tuple[int, int]],
    auto_commit: bool = True,
) -> Dict[int, int]:
    """
    Deduct several (medicine_id, quantity) lines as one unit.

    Lines for the same medicine are summed before checking stock. If any line
    fails nothing is deducted when auto_commit is set; otherwise the caller
    owns the transaction and must roll it back.

    Returns:
        {medicine_id: new_quantity}
    """
    totals: "OrderedDict[int, int]" = OrderedDict()
    for medicine_id, quantity in lines:
        if quantity is None or quantity <= 0:
            raise InvalidQuantity(f"Quantity for medicine {medicine_id} must be positive")
        totals[medicine_id] = totals.get(medicine_id, 0) + quantity

    remaining: Dict[int, int] = {}
    with entity_locks.hold_many("medicine", totals.keys()):
        try:
            for medicine_id, quantity in totals.items():
                remaining[medicine_id] = _apply_deduction(session, medicine_id, quantity)
            if auto_commit:
                session.commit()
        except Exception:
            if auto_commit:
                session.rollback()
            raise

    return remaining


def restock(session: Session, medicine_id: int, quantity: int) -> int:
    """Increment stock and return the new quantity."""
    if quantity is None or quantity < 0:
        raise InvalidQuantity("Restock quantity cannot be negative")

    with entity_locks.hold("medicine", medicine_id):
        result = session.execute(
            update(Medicine)
            .where(Medicine.id == medicine_id)
            .values(quantity=Medicine.quantity + quantity, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise NotFound("Medicine", medicine_id)
        session.commit()

    medicine = session.get(Medicine, medicine_id, populate_existing=True)
    logger.info(f"Restocked medicine {medicine_id} by {quantity}; now {medicine.quantity}")
    return medicine.quantity


# ==================== THRESHOLD QUERIES ====================

def query_below_threshold(session: Session) -> List[Medicine]:
    """Medicines at or below their reorder level, most urgent first"""
    return list(session.exec(
        select(Medicine)
        .where(Medicine.is_active == True)  # noqa: E712
        .where(Medicine.quantity <= Medicine.reorder_level)
        .order_by(Medicine.quantity, Medicine.id)
    ).all())


def query_expiring_within(
    session: Session,
    days: int,
    include_expired: bool = False,
    today: Optional[date] = None,
) -> List[Medicine]:
    """
    Medicines whose expiry date falls within [today, today + days], soonest first.

    Medicines without an expiry date are never returned. With include_expired
    the lower bound is dropped so already expired stock is returned as well.
    """
    if days < 0:
        raise InvalidQuantity("Expiry horizon cannot be negative")
    today = today or datetime.utcnow().date()
    horizon = today + timedelta(days=days)

    query = (
        select(Medicine)
        .where(Medicine.is_active == True)  # noqa: E712
        .where(Medicine.expiry_date != None)  # noqa: E711
        .where(Medicine.expiry_date <= horizon)
    )
    if not include_expired:
        query = query.where(Medicine.expiry_date >= today)

    return list(session.exec(query.order_by(Medicine.expiry_date, Medicine.id)).all())
