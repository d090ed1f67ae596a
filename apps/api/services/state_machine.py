"""Transition guard tables for prescriptions and bills"""
from typing import Dict, FrozenSet, Iterable, Type
import logging

from sqlalchemy import update
from sqlmodel import Session, SQLModel

from models import PaymentStatus, PrescriptionStatus
from services.errors import InvalidStateTransition

logger = logging.getLogger(__name__)

PRESCRIPTION_TRANSITIONS: Dict[PrescriptionStatus, FrozenSet[PrescriptionStatus]] = {
    PrescriptionStatus.PENDING: frozenset({PrescriptionStatus.APPROVED, PrescriptionStatus.REJECTED}),
    PrescriptionStatus.APPROVED: frozenset({PrescriptionStatus.DISPENSED}),
    PrescriptionStatus.DISPENSED: frozenset({PrescriptionStatus.COMPLETED}),
    PrescriptionStatus.REJECTED: frozenset(),
    PrescriptionStatus.COMPLETED: frozenset(),
}

# PARTIALLY_PAID is a valid status but no command produces it yet
BILL_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.CANCELLED}),
    PaymentStatus.PARTIALLY_PAID: frozenset({PaymentStatus.PAID, PaymentStatus.CANCELLED}),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


def ensure_transition(table: Dict, entity: str, entity_id: int, current, target) -> None:
    if target not in table.get(current, frozenset()):
        logger.warning(f"Rejected {entity} {entity_id} transition {current.value} -> {target.value}")
        raise InvalidStateTransition(
            f"{entity} {entity_id} cannot move from {current.value} to {target.value}",
            entity=entity,
            entity_id=entity_id,
        )


def claim_transition(
    session: Session,
    model: Type[SQLModel],
    entity_id: int,
    status_column: str,
    from_states: Iterable,
    values: dict,
    extra_conditions: Iterable = (),
) -> None:
    """
    Apply a status change only if the row is still in one of from_states.

    The check and the write are one UPDATE statement, so a concurrent writer
    in another process that got there first makes this raise instead of
    overwriting its result.
    """
    column = getattr(model, status_column)
    statement = (
        update(model)
        .where(model.id == entity_id, column.in_(list(from_states)), *extra_conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(statement)
    if result.rowcount == 0:
        raise InvalidStateTransition(
            f"{model.__name__} {entity_id} was changed by another request",
            entity=model.__name__,
            entity_id=entity_id,
        )
    # Reload so the caller sees the committed-to-be values
    session.get(model, entity_id, populate_existing=True)
