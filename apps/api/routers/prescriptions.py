"""Prescription workflow endpoints"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlmodel import Session
from typing import List, Optional
from datetime import date

from database import get_session
from models import Actor, PrescriptionStatus
from schemas import (
    BillResponse, PrescriptionApprove, PrescriptionReject, PrescriptionResponse, PrescriptionUpload,
)
from dependencies import get_current_user, require_staff
from services import billing_service, prescription_workflow
from services.billing_service import LineItem
from services.websocket_manager import queue_delivery

router = APIRouter(prefix="/api/prescriptions", tags=["Prescriptions"])


def _get_owned(session: Session, prescription_id: int, current_user: Actor):
    prescription = prescription_workflow.get_prescription(session, prescription_id)
    if not prescription_workflow.can_view(current_user, prescription):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only access your own prescriptions"
        )
    return prescription


@router.post("", response_model=PrescriptionResponse, status_code=status.HTTP_201_CREATED)
def upload_prescription(
    upload: PrescriptionUpload,
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Upload a prescription for review. Staff may upload on behalf of a customer."""
    prescription = prescription_workflow.upload(
        session,
        current_user,
        doctor_name=upload.doctor_name,
        notes=upload.notes,
        file_reference=upload.file_reference,
        customer_id=upload.customer_id,
    )
    queue_delivery(background_tasks, session)
    return prescription


@router.get("", response_model=List[PrescriptionResponse])
def list_prescriptions(
    status_filter: Optional[PrescriptionStatus] = Query(None, alias="status"),
    customer_id: Optional[int] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Customers see their own prescriptions; staff see all. search matches number, doctor or notes."""
    if not current_user.is_staff:
        customer_id = current_user.user_id
    return prescription_workflow.list_prescriptions(
        session, customer_id=customer_id, status=status_filter,
        search=search, date_from=date_from, date_to=date_to, skip=skip, limit=limit,
    )


@router.get("/{prescription_id}", response_model=PrescriptionResponse)
def get_prescription(
    prescription_id: int,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return _get_owned(session, prescription_id, current_user)


@router.get("/{prescription_id}/bill", response_model=BillResponse)
def get_prescription_bill(
    prescription_id: int,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    _get_owned(session, prescription_id, current_user)
    bill = billing_service.get_bill_for_prescription(session, prescription_id)
    if not bill:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bill not found")
    return bill


# ==================== REVIEW (Staff only) ====================

@router.post("/{prescription_id}/approve", response_model=BillResponse)
def approve_prescription(
    prescription_id: int,
    approval: PrescriptionApprove,
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    """Approve with the dispensed medicine lines; returns the generated bill"""
    bill = prescription_workflow.approve(
        session,
        prescription_id,
        [LineItem(item.medicine_id, item.quantity, item.instructions) for item in approval.items],
        reviewer=current_user,
        discount=approval.discount,
        tax=approval.tax,
    )
    queue_delivery(background_tasks, session)
    return bill


@router.post("/{prescription_id}/reject", response_model=PrescriptionResponse)
def reject_prescription(
    prescription_id: int,
    rejection: PrescriptionReject,
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    prescription = prescription_workflow.reject(session, prescription_id, rejection.reason, reviewer=current_user)
    queue_delivery(background_tasks, session)
    return prescription


@router.post("/{prescription_id}/dispense", response_model=PrescriptionResponse)
def dispense_prescription(
    prescription_id: int,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    return prescription_workflow.dispense(session, prescription_id)


@router.post("/{prescription_id}/complete", response_model=PrescriptionResponse)
def complete_prescription(
    prescription_id: int,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    return prescription_workflow.complete(session, prescription_id)
