"""Billing and payment endpoints"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlmodel import Session
from typing import List, Optional
from datetime import date
import os
import logging

from database import get_session
from models import Actor, PaymentStatus, PaymentType
from schemas import (
    BillAdjust, BillCancel, BillResponse, ManualBillCreate, OnlinePaymentRequest,
    PaymentDetailsResponse, PaymentTypeSelect, PickupPaymentRequest, RevenueSummary,
)
from dependencies import get_current_user, require_staff
from services import billing_service
from services.billing_service import LineItem
from services.websocket_manager import queue_delivery
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["Billing"])

# Rate limiter for payment endpoints
limiter = Limiter(
    key_func=get_remote_address,
    enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true",
)


def _get_owned(session: Session, bill_id: int, current_user: Actor):
    bill = billing_service.get_bill(session, bill_id)
    if not billing_service.can_view(current_user, bill):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only access your own bills"
        )
    return bill


# ==================== BILLS ====================

@router.post("/bills", response_model=BillResponse, status_code=status.HTTP_201_CREATED)
def create_manual_bill(
    bill_data: ManualBillCreate,
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    """Counter sale without a prescription (Staff only)"""
    bill = billing_service.create_manual_bill(
        session,
        bill_data.customer_id,
        [LineItem(item.medicine_id, item.quantity, item.instructions) for item in bill_data.items],
        discount=bill_data.discount,
        tax=bill_data.tax,
    )
    queue_delivery(background_tasks, session)
    return bill


@router.get("/bills", response_model=List[BillResponse])
def list_bills(
    payment_status: Optional[PaymentStatus] = None,
    payment_type: Optional[PaymentType] = None,
    payment_method: Optional[str] = None,
    customer_id: Optional[int] = None,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    if not current_user.is_staff:
        customer_id = current_user.user_id
    return billing_service.list_bills(
        session, customer_id=customer_id, payment_status=payment_status,
        payment_type=payment_type, payment_method=payment_method, search=search,
        date_from=date_from, date_to=date_to, skip=skip, limit=limit,
    )


@router.get("/revenue", response_model=RevenueSummary)
def get_revenue(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    """Revenue and count of PAID bills over an inclusive payment-date range (Staff only)"""
    return billing_service.revenue_summary(session, date_from=date_from, date_to=date_to)


@router.get("/bills/{bill_id}", response_model=BillResponse)
def get_bill(
    bill_id: int,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return _get_owned(session, bill_id, current_user)


@router.get("/bills/{bill_id}/payment", response_model=PaymentDetailsResponse)
def get_payment_details(
    bill_id: int,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    return billing_service.payment_details(_get_owned(session, bill_id, current_user))


@router.put("/bills/{bill_id}/payment-type", response_model=BillResponse)
def select_payment_type(
    bill_id: int,
    selection: PaymentTypeSelect,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    _get_owned(session, bill_id, current_user)
    return billing_service.set_payment_type(session, bill_id, selection.payment_type)


@router.patch("/bills/{bill_id}", response_model=BillResponse)
def adjust_bill(
    bill_id: int,
    adjustment: BillAdjust,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    """Change discount or tax on a pending bill (Staff only)"""
    return billing_service.adjust_bill(session, bill_id, discount=adjustment.discount, tax=adjustment.tax)


@router.post("/bills/{bill_id}/cancel", response_model=BillResponse)
def cancel_bill(
    bill_id: int,
    cancellation: BillCancel,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    _get_owned(session, bill_id, current_user)
    return billing_service.cancel(session, bill_id, reason=cancellation.reason)


# ==================== PAYMENTS ====================

@router.post("/bills/{bill_id}/pay-online", response_model=BillResponse)
@limiter.limit("10/minute")
def pay_online(
    request: Request,
    bill_id: int,
    payment: OnlinePaymentRequest,
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(get_current_user),
    session: Session = Depends(get_session)
):
    """Pay an ONLINE bill by card (rate limited to prevent abuse)"""
    _get_owned(session, bill_id, current_user)
    bill = billing_service.pay_online(session, bill_id, payment.model_dump())
    queue_delivery(background_tasks, session)
    return bill


@router.post("/bills/{bill_id}/collect-pickup", response_model=BillResponse)
@limiter.limit("10/minute")
def collect_pickup_payment(
    request: Request,
    bill_id: int,
    payment: PickupPaymentRequest,
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    """Take payment at the counter and hand over the medicines (Staff only)"""
    bill = billing_service.collect_pickup_payment(session, bill_id, payment.method)
    queue_delivery(background_tasks, session)
    logger.info(f"Pickup payment for bill {bill_id} collected by user {current_user.user_id}")
    return bill
