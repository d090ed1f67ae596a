"""
Scheduled task endpoints (Admin only).

Each trigger runs the same evaluator function as the background scheduler,
so a manual run and a periodic run can never double-alert.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlmodel import Session
from typing import Optional
import logging

from database import get_session
from models import Actor
from schemas import AlertSnapshot, BillResponse, TaskResult
from dependencies import require_admin, require_staff
from services import alert_evaluator, billing_service
from services.websocket_manager import queue_delivery

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scheduled-tasks", tags=["Scheduled Tasks"])


@router.post("/check-low-stock", response_model=TaskResult)
def check_low_stock(
    background_tasks: BackgroundTasks,
    current_user: Actor = Depends(require_admin),
    session: Session = Depends(get_session)
):
    created = alert_evaluator.evaluate_low_stock(session)
    queue_delivery(background_tasks, session)
    return TaskResult(task="check-low-stock", processed=len(created))


@router.post("/check-expiring-medicines", response_model=TaskResult)
def check_expiring_medicines(
    background_tasks: BackgroundTasks,
    horizon_days: Optional[int] = Query(None, ge=0),
    current_user: Actor = Depends(require_admin),
    session: Session = Depends(get_session)
):
    created = alert_evaluator.evaluate_expiry(session, horizon_days=horizon_days)
    queue_delivery(background_tasks, session)
    return TaskResult(task="check-expiring-medicines", processed=len(created))


@router.post("/process-expired-bills", response_model=TaskResult)
def process_expired_bills(
    background_tasks: BackgroundTasks,
    max_age_days: Optional[int] = Query(None, ge=0),
    current_user: Actor = Depends(require_admin),
    session: Session = Depends(get_session)
):
    expired = alert_evaluator.evaluate_overdue_bills(session, max_age_days=max_age_days)
    logger.info(f"Admin {current_user.user_id} expired {len(expired)} overdue bill(s)")
    queue_delivery(background_tasks, session)
    return TaskResult(task="process-expired-bills", processed=len(expired))


@router.post("/bills/{bill_id}/expire", response_model=BillResponse)
def expire_bill(
    bill_id: int,
    background_tasks: BackgroundTasks,
    max_age_days: Optional[int] = Query(None, ge=0),
    current_user: Actor = Depends(require_admin),
    session: Session = Depends(get_session)
):
    bill = billing_service.mark_expired(session, bill_id, max_age_days=max_age_days)
    queue_delivery(background_tasks, session)
    return bill


@router.get("/snapshot", response_model=AlertSnapshot)
def get_snapshot(
    horizon_days: Optional[int] = Query(None, ge=0),
    max_age_days: Optional[int] = Query(None, ge=0),
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    """Current low-stock, expiring and overdue conditions without raising alerts"""
    return alert_evaluator.snapshot(session, horizon_days=horizon_days, max_age_days=max_age_days)


@router.get("/counts")
def get_counts(
    current_user: Actor = Depends(require_staff),
    session: Session = Depends(get_session)
):
    return {
        "low_stock": alert_evaluator.count_low_stock(session),
        "expiring": alert_evaluator.count_expiring(session),
        "overdue_bills": alert_evaluator.count_overdue_bills(session),
    }
